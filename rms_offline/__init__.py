"""Offline-first local data layer for the restaurant POS client."""

__version__ = "0.1.0"
