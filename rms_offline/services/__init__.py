"""Sync, realtime and maintenance services."""
