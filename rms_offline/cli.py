"""
Operator command line for the offline data layer.

Usage:
    rms-offline queue inspect
    rms-offline queue clear-synced            (prompts for "CLEAR SYNCED")
    rms-offline queue reset-syncing --confirm "RESET SYNCING"
    rms-offline queue retry-failed
    rms-offline queue clear-all
    rms-offline sync [--force-pull]
    rms-offline status
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from rms_offline.core.config import Settings, get_settings
from rms_offline.core.errors import ConfirmationRequired, OfflineError
from rms_offline.core.logging import configure_logging
from rms_offline.db.store import LocalStore
from rms_offline.runtime import OfflineRuntime
from rms_offline.services import maintenance as m
from rms_offline.services.maintenance import QueueMaintenance
from rms_offline.services.sync_queue import SyncQueue

QUEUE_OPERATIONS = {
    "clear-synced": ("clear_synced", m.CLEAR_SYNCED, "remove all SYNCED entries"),
    "reset-syncing": ("reset_syncing", m.RESET_SYNCING, "reset SYNCING entries to PENDING"),
    "retry-failed": ("retry_failed", m.RETRY_FAILED, "reset FAILED entries to PENDING"),
    "clear-all": ("clear_all", m.CLEAR_ALL, "delete the ENTIRE sync queue"),
}


def print_inspection(inspection) -> None:
    print(f"Total items in sync queue: {inspection.total}")

    print("\nItems by status:")
    for status, total in inspection.by_status.items():
        print(f"   {status:<8} {total}")

    print("\nItems by table:")
    for table, statuses in sorted(inspection.by_table.items()):
        detail = ", ".join(f"{s}={n}" for s, n in sorted(statuses.items()))
        print(f"   {table:<20} {sum(statuses.values()):<6} ({detail})")

    if inspection.samples:
        print(f"\nSample items (first {len(inspection.samples)}):")
        for index, entry in enumerate(inspection.samples, 1):
            print(
                f"   {index}. #{entry.id} {entry.action.value} {entry.table_name}/{entry.record_id} "
                f"{entry.status.value} attempts={entry.attempts}"
            )
            if entry.error:
                print(f"      Error: {entry.error}")

    if inspection.stuck:
        print(f"\nFound {len(inspection.stuck)} potentially stuck items:")
        print("   - Items with status SYNCING (should be PENDING or FAILED)")
        print("   - Items with status SYNCED older than 7 days")


async def run_queue_command(
    settings: Settings,
    operation: str,
    confirmation: Optional[str],
    prompt=input,
) -> int:
    store = LocalStore(settings.database_url)
    await store.open()
    try:
        maintenance = QueueMaintenance(SyncQueue(store))
        if operation == "inspect":
            print_inspection(await maintenance.inspect())
            return 0

        method, phrase, description = QUEUE_OPERATIONS[operation]
        if confirmation is None:
            confirmation = prompt(f'Type "{phrase}" to {description}: ')
        try:
            changed = await getattr(maintenance, method)(confirmation)
        except ConfirmationRequired:
            print("Cancelled")
            return 1
        print(f"Done: {changed} entries affected")
        return 0
    finally:
        await store.close()


async def run_sync(settings: Settings, force_pull: bool) -> int:
    runtime = OfflineRuntime(settings)
    await runtime.open()
    try:
        sync = runtime.synchronizer
        push = await sync.push()
        print(
            f"Push: {push.synced} synced, {push.retrying} retrying, "
            f"{push.failed} failed ({push.conflicts} conflicts), {push.skipped} skipped"
        )
        try:
            pull = await sync.pull(force=force_pull)
        except OfflineError as exc:
            print(f"Pull failed: {exc}")
            return 1
        print(f"Pull: {pull.applied} applied, {pull.deleted} deleted, {pull.skipped} skipped")
        return 0
    finally:
        await runtime.stop()


async def run_status(settings: Settings) -> int:
    runtime = OfflineRuntime(settings)
    await runtime.open()
    try:
        status = await runtime.synchronizer.status()
        for key, value in status.model_dump().items():
            print(f"{key:<16} {value}")
        return 0
    finally:
        await runtime.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rms-offline", description="Offline data layer maintenance")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    queue = subparsers.add_parser("queue", help="Inspect or clean up the sync queue")
    queue.add_argument("operation", choices=["inspect", *QUEUE_OPERATIONS])
    queue.add_argument("--confirm", help="Confirmation phrase (skips the prompt)")

    sync = subparsers.add_parser("sync", help="Run one push and pull")
    sync.add_argument("--force-pull", action="store_true", help="Pull a full snapshot")

    subparsers.add_parser("status", help="Show synchronizer status")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})
    configure_logging(settings)

    try:
        if args.command == "queue":
            return asyncio.run(run_queue_command(settings, args.operation, args.confirm))
        if args.command == "sync":
            return asyncio.run(run_sync(settings, args.force_pull))
        return asyncio.run(run_status(settings))
    except OfflineError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
