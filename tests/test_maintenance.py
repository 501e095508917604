"""Tests for queue maintenance and the operator CLI."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from rms_offline import cli
from rms_offline.core.clock import utcnow_naive
from rms_offline.core.errors import ConfirmationRequired, ErrorKind
from rms_offline.db.store import LocalStore
from rms_offline.models import QueueStatus, SyncAction, SyncQueueEntry
from rms_offline.schemas.sync import LocalChange
from rms_offline.services.maintenance import QueueMaintenance
from rms_offline.services.sync_queue import SyncQueue


async def seed_queue(queue, store):
    """One entry per status, plus a SYNCED entry older than a week."""
    entries = {}
    for name, table in [
        ("pending", "orders"),
        ("syncing", "orders"),
        ("synced", "order_items"),
        ("stale", "order_items"),
        ("failed", "ingredients"),
    ]:
        change = LocalChange(
            table=table,
            action=SyncAction.UPDATE,
            record_id=name,
            payload={"id": name},
            tenant_id="tenant-1",
        )
        async with store.transaction() as tx:
            entries[name] = await queue.enqueue(tx, change)

    await queue.claim(entries["syncing"].id)
    async with store.transaction() as tx:
        await queue.mark_synced(tx, entries["synced"].id)
        await queue.mark_synced(tx, entries["stale"].id)
        await tx.session.execute(
            update(SyncQueueEntry)
            .where(SyncQueueEntry.id == entries["stale"].id)
            .values(synced_at=utcnow_naive() - timedelta(days=8))
        )
    await queue.mark_failed(entries["failed"].id, ErrorKind.VALIDATION, "bad quantity")
    return entries


@pytest.fixture
def maintenance(queue):
    return QueueMaintenance(queue, sample_size=2)


class TestInspection:

    @pytest.mark.asyncio
    async def test_inspect_summarises_queue(self, maintenance, queue, store):
        entries = await seed_queue(queue, store)

        inspection = await maintenance.inspect()

        assert inspection.total == 5
        assert inspection.by_status == {"PENDING": 1, "SYNCING": 1, "SYNCED": 2, "FAILED": 1}
        assert inspection.by_table["order_items"] == {"SYNCED": 2}
        assert inspection.by_table["orders"] == {"PENDING": 1, "SYNCING": 1}
        assert len(inspection.samples) == 2
        assert {e.id for e in inspection.stuck} == {entries["syncing"].id, entries["stale"].id}

    @pytest.mark.asyncio
    async def test_empty_queue(self, maintenance):
        inspection = await maintenance.inspect()

        assert inspection.total == 0
        assert set(inspection.by_status.values()) == {0}
        assert inspection.samples == []
        assert inspection.stuck == []


class TestConfirmedOperations:

    @pytest.mark.asyncio
    async def test_clear_synced(self, maintenance, queue, store):
        await seed_queue(queue, store)

        assert await maintenance.clear_synced("CLEAR SYNCED") == 2
        assert (await queue.counts())["SYNCED"] == 0
        assert len(await queue.list()) == 3

    @pytest.mark.asyncio
    async def test_reset_syncing(self, maintenance, queue, store):
        entries = await seed_queue(queue, store)

        assert await maintenance.reset_syncing("RESET SYNCING") == 1
        assert (await queue.get(entries["syncing"].id)).status is QueueStatus.PENDING

    @pytest.mark.asyncio
    async def test_retry_failed_resets_budget(self, maintenance, queue, store):
        entries = await seed_queue(queue, store)

        assert await maintenance.retry_failed("RETRY FAILED") == 1

        entry = await queue.get(entries["failed"].id)
        assert entry.status is QueueStatus.PENDING
        assert entry.attempts == 0
        assert entry.error is None

    @pytest.mark.asyncio
    async def test_clear_all(self, maintenance, queue, store):
        await seed_queue(queue, store)

        assert await maintenance.clear_all("CLEAR ALL") == 5
        assert await queue.list() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["clear_synced", "reset_syncing", "retry_failed", "clear_all"])
    async def test_wrong_phrase_changes_nothing(self, maintenance, queue, store, operation):
        await seed_queue(queue, store)
        before = await queue.counts()

        with pytest.raises(ConfirmationRequired):
            await getattr(maintenance, operation)("yes")
        with pytest.raises(ConfirmationRequired):
            await getattr(maintenance, operation)(None)

        assert await queue.counts() == before


class TestQueueCommand:

    @pytest.mark.asyncio
    async def test_prompted_confirmation(self, database_url, capsys):
        settings = cli.Settings(database_url=database_url)
        store = LocalStore(database_url)
        await store.open()
        await seed_queue(SyncQueue(store), store)
        await store.close()

        code = await cli.run_queue_command(settings, "clear-synced", None, prompt=lambda _: "CLEAR SYNCED")

        assert code == 0
        assert "Done: 2 entries affected" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_wrong_prompt_answer_cancels(self, database_url, capsys):
        settings = cli.Settings(database_url=database_url)
        prompts = []

        def answer(text):
            prompts.append(text)
            return "no thanks"

        code = await cli.run_queue_command(settings, "clear-all", None, prompt=answer)

        assert code == 1
        assert "Cancelled" in capsys.readouterr().out
        assert '"CLEAR ALL"' in prompts[0]

    @pytest.mark.asyncio
    async def test_confirm_flag_skips_prompt(self, database_url):
        settings = cli.Settings(database_url=database_url)

        def no_prompt(text):
            raise AssertionError("prompted")

        code = await cli.run_queue_command(settings, "retry-failed", "RETRY FAILED", prompt=no_prompt)

        assert code == 0


class TestMain:

    def test_inspect(self, database_url, capsys):
        async def seed():
            store = LocalStore(database_url)
            await store.open()
            try:
                await seed_queue(SyncQueue(store), store)
            finally:
                await store.close()

        asyncio.run(seed())

        code = cli.main(["--database-url", database_url, "queue", "inspect"])

        out = capsys.readouterr().out
        assert code == 0
        assert "Total items in sync queue: 5" in out
        assert "Found 2 potentially stuck items" in out
        assert "Error: bad quantity" in out

    def test_confirmed_clear(self, database_url, capsys):
        code = cli.main(["--database-url", database_url, "queue", "clear-all", "--confirm", "CLEAR ALL"])

        assert code == 0
        assert "Done: 0 entries affected" in capsys.readouterr().out

    def test_unknown_operation_is_rejected(self):
        with pytest.raises(SystemExit):
            cli.main(["queue", "explode"])
