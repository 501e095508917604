"""Pytest configuration and fixtures."""

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest
import pytest_asyncio

from rms_offline.core.cache import EphemeralCache
from rms_offline.core.errors import RemoteError
from rms_offline.db.store import LocalStore
from rms_offline.repositories import OrderRepository
from rms_offline.schemas.sync import LocalChange, PullResult, PushResult
from rms_offline.services.realtime import ChangeChannel, ChannelClosed
from rms_offline.services.remote import RemoteBackend
from rms_offline.services.sync_queue import SyncQueue
from rms_offline.services.synchronizer import DirectSynchronizer, QueuedSynchronizer

TENANT = "tenant-1"


class FakeClock:
    """Manually advanced monotonic clock for cache tests."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRemote(RemoteBackend):
    """
    In-memory remote backend.

    Pushed changes are recorded in ``pushed``. Queue exceptions (or
    callables returning a ``PushResult``) in ``push_script`` to control the
    next pushes; when the script is empty the change is echoed back with a
    bumped version.
    """

    def __init__(self):
        self.pushed: List[LocalChange] = []
        self.push_script: List[Any] = []
        self.pull_results: List[Any] = []
        self.pull_calls: List[Optional[str]] = []
        self.reports: Dict[str, Any] = {}
        self.report_error: Optional[RemoteError] = None
        self.report_calls = 0
        self.versions: Dict[tuple, int] = {}
        self.healthy = True

    async def push(self, change: LocalChange) -> PushResult:
        self.pushed.append(change)
        if self.push_script:
            step = self.push_script.pop(0)
            if isinstance(step, BaseException):
                raise step
            if callable(step):
                return step(change)
            return step
        key = (change.table, change.record_id)
        self.versions[key] = self.versions.get(key, 0) + 1
        row = {
            **change.payload,
            "id": change.record_id,
            "version": self.versions[key],
            "updatedAt": f"2026-01-01T00:00:{self.versions[key]:02d}Z",
        }
        return PushResult(row=row)

    async def pull(self, tenant_id: str, since: Optional[str] = None) -> PullResult:
        self.pull_calls.append(since)
        if self.pull_results:
            step = self.pull_results.pop(0)
            if isinstance(step, BaseException):
                raise step
            return step
        return PullResult(timestamp=since)

    async def fetch_report(self, tenant_id, report_type, filters=None):
        self.report_calls += 1
        if self.report_error is not None:
            raise self.report_error
        return self.reports.get(report_type, {"type": report_type, "total": 0})

    async def health(self) -> bool:
        return self.healthy

    def changes_for(self, record_id: str) -> List[LocalChange]:
        return [change for change in self.pushed if change.record_id == record_id]


class FakeChannel(ChangeChannel):
    """Scriptable change channel; ``feed()`` messages, ``end()`` to close."""

    def __init__(self, fail_connect: Optional[BaseException] = None):
        self.fail_connect = fail_connect
        self.messages: "asyncio.Queue[Any]" = asyncio.Queue()
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        if self.fail_connect is not None:
            raise self.fail_connect
        self.connected = True

    async def receive(self) -> Any:
        message = await self.messages.get()
        if isinstance(message, ChannelClosed):
            raise message
        return message

    async def close(self) -> None:
        self.closed = True

    def feed(self, *messages: Any) -> None:
        for message in messages:
            self.messages.put_nowait(message)

    def end(self) -> None:
        self.messages.put_nowait(ChannelClosed("server closed"))


class FakeChannelFactory:
    """Hands out ``FakeChannel`` instances and records them per tenant."""

    def __init__(self, fail_connect: Optional[BaseException] = None):
        self.fail_connect = fail_connect
        self.channels: List[FakeChannel] = []
        self.tenants: List[str] = []

    def __call__(self, tenant_id: str) -> FakeChannel:
        channel = FakeChannel(fail_connect=self.fail_connect)
        self.channels.append(channel)
        self.tenants.append(tenant_id)
        return channel

    @property
    def latest(self) -> FakeChannel:
        return self.channels[-1]


async def wait_for_condition(predicate, timeout: float = 2.0) -> None:
    """Poll until ``predicate()`` is true; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'store.db'}"


@pytest_asyncio.fixture
async def store(database_url) -> AsyncIterator[LocalStore]:
    """Open a file-backed local store for one test."""
    local_store = LocalStore(database_url)
    await local_store.open()
    yield local_store
    await local_store.close()


@pytest.fixture
def queue(store) -> SyncQueue:
    return SyncQueue(store)


@pytest.fixture
def cache() -> EphemeralCache:
    return EphemeralCache(default_ttl=300, max_size=100)


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest_asyncio.fixture
async def synchronizer(store, queue, cache, remote) -> AsyncIterator[QueuedSynchronizer]:
    """Queued synchronizer that only pushes when a test asks it to."""
    sync = QueuedSynchronizer(
        store,
        remote,
        queue,
        cache=cache,
        tenant_id=TENANT,
        request_timeout=2.0,
        max_attempts=3,
        retry_base_delay=0,
        retry_max_delay=0,
        push_on_dispatch=False,
    )
    yield sync
    await sync.close()


@pytest_asyncio.fixture
async def direct_synchronizer(store, queue, cache, remote) -> AsyncIterator[DirectSynchronizer]:
    sync = DirectSynchronizer(store, remote, queue=queue, cache=cache, tenant_id=TENANT, request_timeout=2.0)
    yield sync
    await sync.close()


@pytest.fixture
def channel_factory() -> FakeChannelFactory:
    return FakeChannelFactory()


@pytest.fixture
def failing_channel_factory() -> FakeChannelFactory:
    return FakeChannelFactory(fail_connect=ConnectionRefusedError("connection refused"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wait_until():
    return wait_for_condition


@pytest.fixture
def orders(store, synchronizer, cache) -> OrderRepository:
    return OrderRepository(store, synchronizer, TENANT, cache)
