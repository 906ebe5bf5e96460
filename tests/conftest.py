"""Shared fixtures for relay tests."""
import asyncio
import pytest

from edgerelay.config import Settings
from edgerelay.errors import DeliveryFault
from edgerelay.records import Record
from edgerelay.storage import QueueState, QueueStore
from edgerelay.transports.base import Transport


class FakeTransport(Transport):
    """Records every uid it is asked to send; fails on demand."""

    def __init__(self, name: str = "fake", fail: bool = False, delay: float = 0.0):
        self.name = name
        self.fail = fail
        self.delay = delay
        self.sent: list[str] = []
        self.closed = False

    async def send(self, content: bytes, record: Record) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append(record.uid)
        if self.fail:
            raise DeliveryFault("collector unavailable", uid=record.uid, transport=self.name)

    async def close(self) -> None:
        self.closed = True


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Poll an async predicate until it returns truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = await predicate()
        if result:
            return result
        if loop.time() > deadline:
            pytest.fail("condition not reached before timeout")
        await asyncio.sleep(interval)


def locations(base_dir, uid: str) -> list:
    """Every file named ``uid`` under the queue directory."""
    return [p for p in base_dir.rglob(uid) if p.is_file()]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DEVICE_NAME="relay-test",
        MESSAGE_DIRECTORY=str(tmp_path / "queue"),
        UDP_PORT=0,
        SWEEP_INTERVAL=3600.0,
        POLL_INTERVAL=0,
        SEND_TIMEOUT=0.5,
        LOG_JSON=False,
    )


@pytest.fixture
def store(tmp_path):
    queue_store = QueueStore(tmp_path / "queue")
    queue_store.ensure_layout()
    return queue_store


@pytest.fixture
def write_raw(store):
    """Write a record file behind the store's back (no notification)."""

    def _write(state: QueueState, uid: str, source: str = "sensor1", payload="x"):
        record = Record(source=source, payload=payload, received=1.0, uid=uid)
        store.path(state, uid).write_bytes(record.to_bytes())
        return record

    return _write
