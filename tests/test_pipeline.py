"""Tests for promotion, resolution, retry sweeps and counter reports."""
import asyncio
import orjson
import pytest
from unittest.mock import AsyncMock, patch

from conftest import FakeTransport, locations, wait_until
from edgerelay.pipeline.delivery import DeliveryAttempter, DeliveryOutcome
from edgerelay.pipeline.ingest import IngestionSink
from edgerelay.pipeline.reporter import CounterReporter
from edgerelay.pipeline.resolver import DeliveryCounters, OutcomeResolver, utc_today
from edgerelay.pipeline.sweeper import RetrySweeper
from edgerelay.pipeline.watcher import PromotionWatcher
from edgerelay.errors import DeliveryFault, StorageFault
from edgerelay.services.relay import Relay
from edgerelay.storage import QueueState


def _watcher(store, transport, counters=None, **kwargs):
    counters = counters or DeliveryCounters()
    attempter = DeliveryAttempter([transport], timeout=1.0)
    resolver = OutcomeResolver(store, counters, today=lambda: "2026-10-19")
    return PromotionWatcher(store, attempter, resolver, **kwargs)


# Outcome resolver


@pytest.mark.asyncio
async def test_resolver_success_moves_to_dated_bucket(store):
    """Test success lands in completed/<today> and counts once."""
    counters = DeliveryCounters()
    await store.put(QueueState.IN_FLIGHT, "u1", b"{}")

    moved = await OutcomeResolver(store, counters, today=lambda: "2026-10-19").resolve(DeliveryOutcome("u1"))

    assert moved
    assert store.path(QueueState.COMPLETED, "u1", "2026-10-19").is_file()
    assert (counters.successes, counters.failures) == (1, 0)


@pytest.mark.asyncio
async def test_resolver_failure_moves_to_retry(store):
    """Test failure demotes to retry-pending and counts once."""
    counters = DeliveryCounters()
    await store.put(QueueState.IN_FLIGHT, "u1", b"{}")

    await OutcomeResolver(store, counters).resolve(DeliveryOutcome("u1", faults=[DeliveryFault("down")]))

    assert await store.list(QueueState.RETRY) == ["u1"]
    assert (counters.successes, counters.failures) == (0, 1)


@pytest.mark.asyncio
async def test_resolver_does_not_count_stranded_record(store):
    """Test an outcome whose move fails is left uncounted for the next attempt."""
    counters = DeliveryCounters()
    await store.put(QueueState.IN_FLIGHT, "u1", b"{}")
    resolver = OutcomeResolver(store, counters, today=lambda: "2026-10-19")

    with patch("edgerelay.storage.queue_store.os.rename", side_effect=OSError("EIO")):
        assert await resolver.resolve(DeliveryOutcome("u1")) is False
        assert await resolver.resolve(DeliveryOutcome("u1", faults=[DeliveryFault("down")])) is False

    assert await store.list(QueueState.IN_FLIGHT) == ["u1"]
    assert (counters.successes, counters.failures) == (0, 0)

    assert await resolver.resolve(DeliveryOutcome("u1"))
    assert (counters.successes, counters.failures) == (1, 0)


def test_counters_take_and_restore():
    """Test read-and-reset and add-back of counts."""
    counters = DeliveryCounters()
    counters.record_success()
    counters.record_failure()
    counters.record_failure()

    assert counters.take() == (1, 2)
    assert counters.take() == (0, 0)

    counters.record_success()
    counters.restore(1, 2)
    assert (counters.successes, counters.failures) == (2, 2)


def test_utc_today_is_iso_date():
    """Test the completed bucket name format."""
    assert len(utc_today()) == 10 and utc_today()[4] == "-"


# Promotion watcher


@pytest.mark.asyncio
async def test_accepted_record_is_delivered_to_completed(store):
    """Test a live submission flows initial -> in-flight -> completed."""
    transport = FakeTransport()
    watcher = _watcher(store, transport)
    sink = IngestionSink(store)
    watcher.start()
    try:
        record = await sink.accept({"source": "sensor1", "payload": {"temp": 5}})
        done = store.path(QueueState.COMPLETED, record.uid, "2026-10-19")
        await wait_until(lambda: asyncio.to_thread(done.is_file))
    finally:
        await watcher.stop()

    assert transport.sent == [record.uid]
    assert orjson.loads(done.read_bytes())["payload"] == {"temp": 5}
    assert len(locations(store.base_dir, record.uid)) == 1


@pytest.mark.asyncio
async def test_two_successes_share_one_dated_bucket(store):
    """Test same-day completions sit side by side with unchanged content."""
    watcher = _watcher(store, FakeTransport())
    sink = IngestionSink(store)
    watcher.start()
    try:
        first = await sink.accept({"source": "sensor1", "payload": 1})
        second = await sink.accept({"source": "sensor2", "payload": 2})
        await wait_until(lambda: _completed(store, "2026-10-19", 2))
    finally:
        await watcher.stop()

    assert await store.list(QueueState.COMPLETED, day="2026-10-19") == sorted([first.uid, second.uid])
    assert store.path(QueueState.COMPLETED, first.uid, "2026-10-19").read_bytes() == first.to_bytes()


async def _completed(store, day, count):
    return len(await store.list(QueueState.COMPLETED, day=day)) == count


async def _counted(counters, successes, failures):
    return (counters.successes, counters.failures) == (successes, failures)


@pytest.mark.asyncio
async def test_dispatch_of_vanished_record_is_noop(store):
    """Test a notification for a uid no longer in-flight does nothing."""
    transport = FakeTransport()
    watcher = _watcher(store, transport)

    assert await watcher.dispatch("gone") is None
    assert transport.sent == []


@pytest.mark.asyncio
async def test_record_never_dispatched_twice_concurrently(store, write_raw):
    """Test duplicate notifications yield a single delivery attempt."""
    write_raw(QueueState.IN_FLIGHT, "u1")
    transport = FakeTransport(delay=0.05)
    watcher = _watcher(store, transport)

    results = await asyncio.gather(watcher.dispatch("u1"), watcher.dispatch("u1"))

    assert transport.sent == ["u1"]
    assert sum(r is not None for r in results) == 1


@pytest.mark.asyncio
async def test_scan_recovers_missed_notifications(store, write_raw):
    """Test records written without a notification are still promoted."""
    transport = FakeTransport()
    watcher = _watcher(store, transport, poll_interval=0.05)
    watcher.start()
    try:
        write_raw(QueueState.INITIAL, "stranded")
        done = store.path(QueueState.COMPLETED, "stranded", "2026-10-19")
        await wait_until(lambda: asyncio.to_thread(done.is_file))
    finally:
        await watcher.stop()

    assert transport.sent == ["stranded"]


@pytest.mark.asyncio
async def test_failed_delivery_retried_once_per_sweep(store):
    """Test a failed record reaches retry and the next sweep tries it exactly once more."""
    transport = FakeTransport(fail=True)
    counters = DeliveryCounters()
    watcher = _watcher(store, transport, counters=counters)
    sweeper = RetrySweeper(store)
    sink = IngestionSink(store)
    watcher.start()
    try:
        record = await sink.accept({"source": "sensor1", "payload": "x"})
        retry = store.path(QueueState.RETRY, record.uid)
        await wait_until(lambda: _counted(counters, 0, 1))
        assert retry.is_file()

        transport.fail = False
        assert await sweeper.sweep() == 1
        await wait_until(lambda: _counted(counters, 1, 1))
        assert store.path(QueueState.COMPLETED, record.uid, "2026-10-19").is_file()
    finally:
        await watcher.stop()

    assert transport.sent == [record.uid, record.uid]
    assert counters.take() == (1, 1)
    assert len(locations(store.base_dir, record.uid)) == 1


@pytest.mark.asyncio
async def test_failing_record_does_not_block_others(store):
    """Test per-record isolation: a hung record does not stall the loop."""

    class Selective(FakeTransport):
        async def send(self, content, record):
            if record.source == "slow":
                await asyncio.sleep(5)
            self.sent.append(record.uid)

    transport = Selective()
    watcher = _watcher(store, transport)
    sink = IngestionSink(store)
    watcher.start()
    try:
        await sink.accept({"source": "slow"})
        fast = await sink.accept({"source": "fast"})
        done = store.path(QueueState.COMPLETED, fast.uid, "2026-10-19")
        await wait_until(lambda: asyncio.to_thread(done.is_file))
    finally:
        await watcher.stop()


# Retry sweeper


@pytest.mark.asyncio
async def test_reconcile_parks_leftovers_in_retry(store, write_raw):
    """Test startup reconciliation moves initial and in-flight to retry."""
    write_raw(QueueState.INITIAL, "a")
    write_raw(QueueState.IN_FLIGHT, "b")
    write_raw(QueueState.RETRY, "c")

    assert await RetrySweeper(store).reconcile() == 2
    assert await store.list(QueueState.RETRY) == ["a", "b", "c"]
    assert await store.list(QueueState.INITIAL) == []
    assert await store.list(QueueState.IN_FLIGHT) == []


# Counter reporter


@pytest.mark.asyncio
async def test_reporter_emits_counts_and_resets(store):
    """Test N successes and M failures become one synthetic record."""
    counters = DeliveryCounters()
    for _ in range(3):
        counters.record_success()
    for _ in range(2):
        counters.record_failure()
    reporter = CounterReporter(IngestionSink(store), counters, "edge-01")

    record = await reporter.report()

    assert (counters.successes, counters.failures) == (0, 0)
    stored = orjson.loads(store.path(QueueState.INITIAL, record.uid).read_bytes())
    assert stored["source"] == "edge-01"
    assert stored["payload"] == {"successes": 3, "failures": 2}


@pytest.mark.asyncio
async def test_reporter_keeps_counts_when_store_fails(store):
    """Test counts survive a report that could not be stored."""
    counters = DeliveryCounters()
    counters.record_success()

    class BrokenSink:
        async def accept(self, record, channel="internal"):
            raise StorageFault("disk full")

    reporter = CounterReporter(BrokenSink(), counters, "edge-01")

    assert await reporter.report() is None
    assert (counters.successes, counters.failures) == (1, 0)


# Relay lifecycle


@pytest.mark.asyncio
async def test_restart_recovers_records_left_by_crashed_process(settings, write_raw, store):
    """Test every leftover uid survives restart in exactly one state and is then delivered."""
    write_raw(QueueState.INITIAL, "left-in")
    write_raw(QueueState.IN_FLIGHT, "left-wip")
    transport = FakeTransport()
    relay = Relay(settings, transports=[transport])

    await relay.start(with_udp=False)
    try:
        for uid in ("left-in", "left-wip"):
            assert [p.parent.name for p in locations(store.base_dir, uid)] == ["retry"]
        assert transport.sent == []

        await relay.sweeper.sweep()
        await wait_until(lambda: _completed(store, utc_today(), 2))
    finally:
        await relay.stop()

    assert sorted(transport.sent) == ["left-in", "left-wip"]
    assert transport.closed


@pytest.mark.asyncio
async def test_relay_timers_run_sweep_and_report(settings, store):
    """Test the periodic sweep and report fire on their interval."""
    settings.SWEEP_INTERVAL = 0.05
    transport = FakeTransport()
    relay = Relay(settings, transports=[transport])

    await relay.start(with_udp=False)
    try:
        await wait_until(lambda: _reports(store, "relay-test"))
    finally:
        await relay.stop()


async def _reports(store, device):
    for day in await store.completed_days():
        for uid in await store.list(QueueState.COMPLETED, day=day):
            content = await store.read(QueueState.COMPLETED, uid, day=day)
            if orjson.loads(content)["source"] == device:
                return True
    return False


@pytest.mark.asyncio
async def test_udp_bind_failure_stops_loops_and_timers(settings):
    """Test a failed UDP listener start leaves no pipeline task running."""
    settings.UDP_PORT = 41234
    transport = FakeTransport()
    relay = Relay(settings, transports=[transport])

    with patch("edgerelay.services.relay.start_udp_listener", AsyncMock(side_effect=OSError("address in use"))):
        with pytest.raises(OSError):
            await relay.start()

    assert not relay.running
    assert relay._timers == []
    assert relay.watcher._loops == []
    assert transport.closed

    await relay.start(with_udp=False)
    assert relay.running
    await relay.stop()
