"""Counter reporter: feeds delivery statistics back through the pipeline."""
import asyncio
import structlog

from .ingest import IngestionSink
from .resolver import DeliveryCounters
from ..errors import RelayFault
from ..records import Record

log = structlog.get_logger()


class CounterReporter:
    """Emits ``{successes, failures}`` as a record from the device itself."""

    def __init__(self, sink: IngestionSink, counters: DeliveryCounters, device_name: str, interval: float = 60.0):
        self._sink = sink
        self._counters = counters
        self.device_name = device_name
        self.interval = interval

    async def report(self) -> Record | None:
        successes, failures = self._counters.take()
        record = Record(source=self.device_name, payload={"successes": successes, "failures": failures})
        try:
            await self._sink.accept(record, channel="reporter")
        except RelayFault as e:
            self._counters.restore(successes, failures)
            log.error("reporter.emit_failed", error=e.message, successes=successes, failures=failures)
            return None
        log.info("reporter.emitted", uid=record.uid, successes=successes, failures=failures)
        return record

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.report()
            except Exception:
                log.exception("reporter.tick_error")
