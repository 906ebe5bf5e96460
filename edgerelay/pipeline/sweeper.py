"""Retry sweeper and startup reconciliation."""
import asyncio
import structlog

from ..metrics import Metrics
from ..storage import QueueState, QueueStore

log = structlog.get_logger()


class RetrySweeper:
    """Periodically requeues every retry-pending record into in-flight."""

    def __init__(self, store: QueueStore, interval: float = 60.0, metrics: Metrics | None = None):
        self._store = store
        self.interval = interval
        self._metrics = metrics

    async def reconcile(self) -> int:
        """
        Park everything a previous process left in ``initial`` or
        ``in-flight`` in ``retry-pending``.

        Must run before the watcher starts; the records re-enter delivery on
        the next sweep tick.
        """
        moved = await self._store.move_all(QueueState.INITIAL, QueueState.RETRY)
        moved += await self._store.move_all(QueueState.IN_FLIGHT, QueueState.RETRY)
        log.info("sweeper.reconciled", moved=moved)
        return moved

    async def sweep(self) -> int:
        """Move every retry-pending record to in-flight, triggering delivery."""
        moved = await self._store.move_all(QueueState.RETRY, QueueState.IN_FLIGHT)
        if moved:
            log.info("sweeper.requeued", moved=moved)
        await self.refresh_depth()
        return moved

    async def refresh_depth(self) -> None:
        if self._metrics is None:
            return
        for state, count in (await self._store.depth()).items():
            self._metrics.set_queue_depth(state.value, count)

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception:
                log.exception("sweeper.tick_error")
