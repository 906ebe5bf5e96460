"""Promotion watcher: moves new records to in-flight and dispatches them."""
import asyncio
import structlog

from .delivery import DeliveryAttempter, DeliveryOutcome
from .resolver import OutcomeResolver
from ..storage import QueueState, QueueStore

log = structlog.get_logger()


class PromotionWatcher:
    """
    Two reactive loops over the queue store's notifications:

    - initial loop: every uid landing in ``initial`` is moved to ``in-flight``
    - in-flight loop: every uid landing in ``in-flight`` is read, handed to
      the attempter and resolved

    A third loop rescans both states every ``poll_interval`` seconds so a
    record whose notification was lost is still picked up.
    """

    def __init__(
        self,
        store: QueueStore,
        attempter: DeliveryAttempter,
        resolver: OutcomeResolver,
        poll_interval: float = 30.0,
        max_concurrent: int = 4,
    ):
        self._store = store
        self._attempter = attempter
        self._resolver = resolver
        self.poll_interval = poll_interval
        self._initial = store.watch(QueueState.INITIAL)
        self._in_flight = store.watch(QueueState.IN_FLIGHT)
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent))
        self._active: set[str] = set()
        self._deliveries: set[asyncio.Task] = set()
        self._loops: list[asyncio.Task] = []

    @property
    def active(self) -> frozenset[str]:
        """Uids currently being delivered."""
        return frozenset(self._active)

    async def promote(self, uid: str) -> bool:
        return await self._store.move(QueueState.INITIAL, uid, QueueState.IN_FLIGHT)

    async def dispatch(self, uid: str) -> DeliveryOutcome | None:
        """
        Deliver and resolve one in-flight record.

        Returns None without attempting anything if the uid is already being
        delivered or is no longer resident in ``in-flight``.
        """
        if uid in self._active:
            log.debug("watcher.already_active", uid=uid)
            return None
        self._active.add(uid)
        try:
            async with self._semaphore:
                content = await self._store.read(QueueState.IN_FLIGHT, uid)
                if content is None:
                    log.debug("watcher.not_resident", uid=uid)
                    return None
                outcome = await self._attempter.deliver(uid, content)
                await self._resolver.resolve(outcome)
                return outcome
        finally:
            self._active.discard(uid)

    async def scan(self) -> None:
        """Re-notify every record resident in the watched states."""
        for uid in await self._store.list(QueueState.INITIAL):
            self._initial.notify(uid)
        for uid in await self._store.list(QueueState.IN_FLIGHT):
            if uid not in self._active:
                self._in_flight.notify(uid)

    async def _run_initial(self) -> None:
        while True:
            uid = await self._initial.get()
            try:
                await self.promote(uid)
            except Exception:
                log.exception("watcher.promote_error", uid=uid)

    async def _run_in_flight(self) -> None:
        while True:
            uid = await self._in_flight.get()
            task = asyncio.create_task(self._dispatch_logged(uid))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)

    async def _dispatch_logged(self, uid: str) -> None:
        try:
            await self.dispatch(uid)
        except Exception:
            # One record's failure must not stop the loop or other records
            log.exception("watcher.dispatch_error", uid=uid)

    async def _run_poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.scan()
            except Exception:
                log.exception("watcher.scan_error")

    def start(self) -> None:
        if self._loops:
            return
        self._loops = [
            asyncio.create_task(self._run_initial(), name="watcher-initial"),
            asyncio.create_task(self._run_in_flight(), name="watcher-in-flight"),
        ]
        if self.poll_interval > 0:
            self._loops.append(asyncio.create_task(self._run_poll(), name="watcher-poll"))
        log.info("watcher.started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        interrupted = len(self._deliveries)
        tasks = self._loops + list(self._deliveries)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loops = []
        # Interrupted records stay in in-flight until the next startup reconciliation
        log.info("watcher.stopped", interrupted=interrupted)
