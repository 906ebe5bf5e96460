"""Relay service: owns the queue and runs the delivery pipeline."""
from typing import Sequence
import asyncio
import structlog

from ..config import Settings
from ..listeners.udp import UdpListener, start_udp_listener
from ..metrics import Metrics
from ..pipeline.delivery import DeliveryAttempter
from ..pipeline.ingest import IngestionSink
from ..pipeline.reporter import CounterReporter
from ..pipeline.resolver import DeliveryCounters, OutcomeResolver
from ..pipeline.sweeper import RetrySweeper
from ..pipeline.watcher import PromotionWatcher
from ..storage import QueueStore
from ..transports import HttpGatewayTransport, MqttTransport, Transport

log = structlog.get_logger()


class Relay:
    """
    Store-and-forward relay.

    Construction only wires components together; nothing touches the disk
    or the network until ``start``.
    """

    def __init__(
        self,
        settings: Settings,
        metrics: Metrics | None = None,
        transports: Sequence[Transport] | None = None,
    ):
        self.settings = settings
        self.metrics = metrics
        if transports is None:
            transports = _create_transports(settings)

        self.store = QueueStore(settings.MESSAGE_DIRECTORY)
        self.counters = DeliveryCounters()
        self.sink = IngestionSink(self.store, metrics=metrics)
        self.attempter = DeliveryAttempter(transports, timeout=settings.SEND_TIMEOUT, metrics=metrics)
        self.resolver = OutcomeResolver(self.store, self.counters)
        self.watcher = PromotionWatcher(
            self.store,
            self.attempter,
            self.resolver,
            poll_interval=settings.POLL_INTERVAL,
            max_concurrent=settings.MAX_CONCURRENT_DELIVERIES,
        )
        self.sweeper = RetrySweeper(self.store, interval=settings.SWEEP_INTERVAL, metrics=metrics)
        self.reporter = CounterReporter(
            self.sink, self.counters, settings.DEVICE_NAME, interval=settings.SWEEP_INTERVAL
        )
        self.udp: UdpListener | None = None
        self._timers: list[asyncio.Task] = []
        self.running = False

    @property
    def transports(self) -> list[Transport]:
        return self.attempter.transports

    async def start(self, with_udp: bool = True) -> None:
        """Create the queue layout, reconcile leftovers, then start loops and timers."""
        if self.running:
            return
        log.info(
            "relay.starting",
            device=self.settings.DEVICE_NAME,
            directory=self.settings.MESSAGE_DIRECTORY,
            transports=[t.name for t in self.transports],
        )
        self.store.ensure_layout()
        await self.sweeper.reconcile()
        await self.sweeper.refresh_depth()
        self.watcher.start()
        self._timers = [
            asyncio.create_task(self.sweeper.run(), name="retry-sweeper"),
            asyncio.create_task(self.reporter.run(), name="counter-reporter"),
        ]
        self.running = True
        if with_udp and self.settings.UDP_PORT:
            try:
                self.udp = await start_udp_listener(
                    self.sink,
                    self.settings.UDP_HOST,
                    self.settings.UDP_PORT,
                    max_size=self.settings.MAX_EVENT_SIZE,
                )
            except OSError as exc:
                log.error("relay.udp_start_failed", port=self.settings.UDP_PORT, error=str(exc))
                await self.stop()
                raise

    async def stop(self) -> None:
        if not self.running:
            return
        if self.udp is not None:
            self.udp.close()
            self.udp = None
        for task in self._timers:
            task.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers = []
        await self.watcher.stop()
        await self.attempter.close()
        self.running = False
        log.info("relay.stopped")


def _create_transports(settings: Settings) -> list[Transport]:
    """
    Build the transports enabled by configuration.

    A missing address disables that transport; it never fails startup.
    """
    transports: list[Transport] = []
    if settings.GATEWAY_URL:
        transports.append(
            HttpGatewayTransport(
                settings.GATEWAY_URL,
                api_key=settings.API_KEY,
                success_status=settings.GATEWAY_SUCCESS_STATUS,
                timeout=settings.SEND_TIMEOUT,
            )
        )
        log.info("transport.enabled", type="http", url=settings.GATEWAY_URL)
    else:
        log.warning("transport.disabled", type="http", reason="GATEWAY_URL not configured")

    if settings.MQTT_BROKER:
        try:
            transports.append(MqttTransport(settings.MQTT_BROKER, qos=settings.MQTT_QOS, timeout=settings.SEND_TIMEOUT))
            log.info("transport.enabled", type="mqtt", broker=settings.MQTT_BROKER)
        except ValueError as e:
            log.error("transport.disabled", type="mqtt", reason=str(e))
    else:
        log.warning("transport.disabled", type="mqtt", reason="MQTT_BROKER not configured")

    if not transports:
        log.warning("transport.none_configured", effect="records stay in the retry cycle")
    return transports
