"""UDP submissions: ``<source> <payload>`` text datagrams."""
import asyncio
import structlog

from ..errors import RelayFault, ValidationFault
from ..pipeline.ingest import IngestionSink
from ..records import Record

log = structlog.get_logger()


def parse_datagram(data: bytes) -> Record:
    """
    Split a datagram at its first space into source and raw payload.

    Raises:
        ValidationFault: no space-separated source precedes the payload
    """
    source, separator, payload = data.decode("utf-8", errors="replace").partition(" ")
    source = source.strip()
    if not separator or not source:
        raise ValidationFault("datagram is not <source> <payload>")
    return Record(source=source, payload=payload.strip())


class UdpListener(asyncio.DatagramProtocol):
    """Datagram protocol handing each parsed datagram to the ingestion sink."""

    def __init__(self, sink: IngestionSink, max_size: int = 65536):
        self._sink = sink
        self.max_size = max_size
        self._pending: set[asyncio.Task] = set()
        self.transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport):
        self.transport = transport
        log.info("udp.listening", address=transport.get_extra_info("sockname"))

    def datagram_received(self, data: bytes, addr):
        log.debug("udp.received", size=len(data), peer=f"{addr[0]}:{addr[1]}")
        if len(data) > self.max_size:
            log.warning("udp.too_large", size=len(data), max_size=self.max_size, peer=addr[0])
            return
        try:
            record = parse_datagram(data)
        except ValidationFault as e:
            log.warning("udp.rejected", reason=e.message, peer=addr[0])
            return
        task = asyncio.get_running_loop().create_task(self._store(record, addr))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _store(self, record: Record, addr) -> None:
        try:
            await self._sink.accept(record, channel="udp")
        except RelayFault as e:
            # No reply channel: the datagram is dropped and the fault logged
            log.error("udp.store_failed", error=e.message, peer=addr[0])

    def error_received(self, exc):
        log.warning("udp.error", error=str(exc))

    def close(self) -> None:
        if self.transport is not None:
            self.transport.close()
            self.transport = None


async def start_udp_listener(sink: IngestionSink, host: str, port: int, max_size: int = 65536) -> UdpListener:
    loop = asyncio.get_running_loop()
    _, protocol = await loop.create_datagram_endpoint(
        lambda: UdpListener(sink, max_size=max_size),
        local_addr=(host, port),
    )
    return protocol
