"""MQTT broker transport."""
from urllib.parse import urlsplit
import aiomqtt
import structlog

from .base import Transport
from ..errors import DeliveryFault
from ..records import Record

log = structlog.get_logger()

DEFAULT_MQTT_PORT = 1883


def parse_broker_address(address: str) -> tuple[str, int]:
    """Split ``host[:port]`` or ``mqtt://host[:port]`` into host and port."""
    if "://" not in address:
        address = f"mqtt://{address}"
    parts = urlsplit(address)
    if not parts.hostname:
        raise ValueError(f"invalid MQTT broker address: {address!r}")
    return parts.hostname, parts.port or DEFAULT_MQTT_PORT


class MqttTransport(Transport):
    """Publishes the record's payload on a topic named after its source.

    A connection is opened per publish; the relay forwards small, infrequent
    records and a held connection would need its own reconnect handling.
    """

    name = "mqtt"

    def __init__(self, broker: str, qos: int = 1, timeout: float = 2.0):
        self.hostname, self.port = parse_broker_address(broker)
        self.qos = qos
        self.timeout = timeout

    def _client(self) -> aiomqtt.Client:
        return aiomqtt.Client(hostname=self.hostname, port=self.port, timeout=self.timeout)

    async def send(self, content: bytes, record: Record) -> None:
        try:
            async with self._client() as client:
                await client.publish(record.source, payload=record.payload_bytes(), qos=self.qos, timeout=self.timeout)
        except aiomqtt.MqttError as e:
            raise DeliveryFault(f"publish to {self.hostname}:{self.port} failed: {e}", uid=record.uid, transport=self.name) from e
        log.debug("mqtt.published", uid=record.uid, topic=record.source)
