from .base import Transport
from .http_gateway import HttpGatewayTransport
from .mqtt import MqttTransport

__all__ = ["Transport", "HttpGatewayTransport", "MqttTransport"]
