"""HTTP gateway transport."""
import httpx
import structlog

from .base import Transport
from ..errors import DeliveryFault
from ..records import Record

log = structlog.get_logger()


class HttpGatewayTransport(Transport):
    """POSTs the serialized record to a gateway, authenticated by an API key header.

    Only the configured success status counts as delivered.
    """

    name = "http"

    def __init__(
        self,
        gateway_url: str,
        api_key: str = "",
        success_status: int = 202,
        timeout: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.gateway_url = gateway_url
        self.success_status = success_status
        self._headers = {"x-api-key": api_key, "content-type": "application/json"}
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, content: bytes, record: Record) -> None:
        try:
            response = await self._client.post(self.gateway_url, content=content, headers=self._headers)
        except httpx.HTTPError as e:
            raise DeliveryFault(f"gateway request failed: {e!r}", uid=record.uid, transport=self.name) from e

        if response.status_code != self.success_status:
            raise DeliveryFault(
                f"gateway answered {response.status_code}, expected {self.success_status}",
                uid=record.uid,
                transport=self.name,
            )
        log.debug("http.delivered", uid=record.uid, status_code=response.status_code)

    async def close(self) -> None:
        await self._client.aclose()
