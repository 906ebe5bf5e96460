"""Base interface for outbound delivery transports."""
from abc import ABC, abstractmethod
from ..records import Record


class Transport(ABC):
    """Abstract interface for a configured outbound delivery mechanism."""

    name: str = "transport"

    @abstractmethod
    async def send(self, content: bytes, record: Record) -> None:
        """
        Forward one record.

        Args:
            content: The record exactly as stored on disk
            record: The parsed record

        Raises:
            DeliveryFault: the collector did not accept the record. Any other
                exception is also treated as a failed attempt.
        """
        pass

    async def close(self) -> None:
        """Release connections held by the transport."""
        return None
