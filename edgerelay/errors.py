"""Fault taxonomy for the relay pipeline."""


class RelayFault(Exception):
    """Base class for faults raised while handling a single record."""

    def __init__(self, message: str, uid: str | None = None):
        super().__init__(message)
        self.message = message
        self.uid = uid


class ValidationFault(RelayFault):
    """An inbound submission cannot become a record (e.g. missing source)."""


class StorageFault(RelayFault):
    """A queue write or move did not complete."""


class DeliveryFault(RelayFault):
    """A transport raised, timed out, or answered with a failure code."""

    def __init__(self, message: str, uid: str | None = None, transport: str | None = None):
        super().__init__(message, uid=uid)
        self.transport = transport
