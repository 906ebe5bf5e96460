"""Edge relay: durable store-and-forward of device telemetry."""

__version__ = "0.1.0"
