"""
Edge relay - durable store-and-forward of device telemetry.

Features:
- UDP and HTTP submission
- Directory-backed queue surviving crashes and restarts
- Forwarding to an HTTP gateway and/or MQTT broker with indefinite retry
- Structured logging, Prometheus metrics, health checks
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
import structlog

from . import __version__
from .api.router import router
from .config import Settings, get_settings
from .errors import StorageFault, ValidationFault
from .health import HealthChecker
from .logging import setup_logging, get_logger
from .metrics import Metrics
from .middleware import CorrelationIdMiddleware, MetricsMiddleware, PayloadLimitMiddleware
from .services.relay import Relay

logger = get_logger()


def _error_response(request: Request, status_code: int, exc: Exception, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.__class__.__name__,
            "message": message,
            "correlation_id": getattr(request.state, "correlation_id", None),
        },
    )


def create_app(settings: Settings | None = None, relay: Relay | None = None, start_relay: bool = True) -> FastAPI:
    """
    Build the HTTP application around a relay.

    Args:
        settings: Configuration (defaults to environment settings)
        relay: Relay to serve (defaults to one built from ``settings``)
        start_relay: Start and stop the relay with the application
    """
    settings = settings or get_settings()
    metrics = relay.metrics if relay is not None and relay.metrics is not None else Metrics(version=__version__)
    relay = relay or Relay(settings, metrics=metrics)
    health_checker = HealthChecker(relay, version=__version__)

    app = FastAPI(
        title="Edge Relay",
        version=__version__,
        description="Durable store-and-forward relay for device telemetry",
    )
    app.state.relay = relay

    # Added last runs first: correlation id, then metrics, then size limit
    app.add_middleware(PayloadLimitMiddleware, max_size=settings.MAX_EVENT_SIZE)
    app.add_middleware(MetricsMiddleware, metrics=metrics)
    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(router)
    app.mount("/metrics", make_asgi_app(registry=metrics.registry))

    @app.exception_handler(ValidationFault)
    async def validation_fault_handler(request: Request, exc: ValidationFault):
        return _error_response(request, 400, exc, exc.message)

    @app.exception_handler(StorageFault)
    async def storage_fault_handler(request: Request, exc: StorageFault):
        structlog.get_logger().error("http.storage_fault", error=exc.message, uid=exc.uid)
        return _error_response(request, 503, exc, "record could not be stored")

    @app.get("/health")
    async def health():
        """Liveness probe: 200 while the process is running."""
        return health_checker.liveness()

    @app.get("/health/ready")
    async def health_ready():
        """Readiness probe: 503 when the queue cannot accept records."""
        result = await health_checker.readiness()
        status_code = 200 if result["status"] == "ready" else 503
        return JSONResponse(result, status_code=status_code)

    @app.on_event("startup")
    async def startup_event():
        logger.info(
            "service_starting",
            version=__version__,
            env=settings.ENV,
            http_port=settings.HTTP_PORT,
            udp_port=settings.UDP_PORT,
        )
        if start_relay:
            await relay.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("service_stopping")
        if start_relay:
            await relay.stop()
        metrics.app_up.labels(service=metrics.service_name, version=__version__).set(0)

    return app


def run():
    import uvicorn

    settings = get_settings()
    setup_logging(json_output=settings.LOG_JSON, service_name="edgerelay")
    uvicorn.run(create_app(settings), host=settings.HTTP_HOST, port=settings.HTTP_PORT)


if __name__ == "__main__":
    run()
