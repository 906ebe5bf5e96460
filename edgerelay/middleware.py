"""
Middleware for observability and request limits.
"""
import uuid
import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
import structlog


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add correlation IDs to all requests.

    - Extracts correlation ID from X-Correlation-ID header if present
    - Generates new UUID if not present
    - Binds correlation ID to structlog context
    - Adds correlation ID to response headers
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            http_method=request.method,
            http_path=request.url.path,
        )

        response = await call_next(request)
        response.headers["x-correlation-id"] = correlation_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect HTTP metrics for Prometheus.

    - Records request count by method, path, status
    - Records request duration histogram
    - Tracks active requests
    """

    def __init__(self, app, metrics):
        super().__init__(app)
        self.metrics = metrics

    async def dispatch(self, request: Request, call_next):
        # Skip metrics endpoint to avoid recursion
        if request.url.path.startswith("/metrics"):
            return await call_next(request)

        active = self.metrics.http_requests_active.labels(service=self.metrics.service_name)
        active.inc()
        start_time = time.time()
        logger = structlog.get_logger()
        status = 500

        try:
            response = await call_next(request)
            status = response.status_code
            logger.info(
                "http_request",
                http_status=status,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
            return response

        except Exception as e:
            logger.error(
                "http_request_error",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
            raise

        finally:
            self.metrics.http_requests_total.labels(
                service=self.metrics.service_name,
                method=request.method,
                path=request.url.path,
                status=status,
            ).inc()
            self.metrics.http_request_duration.labels(
                service=self.metrics.service_name,
                method=request.method,
                path=request.url.path,
            ).observe(time.time() - start_time)
            active.dec()


class PayloadLimitMiddleware(BaseHTTPMiddleware):
    """Rejects submissions larger than ``max_size`` bytes with 413."""

    def __init__(self, app, max_size: int):
        super().__init__(app)
        self.max_size = max_size

    async def dispatch(self, request: Request, call_next):
        if request.method in ["POST", "PUT", "PATCH"]:
            content_length = request.headers.get("content-length")
            size = int(content_length) if content_length and content_length.isdigit() else None
            if size is None:
                # No usable header; starlette caches the body for the route
                size = len(await request.body())

            if size > self.max_size:
                structlog.get_logger().warning(
                    "payload.too_large", size=size, max_size=self.max_size, path=request.url.path
                )
                return JSONResponse(
                    status_code=413,
                    content={
                        "error": "PayloadTooLarge",
                        "message": f"Request payload exceeds maximum size of {self.max_size} bytes",
                        "max_size": self.max_size,
                        "received_size": size,
                    },
                )

        return await call_next(request)
