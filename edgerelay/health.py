"""
Health checks for liveness and readiness probes.
"""
from datetime import datetime, timezone
from typing import Dict, Any, TYPE_CHECKING
import os
import psutil
from .logging import get_logger
from .storage import QueueState

if TYPE_CHECKING:
    from .services.relay import Relay

logger = get_logger()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HealthChecker:
    """
    Health checker for the relay.

    Provides:
    - Liveness checks (is the process running?)
    - Readiness checks (can the relay durably accept and forward records?)
    """

    def __init__(self, relay: "Relay", service_name: str = "edgerelay", version: str = "0.1.0"):
        self.relay = relay
        self.service_name = service_name
        self.version = version

    def liveness(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "service": self.service_name,
            "version": self.version,
            "timestamp": _timestamp(),
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness check.

        Checks:
        - Queue directory present and writable
        - Free disk space under the queue directory
        - Configured transports (warning only: records keep queueing)
        - Retry backlog size

        Returns:
            dict: Readiness status with detailed check results
        """
        checks = {
            "storage": self._check_storage(),
            "disk_space": self._check_disk_space(),
            "transports": self._check_transports(),
            "backlog": await self._check_backlog(),
        }
        overall_status = "ready"
        if any(check["status"] == "error" for check in checks.values()):
            overall_status = "not_ready"

        return {
            "status": overall_status,
            "service": self.service_name,
            "version": self.version,
            "timestamp": _timestamp(),
            "checks": checks,
        }

    def _check_storage(self) -> Dict[str, Any]:
        base = self.relay.store.base_dir
        missing = [s.value for s in QueueState if not self.relay.store.path(s).is_dir()]
        if missing:
            return {"status": "error", "path": str(base), "missing": missing}
        if not os.access(base / QueueState.INITIAL.value, os.W_OK):
            return {"status": "error", "path": str(base), "error": "initial state is not writable"}
        return {"status": "ok", "path": str(base)}

    def _check_disk_space(self, threshold_mb: float = 100.0) -> Dict[str, Any]:
        """
        Check available disk space on the queue's volume.

        Args:
            threshold_mb: Minimum available space in MB (default: 100.0)
        """
        try:
            path = self.relay.store.base_dir
            disk = psutil.disk_usage(str(path) if path.exists() else "/")
            available_mb = disk.free / (1024**2)

            if available_mb < threshold_mb:
                status = "error"
            elif available_mb < threshold_mb * 2:
                status = "warning"
            else:
                status = "ok"

            return {
                "status": status,
                "available_mb": round(available_mb, 2),
                "total_mb": round(disk.total / (1024**2), 2),
                "used_percent": disk.percent,
            }

        except Exception as e:
            logger.warning("disk_health_check_failed", error=str(e))
            return {
                "status": "error",
                "error": str(e),
            }

    def _check_transports(self) -> Dict[str, Any]:
        names = [t.name for t in self.relay.transports]
        if not names:
            return {"status": "warning", "configured": [], "message": "no transports configured"}
        return {"status": "ok", "configured": names}

    async def _check_backlog(self) -> Dict[str, Any]:
        try:
            depth = await self.relay.store.depth()
        except Exception as e:
            logger.warning("backlog_health_check_failed", error=str(e))
            return {"status": "error", "error": str(e)}
        return {"status": "ok", **{state.value: count for state, count in depth.items()}}
