"""Health check functionality for filedeps."""

import os
import time
from pathlib import Path
from typing import Any, Dict

import psutil

from . import __version__
from .exceptions import StorageUnavailable
from .metrics import HEALTH_CHECKS_TOTAL
from .storage.base import GraphStore


class HealthChecker:
    """Health checker for the store and the host."""

    def __init__(self, store: GraphStore):
        self.start_time = time.time()
        self.store = store

    def get_uptime_seconds(self) -> int:
        return int(time.time() - self.start_time)

    async def check_database(self) -> Dict[str, Any]:
        """Check store connectivity."""
        try:
            await self.store.ping()
        except StorageUnavailable as e:
            return {"status": "error", "error": str(e)}
        return {"status": "ok", "backend": type(self.store).__name__}

    def check_disk_space(self) -> Dict[str, Any]:
        """Check disk space availability."""
        stat = os.statvfs(Path.cwd())
        total = stat.f_bsize * stat.f_blocks
        free = stat.f_bsize * stat.f_bavail
        used_percent = ((total - free) / total) * 100 if total else 0.0

        result = {
            "status": "ok",
            "total_gb": round(total / (1024**3), 2),
            "free_gb": round(free / (1024**3), 2),
            "used_percent": round(used_percent, 2),
        }
        # Less than 10% free is unhealthy
        if used_percent > 90:
            result["status"] = "error"
            result["error"] = "Low disk space"
        return result

    def check_memory(self) -> Dict[str, Any]:
        memory = psutil.virtual_memory()
        return {
            "status": "ok",
            "total_gb": round(memory.total / (1024**3), 2),
            "available_gb": round(memory.available / (1024**3), 2),
            "used_percent": round(memory.percent, 2),
        }

    def quick_health(self) -> Dict[str, Any]:
        """Quick health check - just basic service status."""
        HEALTH_CHECKS_TOTAL.labels(endpoint="quick", status="ok").inc()
        return {
            "status": "healthy",
            "version": __version__,
            "uptime_seconds": self.get_uptime_seconds(),
        }

    async def readiness_health(self) -> Dict[str, Any]:
        """Readiness check - verify the store can serve requests."""
        checks = {"database": await self.check_database()}
        all_ok = all(check.get("status") == "ok" for check in checks.values())

        HEALTH_CHECKS_TOTAL.labels(endpoint="ready", status="ok" if all_ok else "error").inc()

        return {
            "status": "ready" if all_ok else "not_ready",
            "version": __version__,
            "uptime_seconds": self.get_uptime_seconds(),
            "checks": checks,
        }

    async def deep_health(self) -> Dict[str, Any]:
        """Deep health check - store plus host resources."""
        checks = {
            "database": await self.check_database(),
            "disk_space": self.check_disk_space(),
            "memory": self.check_memory(),
        }
        all_ok = all(check.get("status") == "ok" for check in checks.values())

        HEALTH_CHECKS_TOTAL.labels(endpoint="deep", status="ok" if all_ok else "error").inc()

        return {
            "status": "healthy" if all_ok else "unhealthy",
            "version": __version__,
            "uptime_seconds": self.get_uptime_seconds(),
            "checks": checks,
        }
