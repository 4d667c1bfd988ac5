# src/gatherpay/infrastructure/monitoring/system_monitor.py
"""
Process / host health snapshot served by `GET /health`.
"""

import logging
import time
from typing import Any, Dict, Optional

import psutil
from sqlalchemy import text

from gatherpay.infrastructure.db.uow import SessionScope

log = logging.getLogger(__name__)

MEMORY_WARN_PERCENT = 80
CPU_WARN_PERCENT = 85
DISK_WARN_PERCENT = 90


class SystemMonitor:
    def __init__(self, session_scope: SessionScope, scheduler=None):
        self.session_scope = session_scope
        self.scheduler = scheduler

    def check_database(self) -> bool:
        try:
            with self.session_scope() as s:
                s.execute(text("SELECT 1"))
            return True
        except Exception as e:
            log.error(f"Database health check failed: {e}")
            return False

    def host_metrics(self) -> Dict[str, Any]:
        memory = psutil.virtual_memory()
        # Non-blocking: compares against the previous call.
        cpu_percent = psutil.cpu_percent(interval=None)
        disk = psutil.disk_usage("/")
        warnings = []
        if memory.percent > MEMORY_WARN_PERCENT:
            warnings.append(f"High memory usage: {memory.percent}%")
        if cpu_percent > CPU_WARN_PERCENT:
            warnings.append(f"High CPU usage: {cpu_percent}%")
        if disk.percent > DISK_WARN_PERCENT:
            warnings.append(f"High disk usage: {disk.percent}%")
        if warnings:
            log.warning(f"System warnings: {warnings}")
        return {
            "memory_used_percent": memory.percent,
            "cpu_percent": cpu_percent,
            "disk_used_percent": disk.percent,
            "warnings": warnings,
        }

    def check_system_health(self) -> Dict[str, Any]:
        database_ok = self.check_database()
        scheduler_running: Optional[bool] = self.scheduler.running if self.scheduler is not None else None
        try:
            host = self.host_metrics()
        except Exception as e:
            log.error(f"Host metrics unavailable: {e}")
            host = {"error": str(e)}
        return {
            "status": "ok" if database_ok else "degraded",
            "timestamp": time.time(),
            "database": database_ok,
            "scheduler_running": scheduler_running,
            "host": host,
        }
