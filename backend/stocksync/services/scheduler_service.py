"""Background task scheduler for periodic jobs (health checks, repair queue)."""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from stocksync.core.config import settings
from stocksync.db.session import session_scope

logger = logging.getLogger(__name__)


class TaskScheduler:
    """Lightweight asyncio-based task scheduler.

    Runs registered tasks at fixed intervals. Synchronous tasks run in a
    worker thread so database work never blocks the event loop. Scheduler
    state is ephemeral; the repair queue itself is persisted.
    """

    def __init__(self, tick_seconds: float = 5.0):
        self._tasks: Dict[str, Dict[str, Any]] = {}
        self._running = False
        self._tick_seconds = tick_seconds

    async def start(self):
        """Start the scheduler loop."""
        self._running = True
        logger.info("Task scheduler started")

        while self._running:
            await self.run_due()
            await asyncio.sleep(self._tick_seconds)

    async def run_due(self, now: Optional[datetime] = None):
        now = now or datetime.now(timezone.utc)
        for name, task in list(self._tasks.items()):
            if now < task["next_run"]:
                continue
            try:
                if inspect.iscoroutinefunction(task["func"]):
                    await task["func"]()
                else:
                    await asyncio.to_thread(task["func"])
                task["last_run"] = now
                task["run_count"] = task.get("run_count", 0) + 1
                task["last_error"] = None
                logger.debug(f"Scheduled task '{name}' completed")
            except Exception as e:
                task["last_error"] = str(e)
                logger.error(f"Scheduled task '{name}' failed: {e}", exc_info=True)
            task["next_run"] = now + task["interval"]

    def stop(self):
        self._running = False

    def add_task(self, name: str, func: Callable, interval_seconds: int, initial_delay: int = 10):
        self._tasks[name] = {
            "func": func,
            "interval": timedelta(seconds=interval_seconds),
            "next_run": datetime.now(timezone.utc) + timedelta(seconds=initial_delay),
            "last_run": None,
            "run_count": 0,
            "last_error": None,
        }
        logger.info(f"Scheduled task '{name}' every {interval_seconds}s")

    def remove_task(self, name: str):
        self._tasks.pop(name, None)

    def get_status(self) -> Dict[str, Any]:
        return {
            name: {
                "last_run": t["last_run"].isoformat() if t["last_run"] else None,
                "next_run": t["next_run"].isoformat(),
                "interval_seconds": int(t["interval"].total_seconds()),
                "run_count": t.get("run_count", 0),
                "last_error": t.get("last_error"),
            }
            for name, t in self._tasks.items()
        }


def run_health_checks() -> int:
    """Check every active store and remediate the critical ones."""
    from stocksync.services.sync_health_monitor import SyncHealthMonitor

    with session_scope() as db:
        results = SyncHealthMonitor(db).check_all_and_remediate()
    remediated = sum(1 for r in results if r.remediation_triggered)
    if remediated:
        logger.info(f"Health check remediated {remediated} of {len(results)} stores")
    return remediated


def process_repair_queue() -> int:
    """Run due repair jobs, one batch per tick."""
    from stocksync.services.repair_orchestrator import RepairOrchestrator

    with session_scope() as db:
        return RepairOrchestrator(db).run_pending().processed


def recover_stale_jobs() -> int:
    from stocksync.services.repair_orchestrator import RepairOrchestrator

    with session_scope() as db:
        return RepairOrchestrator(db).recover_stale_jobs()


def register_default_tasks(target: "TaskScheduler") -> None:
    target.add_task("sync_health_check", run_health_checks, settings.health_check_interval_seconds)
    target.add_task("repair_queue", process_repair_queue, settings.repair_interval_seconds)


scheduler = TaskScheduler()
