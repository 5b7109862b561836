"""Tests for the background task scheduler."""

import asyncio
from datetime import datetime, timedelta, timezone

from stocksync.services.scheduler_service import TaskScheduler, register_default_tasks


def test_due_task_runs_once_per_interval():
    calls = []
    scheduler = TaskScheduler()
    scheduler.add_task("count", lambda: calls.append(1), interval_seconds=60, initial_delay=0)

    now = datetime.now(timezone.utc) + timedelta(seconds=1)
    asyncio.run(scheduler.run_due(now))
    asyncio.run(scheduler.run_due(now + timedelta(seconds=30)))
    asyncio.run(scheduler.run_due(now + timedelta(seconds=61)))

    assert len(calls) == 2
    assert scheduler.get_status()["count"]["run_count"] == 2


def test_task_not_due_is_skipped():
    calls = []
    scheduler = TaskScheduler()
    scheduler.add_task("later", lambda: calls.append(1), interval_seconds=60, initial_delay=300)

    asyncio.run(scheduler.run_due(datetime.now(timezone.utc)))
    assert calls == []
    assert scheduler.get_status()["later"]["last_run"] is None


def test_failing_task_records_error_and_keeps_schedule():
    def boom():
        raise RuntimeError("queue unavailable")

    scheduler = TaskScheduler()
    scheduler.add_task("boom", boom, interval_seconds=10, initial_delay=0)
    now = datetime.now(timezone.utc) + timedelta(seconds=1)

    asyncio.run(scheduler.run_due(now))

    status = scheduler.get_status()["boom"]
    assert status["last_error"] == "queue unavailable"
    assert status["next_run"] == (now + timedelta(seconds=10)).isoformat()


def test_remove_task():
    scheduler = TaskScheduler()
    register_default_tasks(scheduler)
    assert set(scheduler.get_status()) == {"sync_health_check", "repair_queue"}

    scheduler.remove_task("repair_queue")
    assert set(scheduler.get_status()) == {"sync_health_check"}
