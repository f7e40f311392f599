"""Metricpipe — Scheduler Jobs.

APScheduler interval job that soft-refreshes integration metrics whose
``next_poll_at`` has passed.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session, select

from app.config import settings
from app.database import new_session
from app.models.metric_models import Metric, utc_now
from app.models.pipeline_models import TaskType
from app.pipeline.orchestrator import start_run
from app.pipeline.state import RunConflictError
from app.core.logging import get_logger

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler()

POLL_INTERVALS: Dict[str, timedelta] = {
    "frequent": timedelta(minutes=15),
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
}


def calculate_next_poll(frequency: str, now: Optional[datetime] = None) -> datetime:
    return (now or utc_now()) + POLL_INTERVALS.get(frequency, POLL_INTERVALS["daily"])


def poll_due_metrics(session: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """Start a soft refresh for every due, idle integration metric.

    Must be called from the event loop; the refreshes run as background tasks.
    """
    now = now or utc_now()
    due = session.exec(
        select(Metric)
        .where(
            Metric.next_poll_at.is_not(None),
            Metric.next_poll_at <= now,
            Metric.poll_frequency != "manual",
            Metric.template_id.is_not(None),
            Metric.integration_id.is_not(None),
        )
        .order_by(Metric.next_poll_at)
        .limit(settings.poll_batch_size)
    ).all()

    results = {"processed": 0, "started": 0, "skipped": 0}
    for metric in due:
        results["processed"] += 1
        metric.next_poll_at = calculate_next_poll(metric.poll_frequency, now)
        session.add(metric)
        session.commit()
        try:
            start_run(session, metric, TaskType.SOFT_REFRESH)
            results["started"] += 1
        except RunConflictError:
            results["skipped"] += 1
            logger.info("Metric busy; poll skipped", extra={"metric_id": metric.id})

    logger.info(
        f"Poll run: {results['started']} started, {results['skipped']} skipped "
        f"of {results['processed']} due"
    )
    return results


async def poll_metrics_job():
    """Scheduled entry point for metric polling."""
    try:
        with new_session() as session:
            poll_due_metrics(session)
    except Exception as e:
        logger.error(f"Scheduled metric poll failed: {e}", exc_info=True)


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler.add_job(
        poll_metrics_job,
        "interval",
        minutes=settings.poll_interval_minutes,
        id="poll_metrics",
        replace_existing=True,
        misfire_grace_time=300,
        max_instances=1,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Polling metrics every {settings.poll_interval_minutes} min")


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
