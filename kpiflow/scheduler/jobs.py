"""KPIFlow — Scheduler Jobs.

APScheduler interval job that refreshes every metric whose ``next_poll_at``
has come due.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import or_, update
from sqlmodel import Session, select

from kpiflow.ai.base_provider import AIProvider
from kpiflow.config import settings
from kpiflow.core.logging import get_logger
from kpiflow.core.metric_templates import POLL_INTERVALS, PollFrequency
from kpiflow.core.timeutils import utcnow
from kpiflow.database import engine
from kpiflow.models.metric_models import Metric
from kpiflow.pipeline.orchestrator import refresh_metric_and_charts
from kpiflow.pipeline.runner import lock_available

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler()

JOB_ID = "poll_due_metrics"


def _default_session() -> Session:
    return Session(engine)


def find_due_metrics(session: Session, now: datetime, limit: int) -> List[int]:
    """Ids of non-manual metrics that are due, oldest-due first.

    A metric whose run lock went stale counts as idle, so a crashed worker
    does not take it out of rotation.
    """
    rows = session.exec(
        select(Metric.id)
        .where(
            or_(Metric.next_poll_at.is_(None), Metric.next_poll_at <= now),  # type: ignore
            Metric.poll_frequency != PollFrequency.MANUAL.value,
            lock_available(now),
        )
        .order_by(Metric.next_poll_at.asc().nulls_first(), Metric.id)  # type: ignore
        .limit(limit)
    ).all()
    return list(rows)


def claim_metric(session: Session, metric_id: int, now: datetime) -> bool:
    """Advance ``next_poll_at`` before running, so each due slot runs once.

    Returns False when another scheduler instance already claimed the slot.
    """
    metric = session.get(Metric, metric_id)
    if metric is None:
        return False
    interval = POLL_INTERVALS.get(metric.poll_frequency, POLL_INTERVALS["daily"])
    result = session.exec(  # type: ignore
        update(Metric)
        .where(
            Metric.id == metric_id,
            or_(Metric.next_poll_at.is_(None), Metric.next_poll_at <= now),  # type: ignore
        )
        .values(next_poll_at=now + interval)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount == 1


async def poll_due_metrics(
    session_factory: Optional[Callable[[], Session]] = None,
    data_source: Optional[Any] = None,
    ai_provider: Optional[AIProvider] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Refresh due metrics with bounded concurrency. One failure never stops the batch."""
    session_factory = session_factory or _default_session
    now = now or utcnow()

    with session_factory() as session:
        due = find_due_metrics(session, now, settings.poll_batch_size)

    if not due:
        logger.info("⏰ No metrics due")
        return {"due": 0, "refreshed": 0, "failed": 0, "skipped": 0, "errors": {}}

    logger.info(f"⏰ {len(due)} metrics due for refresh")
    semaphore = asyncio.Semaphore(max(1, settings.poll_concurrency))
    summary: Dict[str, Any] = {"due": len(due), "refreshed": 0, "failed": 0, "skipped": 0, "errors": {}}

    async def refresh_one(metric_id: int) -> None:
        async with semaphore:
            with session_factory() as session:
                try:
                    if not claim_metric(session, metric_id, now):
                        summary["skipped"] += 1
                        return
                    result = await refresh_metric_and_charts(
                        session, metric_id, data_source=data_source, ai_provider=ai_provider
                    )
                except Exception as e:
                    logger.exception("Scheduled refresh crashed", extra={"metric_id": metric_id})
                    summary["failed"] += 1
                    summary["errors"][metric_id] = str(e)
                    return

            if result.success:
                summary["refreshed"] += 1
            else:
                summary["failed"] += 1
                summary["errors"][metric_id] = result.error
                logger.warning(f"Scheduled refresh failed: {result.error}", extra={"metric_id": metric_id})

    await asyncio.gather(*(refresh_one(metric_id) for metric_id in due))

    logger.info(
        f"✅ Poll complete: {summary['refreshed']} refreshed, "
        f"{summary['failed']} failed, {summary['skipped']} skipped"
    )
    return summary


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler.add_job(
        poll_due_metrics,
        "interval",
        minutes=settings.poll_interval_minutes,
        id=JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Polling every {settings.poll_interval_minutes} minutes")


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
