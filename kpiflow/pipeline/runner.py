"""KPIFlow — Pipeline Runner.

Owns a metric's run lock and the step-by-step audit trail. All writes to
``Metric`` here are single-row UPDATE statements, so the row itself is the
serialization point between concurrent schedulers and API workers.
"""

import json
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from kpiflow.config import settings
from kpiflow.core.exceptions import MetricBusyError, MetricNotFoundError, PersistenceError, PipelineError
from kpiflow.core.logging import context_logger
from kpiflow.core.timeutils import as_utc, utcnow
from kpiflow.models.metric_models import Metric
from kpiflow.models.pipeline_models import PipelineRun, PipelineStepLog
from kpiflow.pipeline.steps import PipelineMode, PipelineStep, step_label


def lock_available(now: datetime):
    """SQL predicate: no run holds the lock, or its holder went stale."""
    stale_cutoff = now - timedelta(minutes=settings.refresh_lock_timeout_minutes)
    return or_(
        Metric.refresh_status.is_(None),  # type: ignore
        Metric.refresh_started_at < stale_cutoff,  # type: ignore
    )


class PipelineRunner:
    """Tracks one run for one metric: lock, current step, per-step logs."""

    def __init__(self, session: Session, metric_id: int):
        self.session = session
        self.metric_id = metric_id
        self.run_id: Optional[int] = None
        self.completed_steps: List[str] = []
        self.log = context_logger("pipeline.runner", metric_id=metric_id)

    # ── Lock ──

    def acquire(self, first_step: PipelineStep) -> bool:
        """Compare-and-swap the run lock. False if another run holds it.

        A lock older than ``refresh_lock_timeout_minutes`` is treated as left
        behind by a crashed worker and may be taken over.
        """
        now = utcnow()
        result = self.session.exec(  # type: ignore
            update(Metric)
            .where(Metric.id == self.metric_id, lock_available(now))
            .values(refresh_status=first_step.value, refresh_started_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def start(self, mode: PipelineMode, planned: List[PipelineStep]) -> None:
        run = PipelineRun(
            metric_id=self.metric_id,
            mode=mode.value,
            planned_steps_json=json.dumps([s.value for s in planned]),
        )
        self.session.add(run)
        self.session.commit()
        self.run_id = run.id
        self.log.bind(run_id=run.id)
        self.log.info(f"Pipeline run started ({mode.value}, {len(planned)} steps)")

    # ── Steps ──

    def _set_status(self, step: PipelineStep) -> None:
        """Publish the current step. Aborts the run if the metric row is gone."""
        result = self.session.exec(  # type: ignore
            update(Metric)
            .where(Metric.id == self.metric_id)
            .values(refresh_status=step.value)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        if result.rowcount == 0:
            raise MetricNotFoundError(
                "Metric was deleted during refresh", context={"metric_id": self.metric_id}
            )

    def _log_step(
        self, step: PipelineStep, status: str, duration_ms: int, error: Optional[str] = None
    ) -> None:
        self.session.add(
            PipelineStepLog(
                run_id=self.run_id,
                step=step.value,
                status=status,
                duration_ms=duration_ms,
                error=error,
            )
        )
        self.session.commit()
        if status != "failed":
            self.completed_steps.append(step.value)

    async def run_step(self, step: PipelineStep, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run one step, recording its outcome and duration.

        Every failure leaves as a PipelineError carrying a readable message.
        """
        self._set_status(step)
        started = time.monotonic()
        try:
            result = await fn()
        except Exception as e:
            self.session.rollback()
            error = _as_pipeline_error(step, e)
            duration_ms = int((time.monotonic() - started) * 1000)
            self._safe_log_failure(step, duration_ms, error.message)
            self.log.warning(f"Step failed: {error.message}", extra={"step": step.value})
            raise error from e

        duration_ms = int((time.monotonic() - started) * 1000)
        self._log_step(step, "completed", duration_ms)
        self.log.info(
            f"Step completed: {step_label(step.value)}",
            extra={"step": step.value, "duration_ms": duration_ms},
        )
        return result

    def skip(self, step: PipelineStep, reason: str = "") -> None:
        """Record a planned step that had nothing to do (e.g. cache hit)."""
        self._set_status(step)
        self._log_step(step, "skipped", 0, error=None)
        self.log.info(f"Step skipped: {step_label(step.value)} {reason}".rstrip(), extra={"step": step.value})

    def _safe_log_failure(self, step: PipelineStep, duration_ms: int, message: str) -> None:
        try:
            self._log_step(step, "failed", duration_ms, error=message)
        except SQLAlchemyError as e:
            self.session.rollback()
            self.log.error(f"Could not record step failure: {e}")

    # ── Terminal states ──

    def complete(self, data_point_count: Optional[int], fetched: bool = True) -> None:
        """Release the lock and mark the run successful."""
        now = utcnow()
        values: dict = {"refresh_status": None, "refresh_started_at": None, "last_error": None, "updated_at": now}
        if fetched:
            values["last_fetched_at"] = now
        self.session.exec(  # type: ignore
            update(Metric)
            .where(Metric.id == self.metric_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self._finish_run("completed", data_point_count=data_point_count)
        self.session.commit()
        self.log.info(f"Pipeline run completed ({data_point_count} data points)")

    def fail(self, message: str) -> None:
        """Release the lock and record the error. Never raises."""
        try:
            self.session.rollback()
            self.session.exec(  # type: ignore
                update(Metric)
                .where(Metric.id == self.metric_id)
                .values(
                    refresh_status=None,
                    refresh_started_at=None,
                    last_error=message,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            self._finish_run("failed", error=message)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            self.log.error(f"Could not record pipeline failure: {e}")
        self.log.error(f"Pipeline run failed: {message}")

    def _finish_run(self, status: str, error: Optional[str] = None, data_point_count: Optional[int] = None) -> None:
        if self.run_id is None:
            return
        run = self.session.get(PipelineRun, self.run_id)
        if run is None:
            return
        run.status = status
        run.error = error
        run.data_point_count = data_point_count
        run.completed_at = utcnow()
        self.session.add(run)


def _as_pipeline_error(step: PipelineStep, e: Exception) -> PipelineError:
    if isinstance(e, PipelineError):
        return e
    if isinstance(e, SQLAlchemyError):
        return PersistenceError(
            f"Database error during {step.value}: {e.__class__.__name__}",
            context={"step": step.value},
        )
    return PipelineError(
        f"{step_label(step.value).rstrip('.')} failed: {e}",
        context={"step": step.value, "error_type": type(e).__name__},
    )


def lock_is_held(metric: Metric) -> bool:
    """True while a non-stale run holds the metric's lock."""
    if metric.refresh_status is None:
        return False
    if metric.refresh_started_at is None:
        return True
    stale_cutoff = utcnow() - timedelta(minutes=settings.refresh_lock_timeout_minutes)
    return as_utc(metric.refresh_started_at) >= stale_cutoff


def ensure_idle(metric: Metric) -> None:
    if lock_is_held(metric):
        raise MetricBusyError(
            "Metric is already refreshing",
            context={"metric_id": metric.id, "refresh_status": metric.refresh_status},
        )
