"""KPIFlow — Data Point Store.

Full resync replaces every stored point for the metric. Incremental sync
drops points older than the metric's cursor, replaces points whose timestamp
is already stored, inserts the rest, and moves the cursor forward. Either
way the write, including the cursor update, is a single transaction.
"""

import json
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from kpiflow.core.exceptions import PersistenceError
from kpiflow.core.logging import get_logger
from kpiflow.core.timeutils import as_utc
from kpiflow.models.metric_models import DataPoint, Metric
from kpiflow.models.transformer_models import NormalizedPoint

logger = get_logger("pipeline.store")

DELETE_CHUNK = 500


class SaveResult:
    """What a save did, for logs and the run result."""

    def __init__(
        self,
        written: int = 0,
        deleted: int = 0,
        below_cursor: int = 0,
        cursor: Optional[datetime] = None,
    ):
        self.written = written
        self.deleted = deleted
        self.below_cursor = below_cursor
        self.cursor = cursor

    def __repr__(self) -> str:
        return (
            f"<SaveResult written={self.written} deleted={self.deleted} "
            f"below_cursor={self.below_cursor} cursor={self.cursor}>"
        )


def count_points(session: Session, metric_id: int) -> int:
    return session.exec(
        select(func.count()).select_from(DataPoint).where(DataPoint.metric_id == metric_id)
    ).one()


def load_points(session: Session, metric_id: int) -> List[DataPoint]:
    return list(
        session.exec(
            select(DataPoint)
            .where(DataPoint.metric_id == metric_id)
            .order_by(DataPoint.timestamp)  # type: ignore
        ).all()
    )


def _to_row(metric_id: int, point: NormalizedPoint) -> DataPoint:
    return DataPoint(
        metric_id=metric_id,
        timestamp=point.timestamp,
        value=point.value,
        dimensions_json=json.dumps(point.dimensions, sort_keys=True) if point.dimensions else None,
        value_label=point.value_label,
    )


def save_points(
    session: Session,
    metric_id: int,
    points: List[NormalizedPoint],
    full_resync: bool,
    cursor: Optional[datetime] = None,
    track_cursor: bool = True,
) -> SaveResult:
    """Persist normalized points for a metric in one transaction.

    Args:
        full_resync: Delete every stored point first (snapshot metrics, hard refresh).
        cursor: The metric's current sync cursor (incremental mode only).
        track_cursor: Advance ``Metric.sync_cursor`` to the newest stored
            timestamp. The cursor never moves backward, even on full resync.

    Raises:
        PersistenceError: The transaction failed and was rolled back.
    """
    cursor = as_utc(cursor)
    result = SaveResult(cursor=cursor)

    # Later points win on duplicate timestamps
    unique: Dict[datetime, NormalizedPoint] = {}
    for p in points:
        unique[as_utc(p.timestamp)] = p

    if not full_resync and cursor is not None:
        kept = {ts: p for ts, p in unique.items() if ts >= cursor}
        result.below_cursor = len(unique) - len(kept)
        unique = kept

    try:
        if full_resync:
            deleted = session.exec(  # type: ignore
                delete(DataPoint)
                .where(DataPoint.metric_id == metric_id)
                .execution_options(synchronize_session=False)
            )
            result.deleted = deleted.rowcount or 0
        else:
            timestamps = list(unique.keys())
            for i in range(0, len(timestamps), DELETE_CHUNK):
                chunk = timestamps[i : i + DELETE_CHUNK]
                deleted = session.exec(  # type: ignore
                    delete(DataPoint)
                    .where(
                        DataPoint.metric_id == metric_id,
                        DataPoint.timestamp.in_(chunk),  # type: ignore
                    )
                    .execution_options(synchronize_session=False)
                )
                result.deleted += deleted.rowcount or 0

        session.add_all([_to_row(metric_id, p) for _, p in sorted(unique.items())])
        result.written = len(unique)

        if track_cursor and unique:
            newest = max(unique.keys())
            if cursor is None or newest > cursor:
                result.cursor = newest
                session.exec(  # type: ignore
                    update(Metric)
                    .where(Metric.id == metric_id)
                    .values(sync_cursor=result.cursor)
                    .execution_options(synchronize_session=False)
                )
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise PersistenceError(
            f"Could not save data points: {e.__class__.__name__}",
            context={"metric_id": metric_id},
        ) from e

    logger.info(
        f"Saved {result.written} data points "
        f"({'full resync' if full_resync else 'incremental'}, "
        f"{result.deleted} replaced, {result.below_cursor} below cursor)",
        extra={"metric_id": metric_id},
    )
    return result
