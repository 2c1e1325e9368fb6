from datetime import datetime, timezone

from kpiflow.core.timeutils import as_utc
from kpiflow.models.metric_models import Metric
from kpiflow.models.transformer_models import NormalizedPoint
from kpiflow.pipeline.store import count_points, load_points, save_points

UTC = timezone.utc


def pts(*pairs):
    return [NormalizedPoint(timestamp=ts, value=v) for ts, v in pairs]


def day(n):
    return datetime(2026, 10, n, tzinfo=UTC)


def test_full_resync_replaces_everything(session, metric):
    save_points(session, metric.id, pts((day(1), 1), (day(2), 2), (day(3), 3)), full_resync=True)
    result = save_points(session, metric.id, pts((day(5), 5)), full_resync=True)

    assert result.deleted == 3
    assert count_points(session, metric.id) == 1


def test_incremental_upserts_same_timestamps(session, metric):
    save_points(session, metric.id, pts((day(1), 1), (day(2), 2)), full_resync=False)
    cursor = session.get(Metric, metric.id).sync_cursor

    result = save_points(
        session, metric.id, pts((day(2), 20), (day(3), 30)), full_resync=False, cursor=cursor
    )

    stored = load_points(session, metric.id)
    assert [(as_utc(p.timestamp), p.value) for p in stored] == [(day(1), 1), (day(2), 20), (day(3), 30)]
    assert result.deleted == 1
    assert as_utc(session.get(Metric, metric.id).sync_cursor) == day(3)


def test_incremental_drops_points_below_cursor(session, metric):
    save_points(session, metric.id, pts((day(5), 5)), full_resync=False)

    result = save_points(
        session, metric.id, pts((day(1), 100), (day(5), 6)), full_resync=False, cursor=day(5)
    )

    assert result.below_cursor == 1
    assert [p.value for p in load_points(session, metric.id)] == [6]


def test_cursor_never_moves_backward(session, metric):
    save_points(session, metric.id, pts((day(10), 1)), full_resync=False)
    save_points(session, metric.id, pts((day(3), 1)), full_resync=True, cursor=day(10))

    assert as_utc(session.get(Metric, metric.id).sync_cursor) == day(10)


def test_snapshot_does_not_track_cursor(session, snapshot_metric):
    save_points(session, snapshot_metric.id, pts((day(1), 42)), full_resync=True, track_cursor=False)
    assert session.get(Metric, snapshot_metric.id).sync_cursor is None


def test_dimensions_and_labels_round_trip(session, metric):
    points = [
        NormalizedPoint(timestamp=day(1), value=3, dimensions={"country": "IN", "rank": 1}, value_label="top")
    ]
    save_points(session, metric.id, points, full_resync=True)

    stored = load_points(session, metric.id)[0]
    assert stored.dimensions == {"country": "IN", "rank": 1}
    assert stored.value_label == "top"


def test_saving_same_batch_twice_is_idempotent(session, metric):
    batch = pts((day(1), 1), (day(2), 2))
    save_points(session, metric.id, batch, full_resync=False)
    cursor = session.get(Metric, metric.id).sync_cursor
    save_points(session, metric.id, batch, full_resync=False, cursor=cursor)

    assert count_points(session, metric.id) == 2
