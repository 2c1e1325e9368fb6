from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from conftest import ORG_ID
from kpiflow.core.timeutils import as_utc
from kpiflow.models.metric_models import Metric
from kpiflow.models.pipeline_models import RefreshResult
from kpiflow.scheduler import jobs
from kpiflow.scheduler.jobs import claim_metric, find_due_metrics, poll_due_metrics

UTC = timezone.utc
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def add_metric(session, integration, name, next_poll_at=None, poll_frequency="daily", **kwargs):
    metric = Metric(
        name=name,
        organization_id=ORG_ID,
        integration_id=integration.id,
        template_id="github-followers-count",
        poll_frequency=poll_frequency,
        next_poll_at=next_poll_at,
        **kwargs,
    )
    session.add(metric)
    session.commit()
    session.refresh(metric)
    return metric


def test_find_due_metrics_orders_oldest_first(session, integration):
    late = add_metric(session, integration, "late", NOW - timedelta(hours=1))
    oldest = add_metric(session, integration, "oldest", NOW - timedelta(days=2))
    never = add_metric(session, integration, "never polled")
    add_metric(session, integration, "future", NOW + timedelta(hours=1))
    add_metric(session, integration, "manual", NOW - timedelta(days=5), poll_frequency="manual")
    add_metric(session, integration, "busy", NOW - timedelta(days=3), refresh_status="fetching-api-data")

    assert find_due_metrics(session, NOW, limit=10) == [never.id, oldest.id, late.id]
    assert find_due_metrics(session, NOW, limit=2) == [never.id, oldest.id]


def test_find_due_metrics_picks_up_stale_locks(session, integration):
    crashed = add_metric(
        session,
        integration,
        "crashed",
        NOW - timedelta(days=3),
        refresh_status="fetching-api-data",
        refresh_started_at=NOW - timedelta(days=3),
    )
    add_metric(
        session,
        integration,
        "running",
        NOW - timedelta(days=2),
        refresh_status="fetching-api-data",
        refresh_started_at=NOW - timedelta(minutes=1),
    )

    assert find_due_metrics(session, NOW, limit=10) == [crashed.id]


def test_claim_advances_next_poll_once(session, integration):
    metric = add_metric(session, integration, "hourly", NOW - timedelta(minutes=5), poll_frequency="hourly")

    assert claim_metric(session, metric.id, NOW) is True
    assert claim_metric(session, metric.id, NOW) is False
    assert as_utc(session.get(Metric, metric.id).next_poll_at) == NOW + timedelta(hours=1)


@pytest.mark.asyncio
async def test_poll_continues_past_failures(session, session_factory, integration):
    first = add_metric(session, integration, "first", NOW - timedelta(hours=2))
    second = add_metric(session, integration, "second", NOW - timedelta(hours=1))

    refresh = AsyncMock(
        side_effect=[
            RefreshResult(success=False, error="github returned HTTP 502: bad gateway"),
            RefreshResult(success=True, data_point_count=1),
        ]
    )
    with patch.object(jobs, "refresh_metric_and_charts", refresh):
        summary = await poll_due_metrics(session_factory=session_factory, now=NOW)

    assert summary["due"] == 2
    assert summary["refreshed"] == 1
    assert summary["failed"] == 1
    assert summary["errors"] == {first.id: "github returned HTTP 502: bad gateway"}
    assert [call.args[1] for call in refresh.await_args_list] == [first.id, second.id]

    session.expire_all()
    for metric_id in (first.id, second.id):
        assert as_utc(session.get(Metric, metric_id).next_poll_at) == NOW + timedelta(days=1)


@pytest.mark.asyncio
async def test_poll_survives_unexpected_exception(session, session_factory, integration):
    crashing = add_metric(session, integration, "crashing", NOW - timedelta(hours=2))
    healthy = add_metric(session, integration, "healthy", NOW - timedelta(hours=1))

    refresh = AsyncMock(side_effect=[RuntimeError("boom"), RefreshResult(success=True)])
    with patch.object(jobs, "refresh_metric_and_charts", refresh):
        summary = await poll_due_metrics(session_factory=session_factory, now=NOW)

    assert summary["failed"] == 1
    assert summary["refreshed"] == 1
    assert summary["errors"][crashing.id] == "boom"
    session.expire_all()
    assert as_utc(session.get(Metric, healthy.id).next_poll_at) > NOW


@pytest.mark.asyncio
async def test_poll_respects_batch_size(session, session_factory, integration):
    for i in range(5):
        add_metric(session, integration, f"m{i}", NOW - timedelta(minutes=10 + i))

    refresh = AsyncMock(return_value=RefreshResult(success=True))
    with patch.object(jobs, "refresh_metric_and_charts", refresh), patch.object(
        jobs.settings, "poll_batch_size", 3
    ):
        summary = await poll_due_metrics(session_factory=session_factory, now=NOW)

    assert summary["due"] == 3
    assert refresh.await_count == 3


@pytest.mark.asyncio
async def test_poll_with_nothing_due(session_factory):
    refresh = AsyncMock()
    with patch.object(jobs, "refresh_metric_and_charts", refresh):
        summary = await poll_due_metrics(session_factory=session_factory, now=NOW)

    assert summary["due"] == 0
    refresh.assert_not_awaited()


def test_start_scheduler_registers_interval_job():
    with patch.object(jobs, "scheduler") as mock_scheduler:
        jobs.start_scheduler()

    kwargs = mock_scheduler.add_job.call_args.kwargs
    assert mock_scheduler.add_job.call_args.args == (poll_due_metrics, "interval")
    assert kwargs["minutes"] == 15
    assert kwargs["replace_existing"] is True
    mock_scheduler.start.assert_called_once()
