"""
End-to-end refresh runs against in-memory SQLite, a fake data source, a fake
AI provider and the real sandbox.
"""

import json
from datetime import timedelta

import pytest
from sqlmodel import select

from conftest import (
    BROKEN_CODE,
    COMMIT_ACTIVITY,
    SNAPSHOT_CODE,
    FakeAIProvider,
    FakeDataSource,
)
from kpiflow.core.exceptions import AuthExpiredError, DataSourceError
from kpiflow.core.timeutils import as_utc, utcnow
from kpiflow.models.metric_models import DashboardChart, Metric
from kpiflow.models.pipeline_models import PipelineRun, PipelineStepLog
from kpiflow.pipeline.orchestrator import (
    ALREADY_REFRESHING,
    refresh_metric_and_charts,
    regenerate_chart,
)
from kpiflow.pipeline.progress import get_progress
from kpiflow.pipeline.store import count_points, load_points
from kpiflow.transformers.chart import get_cached_chart_transformer
from kpiflow.transformers.ingestion import get_cached_ingestion_transformer


def step_statuses(session, run_id):
    logs = session.exec(
        select(PipelineStepLog).where(PipelineStepLog.run_id == run_id).order_by(PipelineStepLog.id)
    ).all()
    return {log.step: log.status for log in logs}


def latest_run(session, metric_id):
    return session.exec(
        select(PipelineRun).where(PipelineRun.metric_id == metric_id).order_by(PipelineRun.id.desc())
    ).first()


@pytest.mark.asyncio
async def test_soft_refresh_stores_points_and_chart(session, metric, chart, data_source, ai_provider):
    result = await refresh_metric_and_charts(
        session, metric.id, data_source=data_source, ai_provider=ai_provider
    )

    assert result.success is True
    assert result.data_point_count == 3
    assert [p.value for p in load_points(session, metric.id)] == [12, 7, 15]

    refreshed = session.get(Metric, metric.id)
    assert refreshed.refresh_status is None
    assert refreshed.last_error is None
    assert refreshed.last_fetched_at is not None
    assert as_utc(refreshed.sync_cursor).date().isoformat() == "2026-10-05"

    config = json.loads(session.get(DashboardChart, chart.id).chart_config_json)
    assert config["chart_type"] == "bar"
    assert config["cadence"] == "WEEKLY"
    assert [row["value"] for row in config["chart_data"]] == [12, 7, 15]
    assert data_source.calls == [("github", "conn-1", "/repos/acme/api/stats/commit_activity")]


@pytest.mark.asyncio
async def test_second_run_is_idempotent_and_reuses_cache(session, metric, chart, data_source, ai_provider):
    await refresh_metric_and_charts(session, metric.id, data_source=data_source, ai_provider=ai_provider)
    first_transformer = get_cached_ingestion_transformer(session, metric.id).id

    result = await refresh_metric_and_charts(
        session, metric.id, data_source=data_source, ai_provider=ai_provider
    )

    assert result.success is True
    assert count_points(session, metric.id) == 3
    assert ai_provider.count("ingestion") == 1
    assert ai_provider.count("chart") == 1
    assert get_cached_ingestion_transformer(session, metric.id).id == first_transformer

    statuses = step_statuses(session, latest_run(session, metric.id).id)
    assert statuses["generating-ingestion-transformer"] == "skipped"
    assert statuses["generating-chart-transformer"] == "skipped"


@pytest.mark.asyncio
async def test_force_regenerate_replaces_transformers(session, metric, chart, data_source, ai_provider):
    await refresh_metric_and_charts(session, metric.id, data_source=data_source, ai_provider=ai_provider)
    old_ingestion = get_cached_ingestion_transformer(session, metric.id).id
    old_chart = get_cached_chart_transformer(session, chart.id).id

    result = await refresh_metric_and_charts(
        session, metric.id, force_regenerate=True, data_source=data_source, ai_provider=ai_provider
    )

    assert result.success is True
    assert get_cached_ingestion_transformer(session, metric.id).id != old_ingestion
    assert get_cached_chart_transformer(session, chart.id).id != old_chart
    assert ai_provider.count("ingestion") == 2

    run = latest_run(session, metric.id)
    assert run.mode == "hard-refresh"
    assert len(run.planned_steps) == 9
    assert set(step_statuses(session, run.id).values()) == {"completed"}


@pytest.mark.asyncio
async def test_shape_change_regenerates_ingestion(session, metric, ai_provider):
    await refresh_metric_and_charts(
        session, metric.id, data_source=FakeDataSource(COMMIT_ACTIVITY), ai_provider=ai_provider
    )
    reshaped = [{**week, "author": "sam"} for week in COMMIT_ACTIVITY]

    result = await refresh_metric_and_charts(
        session, metric.id, data_source=FakeDataSource(reshaped), ai_provider=ai_provider
    )

    assert result.success is True
    assert ai_provider.count("ingestion") == 2


@pytest.mark.asyncio
async def test_fetch_failure_changes_nothing(session, metric, chart, ai_provider):
    failing = FakeDataSource(error=AuthExpiredError("github authorization expired", status_code=401))

    result = await refresh_metric_and_charts(
        session, metric.id, data_source=failing, ai_provider=ai_provider
    )

    assert result.success is False
    assert "authorization expired" in result.error
    assert count_points(session, metric.id) == 0
    assert session.get(DashboardChart, chart.id).chart_config_json is None
    assert ai_provider.calls == []

    refreshed = session.get(Metric, metric.id)
    assert refreshed.refresh_status is None
    assert refreshed.last_error == result.error
    assert refreshed.last_fetched_at is None
    assert step_statuses(session, latest_run(session, metric.id).id) == {"fetching-api-data": "failed"}


@pytest.mark.asyncio
async def test_failed_forced_regeneration_keeps_data_and_transformer(session, metric, chart, data_source):
    await refresh_metric_and_charts(session, metric.id, data_source=data_source, ai_provider=FakeAIProvider())
    transformer_id = get_cached_ingestion_transformer(session, metric.id).id

    result = await refresh_metric_and_charts(
        session,
        metric.id,
        force_regenerate=True,
        data_source=data_source,
        ai_provider=FakeAIProvider(ingestion=[BROKEN_CODE]),
    )

    assert result.success is False
    assert "repair" in result.error
    assert count_points(session, metric.id) == 3
    assert get_cached_ingestion_transformer(session, metric.id).id == transformer_id


@pytest.mark.asyncio
async def test_concurrent_refresh_is_refused(session, metric, data_source, ai_provider):
    held = session.get(Metric, metric.id)
    held.refresh_status = "fetching-api-data"
    held.refresh_started_at = utcnow()
    session.add(held)
    session.commit()

    result = await refresh_metric_and_charts(
        session, metric.id, data_source=data_source, ai_provider=ai_provider
    )

    assert result.success is False
    assert result.error == ALREADY_REFRESHING
    assert data_source.calls == []
    assert session.get(Metric, metric.id).refresh_status == "fetching-api-data"


@pytest.mark.asyncio
async def test_stale_lock_is_taken_over(session, metric, data_source, ai_provider):
    held = session.get(Metric, metric.id)
    held.refresh_status = "fetching-api-data"
    held.refresh_started_at = utcnow() - timedelta(hours=2)
    session.add(held)
    session.commit()

    result = await refresh_metric_and_charts(
        session, metric.id, data_source=data_source, ai_provider=ai_provider
    )
    assert result.success is True


@pytest.mark.asyncio
async def test_missing_metric_aborts_cleanly(session, data_source, ai_provider):
    result = await refresh_metric_and_charts(session, 999, data_source=data_source, ai_provider=ai_provider)
    assert result.success is False
    assert result.error == "Metric 999 not found"


@pytest.mark.asyncio
async def test_missing_template_param_is_reported(session, metric, data_source, ai_provider):
    broken = session.get(Metric, metric.id)
    broken.endpoint_params_json = '{"OWNER": "acme"}'
    session.add(broken)
    session.commit()

    result = await refresh_metric_and_charts(
        session, metric.id, data_source=data_source, ai_provider=ai_provider
    )
    assert result.success is False
    assert "REPO" in result.error
    assert session.get(Metric, metric.id).refresh_status is None


@pytest.mark.asyncio
async def test_snapshot_metric_full_resync_is_idempotent(session, snapshot_metric):
    source = FakeDataSource({"stargazers_count": 42, "full_name": "acme/api"})
    provider = FakeAIProvider(ingestion=[SNAPSHOT_CODE])

    for _ in range(2):
        result = await refresh_metric_and_charts(
            session, snapshot_metric.id, data_source=source, ai_provider=provider
        )
        assert result.success is True

    points = load_points(session, snapshot_metric.id)
    assert [p.value for p in points] == [42]
    run = latest_run(session, snapshot_metric.id)
    assert "deleting-old-data" in run.planned_steps
    assert session.get(Metric, snapshot_metric.id).sync_cursor is None


@pytest.mark.asyncio
async def test_metric_without_charts_skips_chart_steps(session, metric, data_source, ai_provider):
    result = await refresh_metric_and_charts(
        session, metric.id, data_source=data_source, ai_provider=ai_provider
    )

    assert result.success is True
    statuses = step_statuses(session, latest_run(session, metric.id).id)
    assert statuses["saving-chart-config"] == "skipped"
    assert ai_provider.count("chart") == 0


@pytest.mark.asyncio
async def test_progress_reaches_100_after_run(session, metric, chart, data_source, ai_provider):
    await refresh_metric_and_charts(session, metric.id, data_source=data_source, ai_provider=ai_provider)

    progress = get_progress(session, metric.id)
    assert progress.is_processing is False
    assert progress.total_steps == 7
    assert len(progress.completed_steps) == 7
    assert progress.progress_percent == 100
    assert progress.error is None


@pytest.mark.asyncio
async def test_regenerate_chart_applies_overrides(session, metric, chart, data_source, ai_provider):
    await refresh_metric_and_charts(session, metric.id, data_source=data_source, ai_provider=ai_provider)

    result = await regenerate_chart(
        session, chart.id, chart_type="line", user_prompt="show a trend line", ai_provider=ai_provider
    )

    assert result.success is True
    assert ai_provider.count("chart") == 2
    assert data_source.calls and len(data_source.calls) == 1
    transformer = get_cached_chart_transformer(session, chart.id)
    assert transformer.chart_type == "line"
    assert transformer.user_prompt == "show a trend line"
    assert json.loads(session.get(DashboardChart, chart.id).chart_config_json)["chart_type"] == "line"
    assert latest_run(session, metric.id).mode == "chart-only"


@pytest.mark.asyncio
async def test_refused_chart_regeneration_keeps_preferences(session, metric, chart, ai_provider):
    original_cadence = chart.cadence
    held = session.get(Metric, metric.id)
    held.refresh_status = "fetching-api-data"
    held.refresh_started_at = utcnow()
    session.add(held)
    session.commit()

    result = await regenerate_chart(
        session, chart.id, chart_type="area", cadence="MONTHLY", ai_provider=ai_provider
    )

    assert result.success is False
    assert result.error == ALREADY_REFRESHING
    session.expire_all()
    unchanged = session.get(DashboardChart, chart.id)
    assert unchanged.cadence == original_cadence
    assert unchanged.chart_type == "bar"
    assert ai_provider.calls == []


@pytest.mark.asyncio
async def test_data_source_error_message_reaches_last_error(session, metric, ai_provider):
    failing = FakeDataSource(error=DataSourceError("github returned HTTP 502: bad gateway", status_code=502))
    result = await refresh_metric_and_charts(session, metric.id, data_source=failing, ai_provider=ai_provider)

    assert result.error == "github returned HTTP 502: bad gateway"
    progress = get_progress(session, metric.id)
    assert progress.error == result.error
    assert progress.run_status == "failed"
