from datetime import datetime, timezone

import pytest

from conftest import BROKEN_CODE, CHART_CODE, COMMIT_ACTIVITY, INGESTION_CODE, FakeAIProvider
from kpiflow.core.exceptions import TransformerExecutionError, TransformerGenerationError
from kpiflow.models.transformer_models import ChartTransformer, IngestionTransformer
from kpiflow.transformers.chart import (
    chart_cache_status,
    chart_preferences,
    compute_data_stats,
    get_cached_chart_transformer,
    get_or_generate_chart_transformer,
    validate_chart_output,
)
from kpiflow.transformers.fingerprint import data_points_fingerprint, fingerprint
from kpiflow.transformers.generation import REPAIR_TEMPERATURE, generate_with_repair
from kpiflow.transformers.ingestion import (
    get_cached_ingestion_transformer,
    get_or_generate_ingestion_transformer,
    ingestion_cache_status,
    validate_ingestion_output,
)

UTC = timezone.utc
ENDPOINT = {"path": "/repos/acme/api/stats/commit_activity", "method": "GET", "body": None}


# ── Ingestion output validation ──


def test_validate_ingestion_output_normalizes_points():
    points = validate_ingestion_output(
        [
            {"timestamp": "2026-10-02T00:00:00Z", "value": "1,200"},
            {"timestamp": 1790985600, "value": 3, "dimensions": {"country": "IN"}},
            {"timestamp": "2026-10-01", "value": 7.5, "value_label": 42},
        ]
    )
    assert [p.timestamp for p in points] == sorted(p.timestamp for p in points)
    assert points[0].timestamp == datetime(2026, 10, 1, tzinfo=UTC)
    assert points[0].value_label == "42"
    assert points[1].value == 1200.0


def test_duplicate_timestamps_keep_last():
    points = validate_ingestion_output(
        [
            {"timestamp": "2026-10-01", "value": 1},
            {"timestamp": "2026-10-01T00:00:00+00:00", "value": 2},
        ]
    )
    assert len(points) == 1
    assert points[0].value == 2


@pytest.mark.parametrize(
    "output",
    [
        {"timestamp": "2026-10-01", "value": 1},
        [{"timestamp": "not a date", "value": 1}],
        [{"timestamp": "2026-10-01", "value": None}],
        [{"timestamp": "2026-10-01", "value": True}],
        [{"timestamp": "2026-10-01", "value": "NaN"}],
        [{"timestamp": "2026-10-01", "value": 1, "dimensions": ["a"]}],
        ["2026-10-01"],
    ],
)
def test_invalid_ingestion_output_rejected(output):
    with pytest.raises(TransformerExecutionError):
        validate_ingestion_output(output)


# ── Chart output validation and stats ──


def test_validate_chart_output_requires_fields():
    with pytest.raises(TransformerExecutionError, match="x_axis_key"):
        validate_chart_output(
            {"chart_type": "line", "chart_data": [], "chart_config": {}, "data_keys": [], "title": "t"}
        )
    with pytest.raises(TransformerExecutionError):
        validate_chart_output([])


def test_compute_data_stats_detects_weekly():
    points = [
        {"timestamp": f"2026-09-{day:02d}T00:00:00+00:00", "value": 1.0, "dimensions": {"os": "ios"}}
        for day in (7, 14, 21, 28)
    ]
    stats = compute_data_stats(points)
    assert stats["total_count"] == 4
    assert stats["days_covered"] == 22
    assert stats["detected_granularity"] == "weekly"
    assert stats["dimension_keys"] == ["os"]


def test_compute_data_stats_empty():
    assert compute_data_stats([])["detected_granularity"] == "unknown"


# ── Cache status ──


def test_ingestion_cache_status():
    shape = fingerprint(COMMIT_ACTIVITY)
    cached = IngestionTransformer(metric_id=1, code=INGESTION_CODE, input_fingerprint=shape)
    assert ingestion_cache_status(None, shape) == "no cached transformer"
    assert ingestion_cache_status(cached, shape) is None
    assert ingestion_cache_status(cached, "other") == "payload shape changed"
    assert ingestion_cache_status(cached, shape, regenerate=True) == "forced regeneration"


def test_chart_cache_status_tracks_preferences():
    prefs = {"chart_type": "bar", "cadence": "WEEKLY", "selected_dimension": None, "user_prompt": None}
    shape = data_points_fingerprint([])
    cached = ChartTransformer(dashboard_chart_id=1, code=CHART_CODE, input_fingerprint=shape, **prefs)
    assert chart_cache_status(cached, shape, prefs) is None
    assert chart_cache_status(cached, shape, {**prefs, "cadence": "MONTHLY"}) == "cadence changed"
    assert chart_cache_status(cached, shape, {**prefs, "user_prompt": "stacked"}) == "user_prompt changed"


# ── Generate, test, repair ──


@pytest.mark.asyncio
async def test_generate_with_repair_uses_one_repair_call():
    provider = FakeAIProvider(ingestion=[BROKEN_CODE, INGESTION_CODE])
    calls = []

    async def test(code):
        calls.append(code)
        if "boom" in code:
            raise TransformerExecutionError("ValueError: boom")

    code = await generate_with_repair(provider, "transform(api_response, endpoint)", "sample", test, "x")
    assert code.strip() == INGESTION_CODE.strip()
    assert provider.calls == [("ingestion", 0.1), ("ingestion", REPAIR_TEMPERATURE)]


@pytest.mark.asyncio
async def test_generate_with_repair_gives_up_after_second_failure():
    provider = FakeAIProvider(ingestion=[BROKEN_CODE])

    async def test(code):
        raise TransformerExecutionError("still broken")

    with pytest.raises(TransformerGenerationError, match="one repair attempt"):
        await generate_with_repair(provider, "api_response", "sample", test, "x")
    assert provider.count("ingestion") == 2


@pytest.mark.asyncio
async def test_generate_with_repair_repairs_unexpected_validation_crash():
    provider = FakeAIProvider(ingestion=[BROKEN_CODE, INGESTION_CODE])

    async def test(code):
        if "boom" in code:
            raise OverflowError("timestamp out of range for platform time_t")

    code = await generate_with_repair(provider, "transform(api_response, endpoint)", "sample", test, "x")
    assert code.strip() == INGESTION_CODE.strip()
    assert provider.count("ingestion") == 2


def test_out_of_range_epoch_is_an_invalid_point():
    with pytest.raises(TransformerExecutionError, match="Point 0 is invalid"):
        validate_ingestion_output([{"timestamp": 1e300, "value": 1}])


@pytest.mark.asyncio
async def test_provider_exception_becomes_generation_error():
    class Failing(FakeAIProvider):
        async def generate_code(self, system_prompt, user_prompt, temperature=0.1):
            raise RuntimeError("quota exceeded")

    async def test(code):
        return None

    with pytest.raises(TransformerGenerationError, match="quota exceeded"):
        await generate_with_repair(Failing(), "api_response", "sample", test, "x")


# ── Get or generate (real sandbox) ──


@pytest.mark.asyncio
async def test_ingestion_transformer_cached_after_generation(session, metric):
    provider = FakeAIProvider()
    first = await get_or_generate_ingestion_transformer(session, metric, COMMIT_ACTIVITY, ENDPOINT, provider)
    second = await get_or_generate_ingestion_transformer(session, metric, COMMIT_ACTIVITY, ENDPOINT, provider)

    assert first.generated is True
    assert second.generated is False
    assert provider.count("ingestion") == 1
    stored = get_cached_ingestion_transformer(session, metric.id)
    assert stored.template_id == "github-commit-activity"
    assert stored.input_fingerprint == fingerprint(COMMIT_ACTIVITY)


@pytest.mark.asyncio
async def test_failed_regeneration_keeps_previous_transformer(session, metric):
    await get_or_generate_ingestion_transformer(session, metric, COMMIT_ACTIVITY, ENDPOINT, FakeAIProvider())
    original = get_cached_ingestion_transformer(session, metric.id)
    original_id = original.id

    with pytest.raises(TransformerGenerationError):
        await get_or_generate_ingestion_transformer(
            session, metric, COMMIT_ACTIVITY, ENDPOINT,
            FakeAIProvider(ingestion=[BROKEN_CODE]), regenerate=True,
        )

    kept = get_cached_ingestion_transformer(session, metric.id)
    assert kept.id == original_id
    assert kept.code.strip() == INGESTION_CODE.strip()


@pytest.mark.asyncio
async def test_chart_transformer_scoped_per_chart(session, chart):
    provider = FakeAIProvider()
    points = [{"timestamp": "2026-10-05T00:00:00+00:00", "value": 15.0, "dimensions": None, "value_label": None}]

    handle = await get_or_generate_chart_transformer(session, chart, points, provider)
    assert handle.generated is True

    stored = get_cached_chart_transformer(session, chart.id)
    assert stored.chart_type == "bar"
    assert stored.cadence == chart_preferences(chart)["cadence"] == "WEEKLY"

    chart.chart_type = "line"
    regenerated = await get_or_generate_chart_transformer(session, chart, points, provider)
    assert regenerated.reason == "chart_type changed"
    assert provider.count("chart") == 2
