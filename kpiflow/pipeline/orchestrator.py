"""KPIFlow — Pipeline Orchestrator.

Single entry point for refreshing a metric, used identically by the
scheduler and by the refresh/regenerate API routes:

fetch → [stage full resync] → [force regeneration] → ingestion transformer
→ execute → save points → chart transformer per chart → execute → save configs

No exception leaves this module; every outcome is a RefreshResult.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy.orm.exc import ObjectDeletedError
from sqlmodel import Session, select

from kpiflow.ai.base_provider import AIProvider
from kpiflow.connectors.client import IntegrationClient
from kpiflow.core.exceptions import DataSourceError, MetricNotFoundError, PipelineError
from kpiflow.core.logging import get_logger
from kpiflow.core.metric_templates import MetricTemplate, get_template, resolve_endpoint
from kpiflow.core.timeutils import utcnow
from kpiflow.models.metric_models import DashboardChart, Integration, Metric
from kpiflow.models.pipeline_models import RefreshResult
from kpiflow.models.transformer_models import ChartConfig
from kpiflow.pipeline.runner import PipelineRunner
from kpiflow.pipeline.steps import PipelineMode, PipelineStep, plan_steps
from kpiflow.pipeline.store import count_points, load_points, save_points
from kpiflow.transformers.chart import (
    chart_cache_status,
    chart_preferences,
    execute_chart_transformer,
    get_cached_chart_transformer,
    get_or_generate_chart_transformer,
    serialize_points,
)
from kpiflow.transformers.fingerprint import data_points_fingerprint, fingerprint
from kpiflow.transformers.ingestion import (
    execute_ingestion_transformer,
    get_cached_ingestion_transformer,
    get_or_generate_ingestion_transformer,
    ingestion_cache_status,
)

logger = get_logger("pipeline.orchestrator")

ALREADY_REFRESHING = "Metric is already refreshing"


async def refresh_metric_and_charts(
    session: Session,
    metric_id: int,
    force_regenerate: bool = False,
    *,
    data_source: Optional[Any] = None,
    ai_provider: Optional[AIProvider] = None,
) -> RefreshResult:
    """Refresh one metric's data points and every chart that shows it.

    Args:
        force_regenerate: Full resync plus regeneration of the ingestion and
            chart transformers, even when the cached ones are valid.
        data_source: Object with an async ``fetch(provider, connection_id,
            endpoint)``; defaults to the integration proxy client.
        ai_provider: Code generator; defaults to the configured provider.
    """
    mode = PipelineMode.HARD_REFRESH if force_regenerate else PipelineMode.SOFT_REFRESH
    return await _run(
        session, metric_id, mode, data_source=data_source, ai_provider=ai_provider
    )


async def regenerate_chart(
    session: Session,
    dashboard_chart_id: int,
    *,
    chart_type: Optional[str] = None,
    cadence: Optional[str] = None,
    selected_dimension: Optional[str] = None,
    user_prompt: Optional[str] = None,
    ai_provider: Optional[AIProvider] = None,
) -> RefreshResult:
    """Rebuild one chart from stored points with a freshly generated transformer.

    Preference overrides are saved on the chart once the run holds the lock;
    a refused run leaves the chart untouched.
    """
    chart = session.get(DashboardChart, dashboard_chart_id)
    if chart is None:
        return RefreshResult(success=False, error=f"Chart {dashboard_chart_id} not found")

    overrides = {
        "chart_type": chart_type,
        "cadence": cadence,
        "selected_dimension": selected_dimension,
        "user_prompt": user_prompt,
    }
    return await _run(
        session,
        chart.metric_id,
        PipelineMode.CHART_ONLY,
        ai_provider=ai_provider,
        chart_ids=[dashboard_chart_id],
        regenerate_charts=True,
        chart_overrides={k: v for k, v in overrides.items() if v is not None},
    )


def _apply_chart_overrides(session: Session, dashboard_chart_id: int, overrides: Dict[str, str]) -> None:
    chart = session.get(DashboardChart, dashboard_chart_id)
    for field, value in overrides.items():
        if field in ("selected_dimension", "user_prompt"):
            value = value or None  # empty string clears the preference
        setattr(chart, field, value)
    session.add(chart)
    session.commit()


async def _run(
    session: Session,
    metric_id: int,
    mode: PipelineMode,
    data_source: Optional[Any] = None,
    ai_provider: Optional[AIProvider] = None,
    chart_ids: Optional[List[int]] = None,
    regenerate_charts: bool = False,
    chart_overrides: Optional[Dict[str, str]] = None,
) -> RefreshResult:
    metric = session.get(Metric, metric_id)
    if metric is None:
        return RefreshResult(success=False, error=f"Metric {metric_id} not found")

    template = get_template(metric.template_id)
    integration = (
        session.get(Integration, metric.integration_id) if metric.integration_id else None
    )
    if mode != PipelineMode.CHART_ONLY and (template is None or integration is None):
        # Manual metrics have no source to fetch; only their charts refresh
        logger.info("Metric has no integration, refreshing charts only", extra={"metric_id": metric_id})
        mode = PipelineMode.CHART_ONLY

    force = mode == PipelineMode.HARD_REFRESH
    full_resync = force or (template is not None and not template.is_time_series)
    planned = plan_steps(mode, full_resync=full_resync)

    runner = PipelineRunner(session, metric_id)
    if not runner.acquire(planned[0]):
        logger.info("Refresh refused, run already in progress", extra={"metric_id": metric_id})
        return RefreshResult(success=False, error=ALREADY_REFRESHING)

    try:
        runner.start(mode, planned)
        if chart_overrides:
            _apply_chart_overrides(session, chart_ids[0], chart_overrides)
        ctx = _RunContext(
            session=session,
            runner=runner,
            metric=metric,
            template=template,
            integration=integration,
            data_source=data_source,
            ai_provider=ai_provider,
            force=force,
            full_resync=full_resync,
            planned=planned,
        )
        if mode == PipelineMode.CHART_ONLY:
            data_point_count = count_points(session, metric_id)
        else:
            data_point_count = await _ingest(ctx)
        await _refresh_charts(ctx, chart_ids, regenerate_charts or force)
        runner.complete(data_point_count, fetched=mode != PipelineMode.CHART_ONLY)
        return RefreshResult(success=True, data_point_count=data_point_count)
    except PipelineError as e:
        runner.fail(e.message)
        return RefreshResult(success=False, error=e.message)
    except Exception as e:
        logger.exception("Unexpected pipeline error", extra={"metric_id": metric_id})
        message = f"Unexpected error: {e}"
        runner.fail(message)
        return RefreshResult(success=False, error=message)


class _RunContext:
    """Values shared by the steps of one run."""

    def __init__(
        self,
        session: Session,
        runner: PipelineRunner,
        metric: Metric,
        template: Optional[MetricTemplate],
        integration: Optional[Integration],
        data_source: Optional[Any],
        ai_provider: Optional[AIProvider],
        force: bool,
        full_resync: bool,
        planned: List[PipelineStep],
    ):
        self.session = session
        self.runner = runner
        self.metric = metric
        self.metric_id = runner.metric_id
        self.template = template
        self.integration = integration
        self.data_source = data_source
        self.ai_provider = ai_provider
        self.force = force
        self.full_resync = full_resync
        self.planned = planned


# ─────────────────────────────────────────────
# STEPS 1–6: Ingestion
# ─────────────────────────────────────────────


async def _ingest(ctx: _RunContext) -> int:
    session, runner = ctx.session, ctx.runner
    try:
        # Read after the lock is held so the cursor reflects the last committed run
        params = ctx.metric.endpoint_params
        cursor = ctx.metric.sync_cursor
    except ObjectDeletedError as e:
        raise MetricNotFoundError("Metric was deleted during refresh") from e
    provider_key = ctx.integration.provider
    connection_id = ctx.integration.connection_id

    try:
        endpoint = resolve_endpoint(ctx.template, params)
    except ValueError as e:
        raise DataSourceError(str(e), context={"metric_id": ctx.metric_id}) from e

    endpoint_ctx: Dict[str, Any] = {
        **endpoint.to_dict(),
        "template_id": ctx.template.template_id,
        "fetched_at": utcnow().date().isoformat(),
    }

    # ── Step 1: Fetch ──
    async def fetch() -> Any:
        source = ctx.data_source or IntegrationClient()
        try:
            return await source.fetch(provider_key, connection_id, endpoint)
        finally:
            if ctx.data_source is None:
                await source.close()

    raw_data = await runner.run_step(PipelineStep.FETCHING_API_DATA, fetch)

    # ── Step 2: Stage full resync (applied atomically in step 6) ──
    if PipelineStep.DELETING_OLD_DATA in ctx.planned:
        async def stage_delete() -> int:
            return count_points(session, ctx.metric_id)

        existing = await runner.run_step(PipelineStep.DELETING_OLD_DATA, stage_delete)
        logger.info(f"{existing} stored points will be replaced", extra={"metric_id": ctx.metric_id})

    # ── Step 3: Force regeneration ──
    if PipelineStep.DELETING_OLD_TRANSFORMER in ctx.planned:
        async def invalidate() -> bool:
            return get_cached_ingestion_transformer(session, ctx.metric_id) is not None

        await runner.run_step(PipelineStep.DELETING_OLD_TRANSFORMER, invalidate)

    # ── Step 4: Ingestion transformer ──
    cached = get_cached_ingestion_transformer(session, ctx.metric_id)
    reason = ingestion_cache_status(cached, fingerprint(raw_data), ctx.force)
    if reason is None:
        runner.skip(PipelineStep.GENERATING_INGESTION_TRANSFORMER, "(cached transformer matches payload shape)")
        code = cached.code
    else:
        async def generate() -> str:
            handle = await get_or_generate_ingestion_transformer(
                session, ctx.metric, raw_data, endpoint_ctx, ctx.ai_provider, regenerate=ctx.force
            )
            return handle.code

        code = await runner.run_step(PipelineStep.GENERATING_INGESTION_TRANSFORMER, generate)

    # ── Step 5: Execute ──
    async def execute():
        return await execute_ingestion_transformer(code, raw_data, endpoint_ctx)

    points = await runner.run_step(PipelineStep.EXECUTING_INGESTION_TRANSFORMER, execute)

    # ── Step 6: Save ──
    async def save() -> int:
        result = save_points(
            session,
            ctx.metric_id,
            points,
            full_resync=ctx.full_resync,
            cursor=cursor,
            track_cursor=ctx.template.is_time_series,
        )
        return result.written

    return await runner.run_step(PipelineStep.SAVING_TIMESERIES_DATA, save)


# ─────────────────────────────────────────────
# STEPS 7–9: Charts
# ─────────────────────────────────────────────


async def _refresh_charts(
    ctx: _RunContext, chart_ids: Optional[List[int]], regenerate: bool
) -> None:
    session, runner = ctx.session, ctx.runner
    query = select(DashboardChart).where(DashboardChart.metric_id == ctx.metric_id)
    if chart_ids:
        query = query.where(DashboardChart.id.in_(chart_ids))  # type: ignore
    charts = list(session.exec(query.order_by(DashboardChart.id)).all())  # type: ignore

    if not charts:
        for step in (
            PipelineStep.GENERATING_CHART_TRANSFORMER,
            PipelineStep.EXECUTING_CHART_TRANSFORMER,
            PipelineStep.SAVING_CHART_CONFIG,
        ):
            runner.skip(step, "(metric has no dashboard charts)")
        return

    points = serialize_points(load_points(session, ctx.metric_id))
    shape = data_points_fingerprint(points)
    chart_ids = [c.id for c in charts]

    # ── Step 7: Chart transformers ──
    stale = [
        c
        for c in charts
        if chart_cache_status(
            get_cached_chart_transformer(session, c.id), shape, chart_preferences(c), regenerate
        )
        is not None
    ]
    if not stale:
        runner.skip(PipelineStep.GENERATING_CHART_TRANSFORMER, "(all chart transformers cached)")
    else:
        async def generate() -> None:
            for chart in stale:
                await get_or_generate_chart_transformer(
                    session, chart, points, ctx.ai_provider, regenerate=regenerate
                )

        await runner.run_step(PipelineStep.GENERATING_CHART_TRANSFORMER, generate)

    # ── Step 8: Execute ──
    async def execute() -> Dict[int, ChartConfig]:
        configs: Dict[int, ChartConfig] = {}
        for chart_id in chart_ids:
            chart = session.get(DashboardChart, chart_id)
            transformer = get_cached_chart_transformer(session, chart_id)
            if chart is None or transformer is None:
                raise PipelineError(f"Chart {chart_id} has no transformer")
            configs[chart_id] = await execute_chart_transformer(
                transformer.code, points, chart_preferences(chart)
            )
        return configs

    configs = await runner.run_step(PipelineStep.EXECUTING_CHART_TRANSFORMER, execute)

    # ── Step 9: Save configs (one transaction) ──
    async def save() -> None:
        now = utcnow()
        for chart_id, config in configs.items():
            chart = session.get(DashboardChart, chart_id)
            if chart is None:
                continue  # removed from its dashboard mid-run
            chart.chart_config_json = config.model_dump_json()
            chart.config_updated_at = now
            session.add(chart)
        session.commit()

    await runner.run_step(PipelineStep.SAVING_CHART_CONFIG, save)
