"""KPIFlow — Metric, Integration, Data Point and Dashboard Chart Models."""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


class Cadence(str, Enum):
    """Evaluation period granularity for charts and goals."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class Integration(SQLModel, table=True):
    """A connected third-party account, reachable through the integration proxy."""

    __tablename__ = "integrations"

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: str = Field(index=True)
    provider: str = Field(description="github | posthog | google-sheets | youtube")
    connection_id: str = Field(description="Proxy connection identifier")
    status: str = Field(default="active", description="active | expired | revoked")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Metric(SQLModel, table=True):
    """A tracked KPI. Mutated by the pipeline orchestrator and the scheduler."""

    __tablename__ = "metrics"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    organization_id: str = Field(index=True)
    integration_id: Optional[int] = Field(default=None, foreign_key="integrations.id")
    template_id: Optional[str] = Field(
        default=None, description="Immutable reference into the template registry"
    )
    endpoint_params_json: str = Field(
        default="{}", description="Values for the template's {PARAM} placeholders"
    )
    poll_frequency: str = Field(
        default="daily", description="frequent | hourly | daily | weekly | manual"
    )
    next_poll_at: Optional[datetime] = Field(default=None, index=True)
    last_fetched_at: Optional[datetime] = None
    refresh_status: Optional[str] = Field(
        default=None, description="Current pipeline step; null when idle"
    )
    refresh_started_at: Optional[datetime] = None
    last_error: Optional[str] = None
    sync_cursor: Optional[datetime] = Field(
        default=None, description="Latest ingested timestamp (incremental sync)"
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def endpoint_params(self) -> Dict[str, str]:
        return json.loads(self.endpoint_params_json or "{}")


class DataPoint(SQLModel, table=True):
    """One normalized timestamped sample for a metric."""

    __tablename__ = "metric_data_points"
    __table_args__ = (
        UniqueConstraint("metric_id", "timestamp", name="uq_data_point_metric_ts"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    metric_id: int = Field(index=True, foreign_key="metrics.id")
    timestamp: datetime = Field(index=True)
    value: float
    dimensions_json: Optional[str] = Field(
        default=None, description="JSON map of dimension name to string/number"
    )
    value_label: Optional[str] = None

    @property
    def dimensions(self) -> Optional[Dict[str, Any]]:
        return json.loads(self.dimensions_json) if self.dimensions_json else None


class DashboardChart(SQLModel, table=True):
    """A metric placed on a dashboard, with its own rendering preferences."""

    __tablename__ = "dashboard_charts"

    id: Optional[int] = Field(default=None, primary_key=True)
    metric_id: int = Field(index=True, foreign_key="metrics.id")
    organization_id: str = Field(index=True)
    chart_type: str = Field(default="line", description="line | bar | area | pie | radar | radial | kpi")
    cadence: Cadence = Field(default=Cadence.DAILY)
    selected_dimension: Optional[str] = None
    user_prompt: Optional[str] = Field(
        default=None, description="Free-text rendering preferences"
    )
    chart_config_json: Optional[str] = Field(
        default=None, description="Last chart configuration produced by the pipeline"
    )
    config_updated_at: Optional[datetime] = None
