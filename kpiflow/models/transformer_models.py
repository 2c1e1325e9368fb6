"""KPIFlow — Cached Transformer Models and Transformer Output Schemas."""

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, field_validator
from sqlmodel import SQLModel, Field

from kpiflow.core.timeutils import parse_timestamp


# ─────────────────────────────────────────────
# DATABASE MODELS: One live transformer per scope
# ─────────────────────────────────────────────


class IngestionTransformer(SQLModel, table=True):
    """Generated code mapping a metric's raw API payload to data points."""

    __tablename__ = "ingestion_transformers"

    id: Optional[int] = Field(default=None, primary_key=True)
    metric_id: int = Field(unique=True, index=True, foreign_key="metrics.id")
    template_id: Optional[str] = None
    code: str = Field(description="Python source defining transform(api_response, endpoint)")
    input_fingerprint: str = Field(description="Shape fingerprint of the raw payload")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ChartTransformer(SQLModel, table=True):
    """Generated code mapping stored data points to one dashboard chart's config."""

    __tablename__ = "chart_transformers"

    id: Optional[int] = Field(default=None, primary_key=True)
    dashboard_chart_id: int = Field(
        unique=True, index=True, foreign_key="dashboard_charts.id"
    )
    code: str = Field(description="Python source defining transform(data_points, preferences)")
    chart_type: str
    cadence: str
    selected_dimension: Optional[str] = None
    user_prompt: Optional[str] = None
    input_fingerprint: str = Field(description="Shape fingerprint of the data points")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ─────────────────────────────────────────────
# PYDANTIC SCHEMAS: Validated transformer output
# ─────────────────────────────────────────────


class NormalizedPoint(BaseModel):
    """One data point emitted by an ingestion transformer."""

    timestamp: datetime
    value: float
    dimensions: Optional[Dict[str, Union[str, float]]] = None
    value_label: Optional[str] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, v: Any) -> datetime:
        return parse_timestamp(v)

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, v: Any) -> float:
        if isinstance(v, bool) or v is None:
            raise ValueError(f"value must be numeric, got {v!r}")
        if isinstance(v, str):
            v = v.replace(",", "").strip()
        number = float(v)
        if not math.isfinite(number):
            raise ValueError(f"value must be finite, got {v!r}")
        return number

    @field_validator("value_label", mode="before")
    @classmethod
    def _label_to_str(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)

    @field_validator("dimensions", mode="before")
    @classmethod
    def _check_dimensions(cls, v: Any) -> Any:
        if v is None or v == {}:
            return None
        if not isinstance(v, dict):
            raise ValueError("dimensions must be an object or null")
        return v


class ChartConfig(BaseModel):
    """Chart-ready configuration emitted by a chart transformer."""

    chart_type: str
    chart_data: List[Dict[str, Any]]
    chart_config: Dict[str, Any]
    x_axis_key: str
    data_keys: List[str]
    title: str
    description: Optional[str] = None
    x_axis_label: Optional[str] = None
    y_axis_label: Optional[str] = None
    show_legend: bool = True
    show_tooltip: bool = True
    stacked: bool = False
    cadence: Optional[str] = None
    selected_dimension: Optional[str] = None
