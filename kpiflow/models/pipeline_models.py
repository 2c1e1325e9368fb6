"""KPIFlow — Pipeline Run Audit Models and Result Schemas."""

import json
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel
from sqlmodel import SQLModel, Field


# ─────────────────────────────────────────────
# DATABASE MODELS: Step-by-step run log
# ─────────────────────────────────────────────


class PipelineRun(SQLModel, table=True):
    """One orchestrator invocation for one metric."""

    __tablename__ = "pipeline_runs"

    id: Optional[int] = Field(default=None, primary_key=True)
    metric_id: int = Field(index=True)
    mode: str = Field(description="soft-refresh | hard-refresh | chart-only")
    planned_steps_json: str = Field(default="[]", description="Ordered step names")
    status: str = Field(default="running", description="running | completed | failed")
    error: Optional[str] = None
    data_point_count: Optional[int] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def planned_steps(self) -> List[str]:
        return json.loads(self.planned_steps_json or "[]")


class PipelineStepLog(SQLModel, table=True):
    """Outcome and duration of one step of a pipeline run."""

    __tablename__ = "pipeline_step_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: int = Field(index=True, foreign_key="pipeline_runs.id")
    step: str
    status: str = Field(description="completed | skipped | failed")
    duration_ms: int = 0
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ─────────────────────────────────────────────
# PYDANTIC SCHEMAS
# ─────────────────────────────────────────────


class RefreshResult(BaseModel):
    """What the orchestrator returns to every caller."""

    success: bool
    data_point_count: Optional[int] = None
    error: Optional[str] = None


class PipelineProgress(BaseModel):
    """Read-only snapshot polled by clients while a run is in flight."""

    metric_id: int
    is_processing: bool
    current_step: Optional[str] = None
    current_step_label: Optional[str] = None
    completed_steps: List[str] = []
    total_steps: int = 0
    progress_percent: float = 0.0
    error: Optional[str] = None
    run_status: Optional[str] = None
