"""KPIFlow — Pipeline Step Catalogue.

Step names are part of the progress contract polled by clients; display
labels are what the dashboard shows next to the spinner.
"""

from enum import Enum
from typing import Dict, List


class PipelineStep(str, Enum):
    FETCHING_API_DATA = "fetching-api-data"
    DELETING_OLD_DATA = "deleting-old-data"
    DELETING_OLD_TRANSFORMER = "deleting-old-transformer"
    GENERATING_INGESTION_TRANSFORMER = "generating-ingestion-transformer"
    EXECUTING_INGESTION_TRANSFORMER = "executing-ingestion-transformer"
    SAVING_TIMESERIES_DATA = "saving-timeseries-data"
    GENERATING_CHART_TRANSFORMER = "generating-chart-transformer"
    EXECUTING_CHART_TRANSFORMER = "executing-chart-transformer"
    SAVING_CHART_CONFIG = "saving-chart-config"


class PipelineMode(str, Enum):
    SOFT_REFRESH = "soft-refresh"  # Reuse cached transformers when valid
    HARD_REFRESH = "hard-refresh"  # Full resync and forced regeneration
    CHART_ONLY = "chart-only"  # Rebuild charts from stored points


STEP_LABELS: Dict[str, str] = {
    PipelineStep.FETCHING_API_DATA.value: "Fetching data from API...",
    PipelineStep.DELETING_OLD_DATA.value: "Clearing old data...",
    PipelineStep.DELETING_OLD_TRANSFORMER.value: "Clearing cached transformer...",
    PipelineStep.GENERATING_INGESTION_TRANSFORMER.value: "Generating data transformer...",
    PipelineStep.EXECUTING_INGESTION_TRANSFORMER.value: "Processing data...",
    PipelineStep.SAVING_TIMESERIES_DATA.value: "Saving data points...",
    PipelineStep.GENERATING_CHART_TRANSFORMER.value: "Generating chart...",
    PipelineStep.EXECUTING_CHART_TRANSFORMER.value: "Building chart...",
    PipelineStep.SAVING_CHART_CONFIG.value: "Saving chart...",
}

CHART_STEPS: List[PipelineStep] = [
    PipelineStep.GENERATING_CHART_TRANSFORMER,
    PipelineStep.EXECUTING_CHART_TRANSFORMER,
    PipelineStep.SAVING_CHART_CONFIG,
]


def plan_steps(mode: PipelineMode, full_resync: bool = False) -> List[PipelineStep]:
    """Ordered steps a run of ``mode`` will record.

    The progress total is the length of this list, so it always matches what
    the run actually executes.
    """
    if mode == PipelineMode.CHART_ONLY:
        return list(CHART_STEPS)

    steps = [PipelineStep.FETCHING_API_DATA]
    if full_resync or mode == PipelineMode.HARD_REFRESH:
        steps.append(PipelineStep.DELETING_OLD_DATA)
    if mode == PipelineMode.HARD_REFRESH:
        steps.append(PipelineStep.DELETING_OLD_TRANSFORMER)
    steps += [
        PipelineStep.GENERATING_INGESTION_TRANSFORMER,
        PipelineStep.EXECUTING_INGESTION_TRANSFORMER,
        PipelineStep.SAVING_TIMESERIES_DATA,
    ]
    return steps + CHART_STEPS


def step_label(step: str) -> str:
    return STEP_LABELS.get(step, step)
