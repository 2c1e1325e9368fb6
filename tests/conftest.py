"""
Pytest configuration and fixtures
"""

from typing import Any, List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import kpiflow.models.goal_models  # noqa: F401
import kpiflow.models.pipeline_models  # noqa: F401
import kpiflow.models.transformer_models  # noqa: F401
from kpiflow.ai.base_provider import AIProvider
from kpiflow.models.metric_models import Cadence, DashboardChart, Integration, Metric

ORG_ID = "org-1"

INGESTION_CODE = '''
def transform(api_response, endpoint):
    return [{"timestamp": week["week"], "value": week["total"]} for week in api_response]
'''

SNAPSHOT_CODE = '''
def transform(api_response, endpoint):
    return [{"timestamp": endpoint["fetched_at"], "value": api_response["stargazers_count"]}]
'''

CHART_CODE = '''
def transform(data_points, preferences):
    rows = [{"date": p["timestamp"][:10], "value": p["value"]} for p in data_points]
    return {
        "chart_type": preferences["chart_type"],
        "chart_data": rows,
        "chart_config": {"value": {"label": "Value"}},
        "x_axis_key": "date",
        "data_keys": ["value"],
        "title": "Weekly commits",
    }
'''

BROKEN_CODE = '''
def transform(*args):
    raise ValueError("boom")
'''

COMMIT_ACTIVITY = [
    {"week": "2026-09-21", "total": 12, "days": [1, 2, 3, 0, 4, 2, 0]},
    {"week": "2026-09-28", "total": 7, "days": [0, 1, 1, 2, 3, 0, 0]},
    {"week": "2026-10-05", "total": 15, "days": [2, 2, 3, 3, 3, 2, 0]},
]


class FakeDataSource:
    """Stands in for the integration proxy client."""

    def __init__(self, payload: Any = None, error: Optional[Exception] = None):
        self.payload = payload
        self.error = error
        self.calls: List[Any] = []

    async def fetch(self, provider, connection_id, endpoint, params=None):
        self.calls.append((provider, connection_id, endpoint.path))
        if self.error is not None:
            raise self.error
        return self.payload

    async def close(self):
        pass


class FakeAIProvider(AIProvider):
    """Returns canned transformer source, chosen by the system prompt's contract."""

    name = "fake"

    def __init__(
        self,
        ingestion: Optional[List[str]] = None,
        chart: Optional[List[str]] = None,
    ):
        self.ingestion = list(ingestion or [INGESTION_CODE])
        self.chart = list(chart or [CHART_CODE])
        self.calls: List[tuple] = []

    async def generate_code(self, system_prompt, user_prompt, temperature=0.1):
        kind = "ingestion" if "api_response" in system_prompt else "chart"
        self.calls.append((kind, temperature))
        queue = self.ingestion if kind == "ingestion" else self.chart
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def is_available(self):
        return True

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)


@pytest.fixture
def engine():
    """In-memory SQLite shared across threads"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def session_factory(engine):
    return lambda: Session(engine)


@pytest.fixture
def integration(session):
    integration = Integration(organization_id=ORG_ID, provider="github", connection_id="conn-1")
    session.add(integration)
    session.commit()
    session.refresh(integration)
    return integration


@pytest.fixture
def metric(session, integration):
    """Time-series metric (incremental sync)"""
    metric = Metric(
        name="Weekly commits",
        organization_id=ORG_ID,
        integration_id=integration.id,
        template_id="github-commit-activity",
        endpoint_params_json='{"OWNER": "acme", "REPO": "api"}',
        poll_frequency="weekly",
    )
    session.add(metric)
    session.commit()
    session.refresh(metric)
    return metric


@pytest.fixture
def snapshot_metric(session, integration):
    """Snapshot metric (full resync every run)"""
    metric = Metric(
        name="Stars",
        organization_id=ORG_ID,
        integration_id=integration.id,
        template_id="github-repo-stars",
        endpoint_params_json='{"OWNER": "acme", "REPO": "api"}',
    )
    session.add(metric)
    session.commit()
    session.refresh(metric)
    return metric


@pytest.fixture
def chart(session, metric):
    chart = DashboardChart(
        metric_id=metric.id,
        organization_id=ORG_ID,
        chart_type="bar",
        cadence=Cadence.WEEKLY,
    )
    session.add(chart)
    session.commit()
    session.refresh(chart)
    return chart


@pytest.fixture
def data_source():
    return FakeDataSource(payload=COMMIT_ACTIVITY)


@pytest.fixture
def ai_provider():
    return FakeAIProvider()
