"""KPIFlow — Metric Template Registry.

Templates are immutable descriptions of where a metric's data comes from:
the integration, the proxied endpoint, how often to poll, and whether the
response is a time series or a point-in-time snapshot. A Metric row stores
only the template id plus the user's parameter values.
"""

import re
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional


class SyncMode(str, Enum):
    """How fetched points are merged into stored points."""

    FULL = "full"  # Replace every stored point
    INCREMENTAL = "incremental"  # Upsert points at or above the stored cursor


class PollFrequency(str, Enum):
    FREQUENT = "frequent"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MANUAL = "manual"


POLL_INTERVALS: Dict[str, timedelta] = {
    PollFrequency.FREQUENT.value: timedelta(minutes=15),
    PollFrequency.HOURLY.value: timedelta(hours=1),
    PollFrequency.DAILY.value: timedelta(days=1),
    PollFrequency.WEEKLY.value: timedelta(days=7),
}


class MetricTemplate:
    """Describes a single integration-backed metric source."""

    def __init__(
        self,
        template_id: str,
        integration: str,
        label: str,
        endpoint: str,
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
        required_params: Optional[List[str]] = None,
        is_time_series: bool = False,
        poll_frequency: str = PollFrequency.DAILY.value,
        unit: str = "",
        description: str = "",
    ):
        self.template_id = template_id
        self.integration = integration
        self.label = label
        self.endpoint = endpoint
        self.method = method
        self.body = body
        self.required_params = required_params or []
        self.is_time_series = is_time_series
        self.poll_frequency = poll_frequency
        self.unit = unit
        self.description = description

    @property
    def sync_mode(self) -> SyncMode:
        return SyncMode.INCREMENTAL if self.is_time_series else SyncMode.FULL

    def __repr__(self) -> str:
        return f"<MetricTemplate {self.template_id} ({self.integration})>"


class ResolvedEndpoint:
    """A template endpoint with every {PARAM} placeholder substituted."""

    def __init__(self, path: str, method: str, body: Optional[Any] = None):
        self.path = path
        self.method = method
        self.body = body

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "method": self.method, "body": self.body}


# ─────────────────────────────────────────────
# TEMPLATE REGISTRY
# ─────────────────────────────────────────────

_YT_REPORTS = (
    "https://youtubeanalytics.googleapis.com/v2/reports"
    "?ids=channel==MINE&metrics={metric}&dimensions=day"
    "&startDate=28daysAgo&endDate=today"
)

TEMPLATES: Dict[str, MetricTemplate] = {
    # GitHub
    "github-followers-count": MetricTemplate(
        "github-followers-count",
        "github",
        "Followers",
        "/user",
        unit="followers",
        description="Current follower count of the authenticated user",
    ),
    "github-repo-stars": MetricTemplate(
        "github-repo-stars",
        "github",
        "Repository Stars",
        "/repos/{OWNER}/{REPO}",
        required_params=["OWNER", "REPO"],
        unit="stars",
        description="Stargazer count for a repository",
    ),
    "github-repo-open-issues": MetricTemplate(
        "github-repo-open-issues",
        "github",
        "Open Issues",
        "/repos/{OWNER}/{REPO}",
        required_params=["OWNER", "REPO"],
        unit="issues",
        description="Open issue count for a repository",
    ),
    "github-commit-activity": MetricTemplate(
        "github-commit-activity",
        "github",
        "Commit Activity (Weekly)",
        "/repos/{OWNER}/{REPO}/stats/commit_activity",
        required_params=["OWNER", "REPO"],
        is_time_series=True,
        poll_frequency=PollFrequency.WEEKLY.value,
        unit="commits",
        description="Commits per week over the last year",
    ),
    # PostHog
    "posthog-event-count": MetricTemplate(
        "posthog-event-count",
        "posthog",
        "Event Count (Time Series)",
        "/api/projects/{PROJECT_ID}/query/",
        method="POST",
        body={
            "query": {
                "kind": "HogQLQuery",
                "query": (
                    "SELECT formatDateTime(timestamp, '%Y-%m-%d') as date, "
                    "count() as count FROM events WHERE event = '{EVENT_NAME}' "
                    "AND timestamp > now() - INTERVAL 30 DAY "
                    "GROUP BY date ORDER BY date"
                ),
            }
        },
        required_params=["PROJECT_ID", "EVENT_NAME"],
        is_time_series=True,
        poll_frequency=PollFrequency.HOURLY.value,
        unit="events",
        description="Daily occurrences of a specific event",
    ),
    "posthog-active-users": MetricTemplate(
        "posthog-active-users",
        "posthog",
        "Active Users",
        "/api/projects/{PROJECT_ID}/persons/",
        required_params=["PROJECT_ID"],
        unit="users",
        description="Identified persons in a project",
    ),
    # Google Sheets
    "gsheets-cell-value": MetricTemplate(
        "gsheets-cell-value",
        "google-sheets",
        "Spreadsheet Cell Value",
        "/v4/spreadsheets/{SPREADSHEET_ID}/values/{RANGE}",
        required_params=["SPREADSHEET_ID", "RANGE"],
        poll_frequency=PollFrequency.FREQUENT.value,
        description="A single cell tracked over time",
    ),
    "gsheets-column-data": MetricTemplate(
        "gsheets-column-data",
        "google-sheets",
        "Column Data (Full Dataset)",
        "/v4/spreadsheets/{SPREADSHEET_ID}/values/{SHEET_NAME}",
        required_params=["SPREADSHEET_ID", "SHEET_NAME"],
        is_time_series=True,
        poll_frequency=PollFrequency.HOURLY.value,
        description="Date/value rows from a sheet",
    ),
    # YouTube
    "youtube-channel-views-timeseries": MetricTemplate(
        "youtube-channel-views-timeseries",
        "youtube",
        "Channel Views (Time Series)",
        _YT_REPORTS.format(metric="views"),
        is_time_series=True,
        unit="views",
        description="Daily view counts for the whole channel",
    ),
    "youtube-channel-subscribers-timeseries": MetricTemplate(
        "youtube-channel-subscribers-timeseries",
        "youtube",
        "Subscribers Gained (Time Series)",
        _YT_REPORTS.format(metric="subscribersGained"),
        is_time_series=True,
        unit="subscribers",
        description="Daily subscriber growth for the channel",
    ),
    "youtube-video-views-timeseries": MetricTemplate(
        "youtube-video-views-timeseries",
        "youtube",
        "Video Views (Time Series)",
        _YT_REPORTS.format(metric="views") + "&filters=video=={VIDEO_ID}",
        required_params=["VIDEO_ID"],
        is_time_series=True,
        unit="views",
        description="Daily view counts for a specific video",
    ),
}


_PLACEHOLDER = re.compile(r"\{([A-Z][A-Z0-9_]*)\}")


def get_template(template_id: Optional[str]) -> Optional[MetricTemplate]:
    """Look up a template by id. Returns None for unknown or empty ids."""
    if not template_id:
        return None
    return TEMPLATES.get(template_id)


def _substitute(text: str, params: Dict[str, str]) -> str:
    def repl(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name not in params:
            raise KeyError(name)
        return str(params[name])

    return _PLACEHOLDER.sub(repl, text)


def _substitute_body(body: Any, params: Dict[str, str]) -> Any:
    if isinstance(body, str):
        return _substitute(body, params)
    if isinstance(body, dict):
        return {k: _substitute_body(v, params) for k, v in body.items()}
    if isinstance(body, list):
        return [_substitute_body(v, params) for v in body]
    return body


def resolve_endpoint(
    template: MetricTemplate, params: Dict[str, str]
) -> ResolvedEndpoint:
    """Substitute {PARAM} placeholders in the endpoint path and request body.

    Raises:
        ValueError: A required parameter is missing.
    """
    missing = [p for p in template.required_params if not params.get(p)]
    if missing:
        raise ValueError(
            f"Template {template.template_id} is missing parameters: {', '.join(missing)}"
        )

    try:
        path = _substitute(template.endpoint, params)
        body = _substitute_body(template.body, params)
    except KeyError as e:
        raise ValueError(f"Unknown endpoint parameter: {e.args[0]}") from e

    return ResolvedEndpoint(path=path, method=template.method, body=body)
