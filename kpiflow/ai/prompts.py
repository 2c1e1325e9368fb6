"""KPIFlow — Code Generation Prompts.

Both transformer kinds share the sandbox rules; only the function contract
differs.
"""

import json
from typing import Any, Dict, List, Optional

MAX_SAMPLE_CHARS = 12000
MAX_SAMPLE_POINTS = 20

SANDBOX_RULES = """SANDBOX RULES — CODE THAT BREAKS THESE IS REJECTED:
1. Output ONLY Python source. No prose, no markdown fences.
2. Define exactly one top-level entry point named `transform`. Helper functions are allowed.
3. You may import ONLY: math, statistics, datetime, collections, itertools, functools, re, json, decimal, calendar. Import whole modules or their public names; submodules are unavailable.
4. No file, network, process or environment access. No eval, exec, compile, open, globals, getattr.
5. Never access attributes starting with an underscore (namedtuple helpers such as _asdict included).
6. Use f-strings for formatting; call .format() only on string literals.
7. Must be deterministic: same input, same output. Do not call datetime.now() or random.
8. Handle missing keys and empty lists gracefully; never raise on an empty payload.
"""

INGESTION_SYSTEM_PROMPT = (
    """You write Python data-ingestion functions for a KPI tracking service.

CONTRACT:
def transform(api_response, endpoint):
    # api_response: the decoded JSON returned by the provider API (dict or list)
    # endpoint: {"path": str, "method": str, "body": dict | None,
    #            "template_id": str | None, "fetched_at": "YYYY-MM-DD"}
    # returns: list of dicts, each:
    #   {"timestamp": ISO-8601 string or "YYYY-MM-DD",
    #    "value": number,
    #    "dimensions": dict of str -> str|number, or None,
    #    "value_label": str or None}

RULES:
- Time-series responses: emit one point per period in the response, oldest first.
- Snapshot responses (a single current value): emit exactly one point. Use the
  response's own timestamp field if present, otherwise the date found in
  endpoint["fetched_at"].
- Break values down by category using `dimensions`, never by inventing extra metrics.
- Values must be plain numbers (parse numeric strings, strip thousands separators).

"""
    + SANDBOX_RULES
)

CHART_SYSTEM_PROMPT = (
    """You write Python chart-building functions for a KPI dashboard.

CONTRACT:
def transform(data_points, preferences):
    # data_points: list of {"timestamp": ISO-8601 string, "value": float,
    #                       "dimensions": dict or None, "value_label": str or None},
    #              sorted oldest first
    # preferences: {"chart_type": str, "cadence": "DAILY"|"WEEKLY"|"MONTHLY",
    #               "selected_dimension": str or None, "user_prompt": str or None}
    # returns a dict with keys:
    #   chart_type (str), chart_data (list of row dicts), chart_config (dict of
    #   series key -> {"label": str, "color": str}), x_axis_key (str),
    #   data_keys (list of str), title (str), description (str or None),
    #   x_axis_label, y_axis_label (str or None), show_legend, show_tooltip, stacked (bool)

RULES:
- Aggregate timestamps into buckets matching preferences["cadence"]
  (DAILY: YYYY-MM-DD, WEEKLY: Monday of the week, MONTHLY: YYYY-MM).
- When selected_dimension is set, produce one series per distinct value of that
  dimension; otherwise a single series named "value".
- Every key in data_keys must appear in chart_config and in each chart_data row.
- Colors use CSS variables "var(--chart-1)" through "var(--chart-5)".
- Follow user_prompt wherever it does not conflict with this contract.

"""
    + SANDBOX_RULES
)


def _truncate(text: str, limit: int = MAX_SAMPLE_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... (truncated)"


def build_ingestion_prompt(
    api_response: Any,
    endpoint: Dict[str, Any],
    template_label: Optional[str] = None,
    template_description: Optional[str] = None,
) -> str:
    """User prompt for the ingestion transformer."""
    lines = []
    if template_label:
        lines.append(f"Metric: {template_label}")
    if template_description:
        lines.append(f"Description: {template_description}")
    lines.append(f"Endpoint: {endpoint.get('method', 'GET')} {endpoint.get('path', '')}")
    lines.append("")
    lines.append("API response sample:")
    lines.append(_truncate(json.dumps(api_response, indent=2, default=str)))
    return "\n".join(lines)


def build_chart_prompt(
    stats: Dict[str, Any],
    sample_points: List[Dict[str, Any]],
    preferences: Dict[str, Any],
) -> str:
    """User prompt for the chart transformer."""
    lines = [
        f"Chart type: {preferences.get('chart_type')}",
        f"Cadence: {preferences.get('cadence')}",
        f"Selected dimension: {preferences.get('selected_dimension') or 'none'}",
        "",
        "Data statistics:",
        json.dumps(stats, indent=2, default=str),
        "",
        f"Sample data points (first {len(sample_points)}):",
        json.dumps(sample_points, indent=2, default=str),
    ]
    if preferences.get("user_prompt"):
        lines += ["", f"User preferences: {preferences['user_prompt']}"]
    return "\n".join(lines)


def build_repair_prompt(original_prompt: str, failed_code: str, error: str) -> str:
    """Follow-up prompt when generated code failed its test run."""
    return (
        f"{original_prompt}\n\n"
        f"Your previous code failed when executed.\n\n"
        f"Previous code:\n{failed_code}\n\n"
        f"Error:\n{error}\n\n"
        f"Return corrected code that follows the contract exactly."
    )
