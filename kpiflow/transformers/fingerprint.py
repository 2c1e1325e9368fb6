"""KPIFlow — Structural Shape Fingerprints.

A fingerprint captures the key/type skeleton of a JSON document, not its
values, so fresh data with the same schema reuses a cached transformer while
a provider schema change forces regeneration.
"""

import hashlib
import json
from typing import Any, Dict, List

MAX_DEPTH = 8
MAX_LIST_SAMPLE = 20


def _scalar_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    return "string"


def _merge(shapes: List[Any]) -> Any:
    """Union of the shapes of list elements."""
    objects = [s for s in shapes if isinstance(s, dict)]
    others = sorted({json.dumps(s, sort_keys=True) for s in shapes if not isinstance(s, dict)})
    merged: Dict[str, Any] = {}
    for obj in objects:
        for key, child in obj.items():
            merged.setdefault(key, []).append(child)
    result: List[Any] = [json.loads(o) for o in others]
    if objects:
        result.append({key: _merge(children) for key, children in sorted(merged.items())})
    if len(result) == 1:
        return result[0]
    return {"anyOf": result}


def shape_of(value: Any, depth: int = 0) -> Any:
    """Reduce a JSON value to its structural skeleton.

    Nulls are ignored when merging list elements with concrete types, so a
    value that is occasionally missing does not change the fingerprint.
    """
    if depth >= MAX_DEPTH:
        return "any"
    if isinstance(value, dict):
        return {str(k): shape_of(v, depth + 1) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple)):
        if not value:
            return ["empty"]
        shapes = [shape_of(v, depth + 1) for v in value[:MAX_LIST_SAMPLE]]
        concrete = [s for s in shapes if s != "null"] or shapes
        return [_merge(concrete)]
    return _scalar_type(value)


def fingerprint(value: Any) -> str:
    """sha256 of the canonical shape of ``value``."""
    canonical = json.dumps(shape_of(value), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


def data_points_fingerprint(points: List[Dict[str, Any]]) -> str:
    """Fingerprint of stored data points: dimension keys and label presence.

    Point values and timestamps never change the shape, only which
    dimensions exist does.
    """
    dimension_keys = sorted(
        {key for p in points for key in (p.get("dimensions") or {}).keys()}
    )
    has_labels = any(p.get("value_label") for p in points)
    canonical = json.dumps(
        {"dimensions": dimension_keys, "labels": has_labels, "empty": not points},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode()).hexdigest()
