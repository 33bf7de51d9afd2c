from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
import vl_convert as vlc

from ivv_core.filters import DashboardFilters

CSV_BOM = "\ufeff"
# Altair numbers selection params and views from a process-wide counter
_GENERATED_NAME_RE = re.compile(r"\b(param|view)_\d+\b")

# view -> (payload family, payload key with the rows, chart key)
EXPORT_VIEWS: Dict[str, Tuple[str, str, str]] = {
    "trend": ("trend", "rows", "daily_trend"),
    "monthly": ("trend", "monthly", "monthly_totals"),
    "weekday": ("trend", "weekday", "weekday"),
    "duration": ("duration", "bins", "histogram"),
    "module-top": ("categories", "module_top", "module_top"),
    "category-top": ("categories", "category_top", "category_top"),
    "category-stack": ("categories", "stacked", "category_stack"),
}

Rows = Union[pd.DataFrame, Iterable[Mapping[str, Any]]]


def _json_field(value: Any) -> str:
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, pd.Timestamp):
        value = value.isoformat()
    if value is None or (pd.api.types.is_scalar(value) and not isinstance(value, str) and pd.isna(value)):
        value = ""
    if isinstance(value, (list, tuple, dict)):
        # nested values become one quoted JSON string
        value = json.dumps(value, ensure_ascii=False, default=str)
    return json.dumps(value, ensure_ascii=False, default=str)


def to_csv(rows: Rows) -> str:
    """UTF-8 CSV text with a BOM; header from the first row's keys, fields JSON-quoted.

    Empty input gives an empty string, not a header-only file.
    """
    records: List[Mapping[str, Any]]
    if isinstance(rows, pd.DataFrame):
        records = rows.to_dict(orient="records")
    else:
        records = list(rows or [])
    if not records:
        return ""
    keys = list(records[0].keys())
    lines = [",".join(str(k) for k in keys)]
    for rec in records:
        lines.append(",".join(_json_field(rec.get(k)) for k in keys))
    return CSV_BOM + "\n".join(lines)


def to_image(chart: Any, *, scale: float = 2) -> bytes:
    """Rasterize an Altair chart or Vega-Lite spec dict to PNG bytes."""
    spec = chart.to_dict() if hasattr(chart, "to_dict") else chart
    try:
        return vlc.vegalite_to_png(vl_spec=spec, scale=scale)
    except Exception as exc:
        raise RuntimeError(f"PNG export failed: {exc}") from exc


def chart_fingerprint(spec: Mapping[str, Any]) -> str:
    """Stable digest of a chart spec, equal for charts rebuilt from the same data."""
    text = json.dumps(spec, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(_GENERATED_NAME_RE.sub(r"\1", text).encode("utf-8")).hexdigest()


def export_filename(view: str, filters: DashboardFilters, ext: str) -> str:
    return f"{view}-{filters.scope}.{ext.lstrip('.')}"


def _flatten(row: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in row.items():
        if key == "row_ids":
            continue
        if isinstance(value, Mapping):
            for sub_key, sub_value in value.items():
                out[f"{key}_{sub_key}"] = sub_value
        else:
            out[key] = value
    return out


def export_rows(view: str, payload: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Flat, CSV-ready rows of one view taken from its compute payload."""
    _, rows_key, _ = EXPORT_VIEWS[view]
    return [_flatten(r) for r in payload.get(rows_key, []) or []]


def export_chart(view: str, payload: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    _, _, chart_key = EXPORT_VIEWS[view]
    return (payload.get("charts") or {}).get(chart_key)
