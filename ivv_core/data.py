from __future__ import annotations

import logging
import re
from dataclasses import dataclass, fields
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from ivv_core.filters import ALL, DashboardFilters, FilterState, GroupConfig, TimeIndex, normalize_filters, revalidate

logger = logging.getLogger(__name__)


SHEET_BASE_URL = (
    "https://docs.google.com/spreadsheets/d/e/"
    "2PACX-1vS3CFFG7hUU8oLryXhjneEWI1ZbqqDzd6QyppdKkkWLBARdgpVPh4vWezp1fgyiN07Iop7kKm06XEnB/pub"
)


def sheet_csv_url(gid: int) -> str:
    return f"{SHEET_BASE_URL}?gid={gid}&single=true&output=csv"


@dataclass(frozen=True)
class DataSources:
    """Published CSV URL per dataset. ``None`` means the dataset is not configured."""

    kpi: Optional[str] = sheet_csv_url(53717333)
    trend: Optional[str] = sheet_csv_url(1697285422)
    module_top5: Optional[str] = sheet_csv_url(1042563257)
    module_by_month: Optional[str] = None
    avg_duration: Optional[str] = None
    calls: Optional[str] = None
    category_trend: Optional[str] = None


DEFAULT_SOURCES = DataSources()
DATASETS = tuple(f.name for f in fields(DataSources))

DATE_ALIASES = ("日期", "date", "Date")
COUNT_ALIASES = ("件數", "count", "Count")
MONTH_ALIASES = ("月份", "month", "Month")
MODULE_ALIASES = ("模組", "module", "Module")
CATEGORY_ALIASES = ("類別", "分類", "category", "Category")
MINUTES_ALIASES = ("處理時長(分)", "解決時長(分)", "平均處理時長", "resolve_minutes", "duration", "minutes")

KPI_FIELDS = ("本月總件數", "解決率", "平均處理時長", "未結案數", "SLA 達成率")

UNCATEGORIZED = "未分類"
UNASSIGNED = "未指派"

MONTH_KEY_RE = re.compile(r"\d{4}-(0[1-9]|1[0-2])")
BLANK_TOKENS = {"", "nan", "none", "null", "<na>"}

TREND_COLUMNS = ["date", "month", "count"]
CALL_COLUMNS = ["row_id", "date", "month", "category", "module", "minutes", "missing_duration"]
MODULE_MONTH_COLUMNS = ["month", "module", "count"]
AVG_DURATION_COLUMNS = ["month", "minutes"]
CATEGORY_TREND_COLUMNS = ["date", "month", "category", "count"]
RANKED_COLUMNS = ["name", "value"]


# ---------------- Helpers ----------------
def is_blank(value: object) -> bool:
    if value is None:
        return True
    if not isinstance(value, str) and pd.api.types.is_scalar(value) and pd.isna(value):
        return True
    return str(value).strip().lower() in BLANK_TOKENS


def round_half_up(value: object, ndigits: int = 0) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    q = Decimal(10) ** -ndigits
    return float(Decimal(str(value)).quantize(q, rounding=ROUND_HALF_UP))


def drop_duplicate_columns(df: pd.DataFrame) -> pd.DataFrame:
    return df.loc[:, ~df.columns.duplicated()]


def coalesce_columns(df: pd.DataFrame, aliases: Iterable[str]) -> pd.Series:
    """Per row, take the value of the first alias column that is not blank."""
    out = pd.Series([None] * len(df), index=df.index, dtype=object)
    for alias in aliases:
        if alias not in df.columns:
            continue
        col = df[alias]
        if isinstance(col, pd.DataFrame):
            col = col.iloc[:, 0]
        fill = out.isna() & ~col.map(is_blank)
        out[fill] = col[fill]
    return out


def _date_key(text: str) -> Optional[str]:
    # one value at a time: a column may mix naive dates and offset timestamps
    if not text:
        return None
    try:
        ts = pd.to_datetime(text, errors="coerce", format="mixed")
    except (ValueError, TypeError, OverflowError):
        return None
    if ts is None or pd.isna(ts):
        return None
    # keep the wall-clock date of offset timestamps
    return ts.strftime("%Y-%m-%d")


def parse_date_keys(values: pd.Series) -> pd.DataFrame:
    """Parse loosely formatted dates into ``date`` (YYYY-MM-DD) and ``month`` (YYYY-MM).

    Timestamps keep their local calendar date, whatever their offset.
    Unparseable values fall back to their first 7 characters as a degraded
    month key; keys that are not a valid ``YYYY-MM`` leave the month empty.
    """
    text = values.map(lambda v: "" if is_blank(v) else str(v).strip())
    text = text.str.replace(r"[年月]", "-", regex=True).str.replace("日", "", regex=False)
    dates = text.map(_date_key).astype(object)

    fallback = text.str.slice(0, 7).str.replace("/", "-", regex=False)
    valid = fallback.map(lambda s: bool(MONTH_KEY_RE.fullmatch(s))).astype(bool)
    months = dates.map(lambda d: d[:7] if isinstance(d, str) else None)
    months = months.where(months.notna(), fallback.where(valid, None))
    return pd.DataFrame({"date": dates, "month": months}, index=values.index)


def to_count(values: pd.Series) -> pd.Series:
    """Counts: non-finite or missing -> 0, negatives clipped, rounded to int."""
    cleaned = values.map(lambda v: v.replace(",", "") if isinstance(v, str) else v)
    nums = pd.to_numeric(cleaned, errors="coerce").replace([np.inf, -np.inf], np.nan)
    return nums.fillna(0).clip(lower=0).round().astype(int)


def to_minutes(values: pd.Series) -> pd.Series:
    """Durations: anything non-finite or negative becomes NaN (missing), never 0."""
    cleaned = values.map(lambda v: v.replace(",", "") if isinstance(v, str) else v)
    nums = pd.to_numeric(cleaned, errors="coerce").replace([np.inf, -np.inf], np.nan).astype(float)
    return nums.where(nums >= 0)


def clean_label(values: pd.Series, fallback: str) -> pd.Series:
    return values.map(lambda v: fallback if is_blank(v) else str(v).strip())


def _empty(columns: List[str]) -> pd.DataFrame:
    return pd.DataFrame({c: pd.Series(dtype=object) for c in columns})


def _month_from(df: pd.DataFrame) -> pd.Series:
    """Month key from a month column, else derived from a date column."""
    explicit = parse_date_keys(coalesce_columns(df, MONTH_ALIASES))["month"]
    derived = parse_date_keys(coalesce_columns(df, DATE_ALIASES))["month"]
    return explicit.where(explicit.notna(), derived)


# ---------------- Normalizers ----------------
def normalize_trend(raw: pd.DataFrame) -> pd.DataFrame:
    if raw is None or raw.empty:
        return _empty(TREND_COLUMNS)
    df = raw.reset_index(drop=True)
    keys = parse_date_keys(coalesce_columns(df, DATE_ALIASES))
    out = pd.DataFrame({"date": keys["date"], "count": to_count(coalesce_columns(df, COUNT_ALIASES))})
    dropped = int(out["date"].isna().sum())
    if dropped:
        logger.debug("trend: dropped %d rows without a parseable date", dropped)
    out = out.dropna(subset=["date"])
    if out.empty:
        return _empty(TREND_COLUMNS)
    out = out.groupby("date", as_index=False, sort=True)["count"].sum()
    out["month"] = out["date"].str.slice(0, 7)
    out["count"] = out["count"].astype(int)
    return out[TREND_COLUMNS].reset_index(drop=True)


def normalize_calls(raw: pd.DataFrame) -> pd.DataFrame:
    """One row per service call; ``row_id`` points back into the raw frame."""
    if raw is None or raw.empty:
        return _empty(CALL_COLUMNS)
    df = raw.reset_index(drop=True)
    keys = parse_date_keys(coalesce_columns(df, DATE_ALIASES))
    minutes = to_minutes(coalesce_columns(df, MINUTES_ALIASES))
    out = pd.DataFrame(
        {
            "row_id": df.index.astype(int),
            "date": keys["date"],
            "month": keys["month"],
            "category": clean_label(coalesce_columns(df, CATEGORY_ALIASES), UNCATEGORIZED),
            "module": clean_label(coalesce_columns(df, MODULE_ALIASES), UNASSIGNED),
            "minutes": minutes,
            "missing_duration": minutes.isna(),
        }
    )
    out = out.dropna(subset=["month"])
    return out[CALL_COLUMNS].reset_index(drop=True)


def normalize_module_by_month(raw: pd.DataFrame) -> pd.DataFrame:
    if raw is None or raw.empty:
        return _empty(MODULE_MONTH_COLUMNS)
    df = raw.reset_index(drop=True)
    out = pd.DataFrame(
        {
            "month": _month_from(df),
            "module": clean_label(coalesce_columns(df, MODULE_ALIASES), UNASSIGNED),
            "count": to_count(coalesce_columns(df, COUNT_ALIASES)),
        }
    )
    return out.dropna(subset=["month"]).reset_index(drop=True)


def normalize_avg_duration(raw: pd.DataFrame) -> pd.DataFrame:
    if raw is None or raw.empty:
        return _empty(AVG_DURATION_COLUMNS)
    df = raw.reset_index(drop=True)
    out = pd.DataFrame({"month": _month_from(df), "minutes": to_minutes(coalesce_columns(df, MINUTES_ALIASES))})
    out = out.dropna(subset=["month"]).sort_values("month", kind="stable")
    return out.reset_index(drop=True)


def normalize_category_trend(raw: pd.DataFrame) -> pd.DataFrame:
    if raw is None or raw.empty:
        return _empty(CATEGORY_TREND_COLUMNS)
    df = raw.reset_index(drop=True)
    keys = parse_date_keys(coalesce_columns(df, DATE_ALIASES))
    out = pd.DataFrame(
        {
            "date": keys["date"],
            "month": keys["month"].where(keys["month"].notna(), _month_from(df)),
            "category": clean_label(coalesce_columns(df, CATEGORY_ALIASES), UNCATEGORIZED),
            "count": to_count(coalesce_columns(df, COUNT_ALIASES)),
        }
    )
    return out.dropna(subset=["month"]).reset_index(drop=True)


def normalize_module_top5(raw: pd.DataFrame) -> pd.DataFrame:
    """The pre-ranked sheet carries the name in its first column and the value in its second."""
    if raw is None or raw.empty or len(raw.columns) < 2:
        return _empty(RANKED_COLUMNS)
    df = raw.reset_index(drop=True)
    out = pd.DataFrame(
        {
            "name": clean_label(df.iloc[:, 0], UNASSIGNED),
            "value": to_count(df.iloc[:, 1]),
        }
    )
    return out.reset_index(drop=True)


def _kpi_value(value: object) -> object:
    if is_blank(value):
        return None
    s = str(value).strip()
    try:
        num = float(s.replace(",", ""))
    except ValueError:
        return s
    return num if np.isfinite(num) else None


def normalize_kpi(raw: pd.DataFrame) -> Dict[str, object]:
    if raw is None or raw.empty:
        return {}
    first = raw.iloc[0]
    return {name: _kpi_value(first.get(name)) for name in KPI_FIELDS if name in raw.columns}


NORMALIZERS: Dict[str, Callable[[pd.DataFrame], Any]] = {
    "kpi": normalize_kpi,
    "trend": normalize_trend,
    "module_top5": normalize_module_top5,
    "module_by_month": normalize_module_by_month,
    "avg_duration": normalize_avg_duration,
    "calls": normalize_calls,
    "category_trend": normalize_category_trend,
}


# ---------------- Time index ----------------
def build_time_index(trend: pd.DataFrame) -> TimeIndex:
    if trend is None or trend.empty or "month" not in trend.columns:
        return TimeIndex()
    months = sorted({m for m in trend["month"].dropna().astype(str) if MONTH_KEY_RE.fullmatch(m)})
    months_by_year: Dict[str, List[str]] = {}
    for month in months:
        months_by_year.setdefault(month[:4], []).append(month)
    return TimeIndex(years=sorted(months_by_year), months_by_year=months_by_year)


# ---------------- Loaders ----------------
def fetch_csv(url: str) -> pd.DataFrame:
    df = pd.read_csv(url, dtype=str, keep_default_na=False, skip_blank_lines=True)
    df.columns = [str(c).strip() for c in df.columns]
    df = drop_duplicate_columns(df)
    df = df.apply(lambda s: s.str.strip())
    blank = df.eq("").all(axis=1)
    return df[~blank].reset_index(drop=True)


def build_dashboard_data(
    frames: Dict[str, pd.DataFrame], status: Optional[Dict[str, Dict[str, object]]] = None
) -> Dict[str, object]:
    """Normalize raw dataset frames into the data context consumed by ``prepare_context``."""
    status = dict(status or {})
    data_ctx: Dict[str, object] = {}
    for name in DATASETS:
        raw = frames.get(name)
        if name not in status:
            state = "ready" if raw is not None else "missing"
            status[name] = {"state": state, "rows": 0 if raw is None else int(len(raw)), "error": None}
        try:
            data_ctx[name] = NORMALIZERS[name](raw if raw is not None else pd.DataFrame())
        except Exception as exc:
            logger.warning("normalizing dataset %s failed: %s", name, exc)
            status[name] = {"state": "error", "rows": 0, "error": str(exc)}
            data_ctx[name] = NORMALIZERS[name](pd.DataFrame())
    data_ctx["calls_raw"] = (frames.get("calls") if frames.get("calls") is not None else pd.DataFrame()).reset_index(drop=True)
    time_index = build_time_index(data_ctx["trend"])
    data_ctx["time_index"] = time_index
    data_ctx["years"] = list(time_index.years)
    data_ctx["status"] = status
    return data_ctx


@lru_cache(maxsize=4)
def _load_dashboard_data_cached(sources: DataSources) -> Dict[str, object]:
    frames: Dict[str, pd.DataFrame] = {}
    status: Dict[str, Dict[str, object]] = {}
    for name in DATASETS:
        url = getattr(sources, name)
        if not url:
            status[name] = {"state": "missing", "rows": 0, "error": None}
            continue
        try:
            frames[name] = fetch_csv(url)
        except Exception as exc:
            logger.warning("fetching dataset %s failed: %s", name, exc)
            status[name] = {"state": "error", "rows": 0, "error": str(exc)}
            continue
        status[name] = {"state": "ready", "rows": int(len(frames[name])), "error": None}
        logger.debug("fetched dataset %s (%d rows)", name, len(frames[name]))
    return build_dashboard_data(frames, status)


def load_dashboard_data(sources: DataSources = DEFAULT_SOURCES) -> Dict[str, object]:
    return _load_dashboard_data_cached(sources)


def refresh_dashboard_data() -> None:
    _load_dashboard_data_cached.cache_clear()


# ---------------- Filtering ----------------
def filter_by_period(df: pd.DataFrame, period: FilterState) -> pd.DataFrame:
    if df is None or df.empty or "month" not in df.columns:
        return df if df is not None else pd.DataFrame()
    if period.month != ALL:
        return df[df["month"] == period.month]
    if period.year != ALL:
        return df[df["month"].astype(str).str.slice(0, 4) == period.year]
    return df


def filter_by_group(df: pd.DataFrame, group: GroupConfig) -> pd.DataFrame:
    if df is None or df.empty or group.group_by == "none" or group.selection == ALL:
        return df
    if group.group_by not in df.columns:
        return df
    return df[df[group.group_by] == group.selection]


def group_values(data_ctx: Dict[str, object], group_by: str) -> List[str]:
    """Selectable values for the duration group selector, by descending volume."""
    calls: pd.DataFrame = data_ctx.get("calls", pd.DataFrame())
    if group_by == "none" or calls.empty or group_by not in calls.columns:
        return []
    counts = calls[group_by].astype(str).value_counts(sort=False)
    return [str(k) for k in counts.sort_values(ascending=False, kind="stable").index]


def prepare_context(filters: dict | DashboardFilters, data_ctx: Dict[str, object]) -> Dict[str, object]:
    time_index: TimeIndex = data_ctx.get("time_index") or TimeIndex()
    if isinstance(filters, DashboardFilters):
        # data may have reloaded since the filters were built
        period = revalidate(filters.period, time_index)
        filt = filters if period == filters.period else DashboardFilters(
            period=period, group=filters.group, duration=filters.duration, top_n=filters.top_n
        )
    else:
        filt = normalize_filters(filters or {}, time_index=time_index)

    trend: pd.DataFrame = data_ctx.get("trend", pd.DataFrame())
    calls: pd.DataFrame = data_ctx.get("calls", pd.DataFrame())
    module_by_month: pd.DataFrame = data_ctx.get("module_by_month", pd.DataFrame())
    avg_duration: pd.DataFrame = data_ctx.get("avg_duration", pd.DataFrame())
    category_trend: pd.DataFrame = data_ctx.get("category_trend", pd.DataFrame())

    year_only = FilterState(year=filt.period.year)
    trend_year = filter_by_period(trend, year_only)
    calls_filtered = filter_by_period(calls, filt.period)

    return {
        "filters": filt,
        "time_index": time_index,
        "trend": trend,
        "trend_year": trend_year,
        "trend_filtered": filter_by_period(trend, filt.period),
        "calls": calls,
        "calls_raw": data_ctx.get("calls_raw", pd.DataFrame()),
        "calls_filtered": calls_filtered,
        "calls_in_scope": filter_by_group(calls_filtered, filt.group),
        "calls_year": filter_by_period(calls, year_only),
        "module_filtered": filter_by_period(module_by_month, filt.period),
        "module_top5": data_ctx.get("module_top5", pd.DataFrame()),
        "avg_duration_year": filter_by_period(avg_duration, year_only),
        "category_filtered": filter_by_period(category_trend, filt.period),
        "kpi": data_ctx.get("kpi", {}) or {},
        "status": data_ctx.get("status", {}) or {},
    }
