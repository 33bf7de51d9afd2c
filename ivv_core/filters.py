from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

ALL = "ALL"

GROUP_BY_OPTIONS = ("none", "category", "module")
METRIC_OPTIONS = ("count", "percent")
BIN_MODE_OPTIONS = ("auto", "fixed")

TOP_N_DEFAULT = 5
TOP_N_MAX = 50


@dataclass(frozen=True)
class TimeIndex:
    years: List[str] = field(default_factory=list)
    months_by_year: Dict[str, List[str]] = field(default_factory=dict)

    def months_for(self, year: str) -> List[str]:
        return list(self.months_by_year.get(year, []))


@dataclass(frozen=True)
class FilterState:
    year: str = ALL
    month: str = ALL


@dataclass(frozen=True)
class GroupConfig:
    group_by: str = "none"
    selection: str = ALL
    facet: bool = False


@dataclass(frozen=True)
class DurationOptions:
    metric: str = "count"
    bin_mode: str = "auto"
    focus: bool = False


@dataclass(frozen=True)
class DashboardFilters:
    period: FilterState = field(default_factory=FilterState)
    group: GroupConfig = field(default_factory=GroupConfig)
    duration: DurationOptions = field(default_factory=DurationOptions)
    top_n: int = TOP_N_DEFAULT

    @property
    def year(self) -> str:
        return self.period.year

    @property
    def month(self) -> str:
        return self.period.month

    @property
    def scope(self) -> str:
        """Export scope: the active month key, else the year, else ``all``."""
        if self.period.month != ALL:
            return self.period.month
        if self.period.year != ALL:
            return self.period.year
        return "all"


def _as_key(value: object) -> str:
    if value is None:
        return ALL
    s = str(value).strip()
    return s or ALL


def _choice(value: object, options: tuple, default: str) -> str:
    s = str(value).strip().lower() if value is not None else ""
    return s if s in options else default


def _as_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


# ---------------- Period (year / month) ----------------
def revalidate(state: FilterState, index: TimeIndex) -> FilterState:
    """Repair a period so the month always belongs to the active year.

    Must run whenever the month list for the active year may have changed,
    including after the underlying data reloads.
    """
    year = state.year if state.year in index.years else ALL
    month = state.month
    if year == ALL or month not in index.months_for(year):
        month = ALL
    if year == state.year and month == state.month:
        return state
    return FilterState(year=year, month=month)


def set_year(state: FilterState, year: object, index: TimeIndex) -> FilterState:
    return revalidate(replace(state, year=_as_key(year)), index)


def set_month(state: FilterState, month: object, index: TimeIndex) -> FilterState:
    return revalidate(replace(state, month=_as_key(month)), index)


# ---------------- Group config ----------------
def facet_allowed(config: GroupConfig) -> bool:
    return config.group_by != "none" and config.selection == ALL


def repair_group(config: GroupConfig) -> GroupConfig:
    group_by = config.group_by if config.group_by in GROUP_BY_OPTIONS else "none"
    selection = ALL if group_by == "none" else _as_key(config.selection)
    repaired = GroupConfig(group_by=group_by, selection=selection, facet=bool(config.facet))
    if repaired.facet and not facet_allowed(repaired):
        repaired = replace(repaired, facet=False)
    return repaired


def set_group_by(config: GroupConfig, group_by: object) -> GroupConfig:
    new_group = _choice(group_by, GROUP_BY_OPTIONS, "none")
    if new_group == "none":
        return GroupConfig()
    selection = config.selection if new_group == config.group_by else ALL
    return repair_group(GroupConfig(group_by=new_group, selection=selection, facet=config.facet))


def set_selection(config: GroupConfig, selection: object) -> GroupConfig:
    return repair_group(replace(config, selection=_as_key(selection)))


def set_facet(config: GroupConfig, enabled: bool) -> GroupConfig:
    return repair_group(replace(config, facet=bool(enabled)))


# ---------------- Raw input -> filters ----------------
def normalize_filters(raw: dict, *, time_index: Optional[TimeIndex] = None) -> DashboardFilters:
    raw = raw or {}
    index = time_index or TimeIndex()

    period = set_year(FilterState(), raw.get("year"), index)
    period = set_month(period, raw.get("month"), index)

    group = set_group_by(GroupConfig(), raw.get("group_by"))
    group = set_selection(group, raw.get("selection"))
    group = set_facet(group, _as_bool(raw.get("facet", False)))

    duration = DurationOptions(
        metric=_choice(raw.get("metric"), METRIC_OPTIONS, "count"),
        bin_mode=_choice(raw.get("bin_mode"), BIN_MODE_OPTIONS, "auto"),
        focus=_as_bool(raw.get("focus", False)),
    )

    top_n = raw.get("top_n", TOP_N_DEFAULT)
    try:
        top_n = int(top_n)
    except Exception:
        top_n = TOP_N_DEFAULT
    top_n = max(1, min(TOP_N_MAX, top_n))

    return DashboardFilters(period=period, group=group, duration=duration, top_n=top_n)
