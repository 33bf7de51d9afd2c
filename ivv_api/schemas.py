from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class DashboardFiltersModel(BaseModel):
    year: str = "ALL"
    month: str = "ALL"
    group_by: str = "none"
    selection: str = "ALL"
    facet: bool = False
    metric: str = "count"
    bin_mode: str = "auto"
    focus: bool = False
    top_n: int = 5


class MetaListResponse(BaseModel):
    values: List[str]


class DatasetStatusModel(BaseModel):
    state: str
    rows: int = 0
    error: Optional[str] = None


class MetaStatusResponse(BaseModel):
    datasets: Dict[str, DatasetStatusModel] = Field(default_factory=dict)
