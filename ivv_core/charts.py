from __future__ import annotations

from typing import Any, Dict

import altair as alt

alt.data_transformers.disable_max_rows()

CHART_HEIGHT = 280


def hover_selection(field: str) -> alt.Parameter:
    """Highlight the hovered series and dim the rest."""
    return alt.selection_point(fields=[field], on="mouseover", empty="all")


def to_vega_spec(chart: alt.TopLevelMixin) -> Dict[str, Any]:
    """Convert an Altair chart (single or layered) into a JSON-serializable Vega-Lite spec dict."""
    return chart.to_dict()
