"""Core (UI-agnostic) dashboard logic.

This package contains:
- dataset loading (published CSV -> normalized pandas frames)
- filter state and its repair rules
- view compute functions (JSON-serializable payloads)
- CSV / PNG export helpers
- chart helpers (Altair -> Vega-Lite spec dict)
"""
