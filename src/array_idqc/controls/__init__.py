"""Array control-probe metrics."""

from .metrics import (
    DEFAULT_CONTROL_METRICS,
    ControlMetric,
    apply_cutoff_overrides,
    catalog_from_dict,
    compute_metric_values,
    evaluate_control_metrics,
    evaluate_metric_pass,
    load_control_catalog,
)

__all__ = [
    "DEFAULT_CONTROL_METRICS",
    "ControlMetric",
    "apply_cutoff_overrides",
    "catalog_from_dict",
    "compute_metric_values",
    "evaluate_control_metrics",
    "evaluate_metric_pass",
    "load_control_catalog",
]
