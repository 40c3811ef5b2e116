"""Self-contained e2e test units, the version sweep and the command-line entry point."""

from .sweep import SweepReport, expand_configs, run_sweep
from .units import image_validation_unit, infra_unit, operator_unit, teardown, upstream_unit

__all__ = [
    "SweepReport",
    "expand_configs",
    "image_validation_unit",
    "infra_unit",
    "operator_unit",
    "run_sweep",
    "teardown",
    "upstream_unit",
]
