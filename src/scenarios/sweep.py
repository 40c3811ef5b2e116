from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from src.common.errors import HarnessError
from src.config.settings import RunConfig
from src.suite.results import TestResult

from .units import upstream_unit

logger = logging.getLogger(__name__)

Unit = Callable[..., TestResult]


@dataclass(frozen=True)
class SweepOutcome:
    label: str
    result: Optional[TestResult] = None
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, object]:
        return {
            "label": self.label,
            "ok": self.ok,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "duration": round(self.duration, 2),
        }


@dataclass
class SweepReport:
    outcomes: List[SweepOutcome] = field(default_factory=list)

    @property
    def failures(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.ok)

    def to_dict(self) -> Dict[str, object]:
        return {
            "total": len(self.outcomes),
            "failures": self.failures,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


def sweep_label(config: RunConfig) -> str:
    return f"cnpg {config.operator.version} / pg {config.postgres_version} / {config.postgres_variant}"


def expand_configs(
    config: RunConfig,
    *,
    variants: Optional[Sequence[str]] = None,
    all_operators: bool = False,
) -> List[RunConfig]:
    """Every (operator, postgres version, variant) combination to sweep."""

    entries = config.matrix.operators if all_operators else (config.operator,)
    variant_names = list(variants) if variants else [config.postgres_variant]
    configs: List[RunConfig] = []
    for entry in entries:
        base = config.with_operator(entry.version)
        for postgres_version in entry.postgres_versions:
            for variant in variant_names:
                configs.append(base.with_postgres(postgres_version, variant))
    return configs


def run_sweep(
    configs: Sequence[RunConfig],
    *,
    unit: Unit = upstream_unit,
    workers: int = 1,
    **unit_kwargs,
) -> SweepReport:
    """Run ``unit`` once per configuration; failures are recorded, never raised."""

    def run_one(cfg: RunConfig) -> SweepOutcome:
        label = sweep_label(cfg)
        started = time.monotonic()
        try:
            result = unit(cfg, **unit_kwargs)
        except HarnessError as exc:
            logger.error("%s failed: %s", label, exc)
            return SweepOutcome(label, getattr(exc, "result", None), str(exc), time.monotonic() - started)
        except Exception as exc:  # noqa: BLE001
            logger.exception("%s failed unexpectedly", label)
            error = f"{type(exc).__name__}: {exc}"
            return SweepOutcome(label, None, error, time.monotonic() - started)
        logger.info("%s passed: %s", label, result)
        return SweepOutcome(label, result, None, time.monotonic() - started)

    report = SweepReport()
    logger.info("Sweeping %d configurations with %d workers", len(configs), workers)
    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        future_map = {executor.submit(run_one, cfg): cfg for cfg in configs}
        for future in as_completed(future_map):
            report.outcomes.append(future.result())
    report.outcomes.sort(key=lambda outcome: outcome.label)
    logger.info("Sweep finished: %d/%d configurations failed", report.failures, len(report.outcomes))
    return report


__all__ = ["SweepOutcome", "SweepReport", "expand_configs", "run_sweep", "sweep_label"]
