from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TestResult:
    passed: int = 0
    failed: int = 0
    skipped: int = 0

    __test__ = False

    def __post_init__(self) -> None:
        if min(self.passed, self.failed, self.skipped) < 0:
            raise ValueError("result counts must be non-negative")

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.skipped

    @property
    def is_empty(self) -> bool:
        return self.passed == 0 and self.failed == 0

    def to_dict(self) -> Dict[str, int]:
        return {"passed": self.passed, "failed": self.failed, "skipped": self.skipped, "total": self.total}

    def __str__(self) -> str:
        return f"passed={self.passed} failed={self.failed} skipped={self.skipped} total={self.total}"


Strategy = Callable[[str], Optional[TestResult]]


def _count(pattern: str, text: str) -> int:
    return len(re.findall(pattern, text))


def _field(name: str, value: str) -> str:
    return r'"%s"\s*:\s*%s' % (name, value)


def structured_strategy(text: str) -> Optional[TestResult]:
    """Walk ginkgo's ``SpecReports`` and count leaf ``It`` nodes by state."""

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    suites = data if isinstance(data, list) else [data]
    counts = {"passed": 0, "failed": 0, "skipped": 0}
    seen = False
    for suite in suites:
        if not isinstance(suite, dict):
            continue
        for spec in suite.get("SpecReports") or []:
            if not isinstance(spec, dict):
                continue
            if spec.get("LeafNodeType", "It") != "It":
                continue
            seen = True
            state = str(spec.get("State", "")).lower()
            if state == "passed":
                counts["passed"] += 1
            elif state in ("skipped", "pending"):
                counts["skipped"] += 1
            elif state:
                counts["failed"] += 1
    if not seen:
        return None
    return TestResult(**counts)


def _state_strategy(key: str) -> Strategy:
    def strategy(text: str) -> Optional[TestResult]:
        return TestResult(
            passed=_count(_field(key, '"passed"'), text),
            failed=_count(_field(key, '"failed"'), text),
            skipped=_count(_field(key, '"skipped"'), text),
        )

    strategy.__name__ = f"state_strategy[{key}]"
    return strategy


def flag_strategy(text: str) -> Optional[TestResult]:
    passed = _count(_field("Passed", "true"), text)
    skipped = _count(_field("Skipped", "true"), text)
    failed = max(0, _count(_field("Passed", "false"), text) - skipped)
    return TestResult(passed=passed, failed=failed, skipped=skipped)


DEFAULT_STRATEGIES: Tuple[Strategy, ...] = (
    structured_strategy,
    _state_strategy("State"),
    _state_strategy("state"),
    flag_strategy,
)


def extract_counts(text: str, strategies: Sequence[Strategy] = DEFAULT_STRATEGIES) -> TestResult:
    """Return the first strategy result with any non-zero count, or all zeros."""

    for strategy in strategies:
        result = strategy(text)
        if result is not None and result.total > 0:
            logger.debug("Report parsed by %s: %s", getattr(strategy, "__name__", strategy), result)
            return result
    return TestResult()


def apply_exit_code_fallback(result: TestResult, exit_code: Optional[int]) -> TestResult:
    if exit_code == 0 and result.is_empty:
        logger.warning(
            "Suite exited successfully but the report has no recognizable pass/fail entries; "
            "treating the run as a single pass"
        )
        return TestResult(passed=1, failed=0, skipped=0)
    return result


def parse_result(report_path: Union[str, Path], exit_code: Optional[int] = None) -> TestResult:
    path = Path(report_path)
    if not path.exists():
        logger.info("No suite report at %s", path)
        return TestResult()
    text = path.read_text(encoding="utf-8", errors="replace")
    return apply_exit_code_fallback(extract_counts(text), exit_code)


def summarize_failures(report_path: Union[str, Path], limit: int = 20) -> List[str]:
    """Names of failed specs from a structured report, for diagnostics."""

    path = Path(report_path)
    if not path.exists():
        return []
    try:
        data: Any = json.loads(path.read_text(encoding="utf-8", errors="replace"))
    except json.JSONDecodeError:
        return []
    names: List[str] = []
    for suite in data if isinstance(data, list) else [data]:
        if not isinstance(suite, dict):
            continue
        for spec in suite.get("SpecReports") or []:
            if not isinstance(spec, dict) or str(spec.get("State", "")).lower() not in ("failed", "panicked", "timedout", "aborted", "interrupted"):
                continue
            texts = list(spec.get("ContainerHierarchyTexts") or []) + [spec.get("LeafNodeText", "")]
            names.append(" ".join(t for t in texts if t))
            if len(names) >= limit:
                return names
    return names


__all__ = [
    "DEFAULT_STRATEGIES",
    "TestResult",
    "apply_exit_code_fallback",
    "extract_counts",
    "flag_strategy",
    "parse_result",
    "structured_strategy",
    "summarize_failures",
]
