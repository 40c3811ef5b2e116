"""Upstream e2e suite execution and report parsing."""

from .filters import build_label_filter
from .results import TestResult, parse_result
from .runner import SuiteRun, SuiteRunner

__all__ = ["SuiteRun", "SuiteRunner", "TestResult", "build_label_filter", "parse_result"]
