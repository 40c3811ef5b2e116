from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, TextIO, Tuple

from src.common.errors import ConfigurationError, SuiteExecutionFailure, SuiteTimeoutError
from src.common.shell import Runner, run_command
from src.config.settings import RunConfig
from src.config.versions import split_image
from src.providers.base import ClusterHandle

from .filters import build_label_filter, build_skip_pattern
from .results import TestResult, parse_result, summarize_failures

logger = logging.getLogger(__name__)

SUITE_SUBDIR = Path("tests") / "e2e"
TIMEOUT_EXIT_CODE = 124
MISSING_BINARY_EXIT_CODE = 127


@dataclass(frozen=True)
class SuiteRun:
    run_id: str
    result: TestResult
    exit_code: int
    log_path: Path
    report_path: Path
    duration: float

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.result.failed == 0


def run_and_stream(
    cmd: List[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    log_path: Path,
    timeout: Optional[float] = None,
    out: Optional[TextIO] = None,
) -> Tuple[int, bool]:
    """Run ``cmd`` with stdout/stderr merged, echoing every line and appending it to ``log_path``.

    Returns ``(exit_code, timed_out)``; the process is killed once ``timeout`` elapses.
    """

    out = out or sys.stdout
    log_path.parent.mkdir(parents=True, exist_ok=True)
    timed_out = threading.Event()
    with log_path.open("a", encoding="utf-8") as log:
        rendered = f"$ {' '.join(cmd)}"
        log.write(rendered + "\n")
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                env=dict(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                errors="replace",
            )
        except OSError as exc:
            log.write(f"failed to start {cmd[0]}: {exc}\n")
            raise SuiteExecutionFailure(
                f"cannot start {cmd[0]}: {exc}",
                result=TestResult(),
                exit_code=MISSING_BINARY_EXIT_CODE,
            ) from exc

        def kill() -> None:
            timed_out.set()
            proc.kill()

        timer = threading.Timer(timeout, kill) if timeout else None
        if timer is not None:
            timer.daemon = True
            timer.start()
        try:
            assert proc.stdout is not None
            for raw_line in proc.stdout:
                log.write(raw_line)
                out.write(raw_line)
                out.flush()
            code = proc.wait()
        finally:
            if timer is not None:
                timer.cancel()
    if timed_out.is_set():
        return TIMEOUT_EXIT_CODE, True
    return code, False


class SuiteRunner:
    """Runs the upstream CloudNativePG e2e suite with ginkgo against one cluster."""

    def __init__(
        self,
        handle: ClusterHandle,
        config: RunConfig,
        *,
        operator_namespace: Optional[str] = None,
        runner: Runner = run_command,
        binary: str = "ginkgo",
        out: Optional[TextIO] = None,
    ) -> None:
        self.handle = handle
        self.config = config
        self.operator_namespace = operator_namespace or config.matrix.operator_namespace
        self._runner = runner
        self._binary = binary
        self._out = out

    def clone_dir(self) -> Path:
        name = f"cnpg-e2e-{self.config.operator.version}-{self.config.postgres_version}-{self.config.postgres_variant}"
        return Path(tempfile.gettempdir()) / name

    def locate_suite(self) -> Tuple[Path, bool]:
        """Return the suite checkout and whether this call created it."""

        if self.config.suite_path is not None:
            path = Path(self.config.suite_path)
            if not (path / SUITE_SUBDIR).is_dir():
                raise ConfigurationError(f"SUITE_PATH {path} has no {SUITE_SUBDIR} directory")
            return path, False
        target = self.clone_dir()
        if (target / SUITE_SUBDIR).is_dir():
            logger.info("Reusing suite checkout at %s", target)
            return target, False
        tag = self.config.operator.git_tag
        logger.info("Cloning %s at %s into %s", self.config.matrix.suite.repository, tag, target)
        self._runner(
            ["git", "clone", "--depth", "1", "--branch", tag, self.config.matrix.suite.repository, str(target)]
        ).check()
        return target, True

    def label_filter(self) -> str:
        return build_label_filter(self.config.policy.label_filter, self.config.policy.exclusions)

    def command(self, report_path: Path, junit_path: Optional[Path] = None) -> List[str]:
        suite = self.config.matrix.suite
        cmd = [self._binary, "run"]
        label_filter = self.label_filter()
        if label_filter:
            cmd.append(f"--label-filter={label_filter}")
        skip = build_skip_pattern(suite.skip_patterns)
        if skip:
            cmd.append(f"--skip={skip}")
        cmd += [
            f"--nodes={self.config.suite_workers}",
            f"--timeout={int(self.config.suite_timeout)}s",
            f"--poll-progress-after={suite.poll_progress_after}",
            f"--poll-progress-interval={suite.poll_progress_interval}",
            "--github-output",
            "--force-newlines",
            "--silence-skips",
            "-v",
            f"--json-report={report_path}",
        ]
        if junit_path is not None:
            cmd.append(f"--junit-report={junit_path}")
        cmd.append("./...")
        return cmd

    def environment(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        cfg = self.config
        storage = cfg.matrix.eks.storage if self.handle.backend == "eks" else cfg.matrix.kind.storage
        env = dict(os.environ if base is None else base)
        env.update(
            {
                "KUBECONFIG": str(self.handle.kubeconfig()),
                "POSTGRES_IMG": cfg.postgres_image,
                "CONTROLLER_IMG": cfg.operator.operator_image,
                "POSTGRES_IMG_REPOSITORY": split_image(cfg.postgres_image)[0],
                "TEST_UPGRADE_TO_V1": "false",
                "TEST_CLOUD_VENDOR": "aws" if self.handle.backend == "eks" else "local",
                "E2E_DEFAULT_STORAGE_CLASS": storage.default_class,
                "E2E_CSI_STORAGE_CLASS": storage.csi_class,
                "E2E_DEFAULT_VOLUMESNAPSHOT_CLASS": storage.snapshot_class,
                "FEATURE_TYPE": cfg.feature_type,
                "TEST_DEPTH": str(cfg.test_depth),
                "E2E_PRE_ROLLING_UPDATE": "false",
                "OPERATOR_NAMESPACE": self.operator_namespace,
            }
        )
        return env

    def default_run_id(self) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        return f"{self.handle.name}-{stamp}"

    def run(self, run_id: Optional[str] = None) -> SuiteRun:
        run_id = run_id or self.default_run_id()
        results_dir = Path(self.config.results_dir).resolve()
        results_dir.mkdir(parents=True, exist_ok=True)
        log_path = results_dir / f"{run_id}.log"
        report_path = results_dir / f"{run_id}.json"
        junit_path = results_dir / f"{run_id}.xml"

        checkout, cloned = self.locate_suite()
        try:
            cmd = self.command(report_path, junit_path)
            logger.info("Running e2e suite (label filter: %s)", self.label_filter() or "<none>")
            started = time.monotonic()
            exit_code, timed_out = run_and_stream(
                cmd,
                cwd=checkout / SUITE_SUBDIR,
                env=self.environment(),
                log_path=log_path,
                timeout=self.config.suite_timeout,
                out=self._out,
            )
            duration = time.monotonic() - started
        finally:
            if cloned and not self.config.keep_suite_clone:
                shutil.rmtree(checkout, ignore_errors=True)

        result = parse_result(report_path, exit_code)
        logger.info("Suite finished in %.0fs with exit code %d: %s", duration, exit_code, result)
        if timed_out:
            raise SuiteTimeoutError(
                f"e2e suite exceeded {self.config.suite_timeout:.0f}s",
                result=result,
                exit_code=exit_code,
            )
        return SuiteRun(run_id, result, exit_code, log_path, report_path, duration)


def require_success(run: SuiteRun, fetch_logs: Optional[Callable[[], str]] = None) -> TestResult:
    """Raise ``SuiteExecutionFailure`` unless the run has no failures and at least one pass."""

    result = run.result
    if result.failed > 0 or result.passed == 0 or run.exit_code != 0:
        message = f"e2e suite failed (exit code {run.exit_code}): {result}"
        failed = summarize_failures(run.report_path)
        if failed:
            message = f"{message}; failed specs: {', '.join(failed)}"
        raise SuiteExecutionFailure(
            message,
            result=result,
            exit_code=run.exit_code,
            logs=fetch_logs() if fetch_logs is not None else None,
        )
    return result


__all__ = ["SuiteRun", "SuiteRunner", "require_success", "run_and_stream"]
