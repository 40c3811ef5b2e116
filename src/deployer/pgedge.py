from __future__ import annotations

import logging
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from src.common.errors import CommandError, ConfigurationError, DeletionError, ValidationFailure
from src.common.polling import FatalProbeError, NotReady, poll_until
from src.common.shell import Runner, run_command
from src.config.settings import RunConfig
from src.providers.base import ClusterHandle

from .helm import Helm

logger = logging.getLogger(__name__)

CLUSTERS_RESOURCE = "clusters.postgresql.cnpg.io"
HEALTHY_PHASE = "Cluster in healthy state"
CLUSTER_TIMEOUT = 1200
JOB_TIMEOUT = 600
POLL_INTERVAL = 10
CHART_MARKER = "Chart.yaml"


def locate_chart(config: RunConfig, *, runner: Runner = run_command) -> Path:
    """Return a pgedge-helm checkout, cloning it into the temp dir when none is configured."""

    if config.pgedge_helm_path is not None:
        path = Path(config.pgedge_helm_path)
        if not (path / CHART_MARKER).is_file():
            raise ConfigurationError(f"PGEDGE_HELM_PATH {path} has no {CHART_MARKER}")
        return path
    defaults = config.matrix.pgedge_helm
    target = Path(tempfile.gettempdir()) / "pgedge-helm"
    if (target / CHART_MARKER).is_file():
        logger.info("Reusing pgedge-helm checkout at %s", target)
        return target
    branch = config.pgedge_helm_branch or defaults.branch
    logger.info("Cloning %s (branch %s) into %s", defaults.repository, branch, target)
    runner(["git", "clone", "--depth", "1", "--branch", branch, defaults.repository, str(target)]).check()
    return target


def healthy_clusters(items: List[Dict[str, Any]]) -> List[str]:
    return [
        item.get("metadata", {}).get("name", "?")
        for item in items
        if (item.get("status") or {}).get("phase") == HEALTHY_PHASE
    ]


class PgedgeChartDeployer:
    """Installs the pgEdge distributed Postgres chart and checks its Spock bootstrap."""

    def __init__(
        self,
        handle: ClusterHandle,
        config: RunConfig,
        chart: Path,
        *,
        init_spock_image: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.handle = handle
        self.config = config
        self.chart = Path(chart)
        self.defaults = config.matrix.pgedge_helm
        self.init_spock_image = init_spock_image
        self._sleep = sleep

    @property
    def helm(self) -> Helm:
        return Helm(self.handle.kubeconfig(), runner=self.handle.runner)

    @property
    def release(self) -> str:
        return self.defaults.release

    @property
    def namespace(self) -> str:
        return self.defaults.namespace

    def install(self) -> None:
        values: Dict[str, str] = {}
        if self.init_spock_image:
            values["pgEdge.initSpockImageName"] = self.init_spock_image
        logger.info("Installing pgEdge chart from %s as %s", self.chart, self.release)
        self.helm.upgrade_install(
            self.release,
            str(self.chart),
            namespace=self.namespace,
            values=values,
            values_files=[str(self.chart / self.defaults.values_file)],
            timeout=self.defaults.install_timeout,
            wait=False,
        )

    def wait_for_clusters(self, timeout: float = CLUSTER_TIMEOUT, interval: float = POLL_INTERVAL) -> List[str]:
        kubectl = self.handle.kubectl(self.namespace)
        expected = self.defaults.expected_clusters

        def all_healthy() -> List[str]:
            items = kubectl.list_items(CLUSTERS_RESOURCE)
            if not items:
                raise NotReady("no CNPG clusters found")
            healthy = healthy_clusters(items)
            if len(healthy) < expected:
                raise NotReady(f"only {len(healthy)}/{expected} clusters healthy")
            return healthy

        healthy = poll_until(
            all_healthy,
            description=f"{expected} pgEdge clusters healthy",
            timeout=timeout,
            interval=interval,
            sleep=self._sleep,
        )
        logger.info("pgEdge clusters healthy: %s", ", ".join(healthy))
        return healthy

    def job_logs(self, job: str) -> str:
        result = self.handle.kubectl(self.namespace).run(["logs", f"job/{job}", "--all-containers=true"], check=False)
        return result.stdout if result.ok else result.stderr

    def wait_for_init_job(self, timeout: float = JOB_TIMEOUT, interval: float = POLL_INTERVAL) -> None:
        kubectl = self.handle.kubectl(self.namespace)
        job = self.defaults.init_job

        def completed() -> None:
            status = kubectl.get_json("job", job).get("status") or {}
            if int(status.get("succeeded", 0) or 0) >= 1:
                return
            if int(status.get("failed", 0) or 0) > 0:
                raise FatalProbeError(f"job {job} failed")
            raise NotReady(f"job {job} has not succeeded yet")

        try:
            poll_until(completed, description=f"job {job} complete", timeout=timeout, interval=interval, sleep=self._sleep)
        except FatalProbeError as exc:
            raise ValidationFailure(f"{exc}; logs:\n{self.job_logs(job)}") from exc
        logger.info("Job %s completed", job)

    def run_tests(self) -> str:
        try:
            result = self.helm.test(self.release, namespace=self.namespace, timeout=self.defaults.test_timeout)
        except CommandError as exc:
            raise ValidationFailure(f"helm test failed for release {self.release}: {exc}") from exc
        logger.info("helm test passed for release %s", self.release)
        return result.stdout

    def uninstall(self) -> None:
        helm = self.helm
        if not helm.release_exists(self.release, namespace=self.namespace):
            logger.info("pgEdge release %s is not installed", self.release)
            return
        try:
            helm.uninstall(self.release, namespace=self.namespace)
        except CommandError as exc:
            raise DeletionError(f"failed to uninstall release {self.release}: {exc}") from exc
        logger.info("pgEdge release %s uninstalled", self.release)


__all__ = ["PgedgeChartDeployer", "healthy_clusters", "locate_chart"]
