from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, TextIO

import yaml

from src.common.errors import SuiteExecutionFailure, ValidationFailure
from src.common.kubectl import Kubectl, node_is_ready
from src.common.shell import Runner, run_command
from src.config.settings import RunConfig
from src.config.versions import split_image
from src.deployer.cert_manager import install_cert_manager
from src.deployer.operator import OperatorDeployer
from src.deployer.pgedge import PgedgeChartDeployer, locate_chart
from src.lifecycle.orchestrator import ClusterLease, cluster_name, cluster_spec_for, provision
from src.providers.base import create_provider
from src.suite.results import TestResult
from src.suite.runner import SuiteRunner, require_success

logger = logging.getLogger(__name__)

Sleep = Callable[[float], None]

OPERATOR_CRDS = (
    "backups.postgresql.cnpg.io",
    "clusterimagecatalogs.postgresql.cnpg.io",
    "clusters.postgresql.cnpg.io",
    "databases.postgresql.cnpg.io",
    "imagecatalogs.postgresql.cnpg.io",
    "poolers.postgresql.cnpg.io",
    "publications.postgresql.cnpg.io",
    "scheduledbackups.postgresql.cnpg.io",
    "subscriptions.postgresql.cnpg.io",
)
VALIDATION_NAMESPACE = "image-validation"


def deploy_operator(
    lease: ClusterLease,
    config: RunConfig,
    *,
    sleep: Sleep = time.sleep,
    with_cert_manager: bool = False,
) -> OperatorDeployer:
    handle = lease.handle
    if with_cert_manager:
        install_cert_manager(handle, config.matrix.cert_manager_url, sleep=sleep)
    deployer = OperatorDeployer(handle, config, sleep=sleep)
    lease.defer(deployer.uninstall, description=f"uninstall {deployer.release}")
    deployer.install()
    return deployer


def check_infrastructure(kubectl: Kubectl, config: RunConfig, backend: str) -> Dict[str, Any]:
    nodes = kubectl.list_items("nodes", namespace="")
    if len(nodes) != config.node_count:
        raise ValidationFailure(f"expected {config.node_count} nodes, found {len(nodes)}")
    not_ready = [n.get("metadata", {}).get("name", "?") for n in nodes if not node_is_ready(n)]
    if not_ready:
        raise ValidationFailure(f"nodes not ready: {', '.join(not_ready)}")
    storage = config.matrix.eks.storage if backend == "eks" else config.matrix.kind.storage
    if not kubectl.exists("storageclass", storage.csi_class, namespace=""):
        raise ValidationFailure(f"storage class {storage.csi_class} not found")
    if not kubectl.exists("volumesnapshotclass", storage.snapshot_class, namespace=""):
        raise ValidationFailure(f"volume snapshot class {storage.snapshot_class} not found")
    return {"nodes": len(nodes), "storage_class": storage.csi_class, "snapshot_class": storage.snapshot_class}


def infra_unit(
    config: RunConfig,
    *,
    name: Optional[str] = None,
    runner: Runner = run_command,
    sleep: Sleep = time.sleep,
) -> Dict[str, Any]:
    name = name or cluster_name("infra", config)
    with provision(config, name, runner=runner, sleep=sleep) as lease:
        summary = check_infrastructure(lease.handle.kubectl(), config, lease.handle.backend)
    logger.info("Infrastructure checks passed on %s: %s", name, summary)
    return summary


def operator_unit(
    config: RunConfig,
    *,
    name: Optional[str] = None,
    runner: Runner = run_command,
    sleep: Sleep = time.sleep,
    with_cert_manager: bool = False,
) -> List[str]:
    name = name or cluster_name("operator", config)
    with provision(config, name, runner=runner, sleep=sleep) as lease:
        deployer = deploy_operator(lease, config, sleep=sleep, with_cert_manager=with_cert_manager)
        kubectl = lease.handle.kubectl()
        if not kubectl.exists("deployment", deployer.release, namespace=deployer.namespace):
            raise ValidationFailure(f"operator deployment {deployer.release} not found")
        missing = [crd for crd in OPERATOR_CRDS if not kubectl.exists("crd", crd, namespace="")]
        if missing:
            raise ValidationFailure(f"operator CRDs missing: {', '.join(missing)}")
    logger.info("Operator checks passed on %s", name)
    return list(OPERATOR_CRDS)


def database_cluster_manifest(name: str, namespace: str, image: Optional[str]) -> str:
    spec: Dict[str, Any] = {"instances": 1, "storage": {"size": "1Gi"}}
    if image:
        spec["imageName"] = image
    doc = {
        "apiVersion": "postgresql.cnpg.io/v1",
        "kind": "Cluster",
        "metadata": {"name": name, "namespace": namespace},
        "spec": spec,
    }
    return yaml.safe_dump(doc, sort_keys=False)


def image_cases(config: RunConfig) -> Dict[str, List[Optional[str]]]:
    _, tag = split_image(config.postgres_image)
    allowed: List[Optional[str]] = [f"{reg.base}:{tag}" for reg in config.matrix.registries.values()]
    allowed.append(None)
    blocked: List[Optional[str]] = [
        f"ghcr.io/cloudnative-pg/postgresql:{config.postgres_version}",
        f"postgres:{config.postgres_version}",
    ]
    return {"allowed": allowed, "blocked": blocked}


def check_image_policy(kubectl: Kubectl, config: RunConfig) -> Dict[str, int]:
    prefixes = config.matrix.image_policy.allowed_prefixes
    cases = image_cases(config)
    kubectl.create_namespace(VALIDATION_NAMESPACE)
    for index, image in enumerate(cases["allowed"]):
        name = f"allowed-{index}"
        result = kubectl.apply_manifest(database_cluster_manifest(name, VALIDATION_NAMESPACE, image), check=False)
        if not result.ok:
            raise ValidationFailure(f"image {image or '<default>'} was rejected: {result.stderr.strip()}")
        kubectl.delete("cluster", name, namespace=VALIDATION_NAMESPACE, wait=False)
    for index, image in enumerate(cases["blocked"]):
        name = f"blocked-{index}"
        result = kubectl.apply_manifest(database_cluster_manifest(name, VALIDATION_NAMESPACE, image), check=False)
        if result.ok:
            kubectl.delete("cluster", name, namespace=VALIDATION_NAMESPACE, wait=False)
            raise ValidationFailure(f"image {image} was admitted but should be blocked")
        message = result.stderr + result.stdout
        if not any(prefix in message for prefix in prefixes):
            raise ValidationFailure(f"rejection of {image} does not name an allowed prefix: {message.strip()}")
    kubectl.delete("namespace", VALIDATION_NAMESPACE, wait=False)
    return {"allowed": len(cases["allowed"]), "blocked": len(cases["blocked"])}


def image_validation_unit(
    config: RunConfig,
    *,
    name: Optional[str] = None,
    runner: Runner = run_command,
    sleep: Sleep = time.sleep,
) -> Dict[str, int]:
    name = name or cluster_name("image-validation", config)
    with provision(config, name, runner=runner, sleep=sleep) as lease:
        deploy_operator(lease, config, sleep=sleep)
        summary = check_image_policy(lease.handle.kubectl(), config)
    logger.info("Image validation checks passed on %s: %s", name, summary)
    return summary


def upstream_unit(
    config: RunConfig,
    *,
    name: Optional[str] = None,
    runner: Runner = run_command,
    sleep: Sleep = time.sleep,
    out: Optional[TextIO] = None,
) -> TestResult:
    name = name or cluster_name("upstream", config)
    with provision(config, name, runner=runner, sleep=sleep) as lease:
        deployer = deploy_operator(lease, config, sleep=sleep)
        suite = SuiteRunner(lease.handle, config, operator_namespace=deployer.namespace, runner=runner, out=out)
        try:
            run = suite.run()
        except SuiteExecutionFailure as exc:
            exc.logs = exc.logs or deployer.operator_logs()
            raise
        result = require_success(run, fetch_logs=deployer.operator_logs)
    logger.info("Upstream suite passed on %s: %s", name, result)
    return result


def pgedge_helm_unit(
    config: RunConfig,
    *,
    name: Optional[str] = None,
    runner: Runner = run_command,
    sleep: Sleep = time.sleep,
) -> List[str]:
    # always the standard variant
    config = config.with_postgres(config.postgres_version, "standard")
    name = name or cluster_name("pgedge-helm", config)
    chart = locate_chart(config, runner=runner)
    with provision(config, name, runner=runner, sleep=sleep) as lease:
        deploy_operator(lease, config, sleep=sleep, with_cert_manager=True)
        chart_deployer = PgedgeChartDeployer(lease.handle, config, chart, sleep=sleep)
        lease.defer(chart_deployer.uninstall, description=f"uninstall {chart_deployer.release}")
        chart_deployer.install()
        healthy = chart_deployer.wait_for_clusters()
        chart_deployer.wait_for_init_job()
        chart_deployer.run_tests()
    logger.info("pgEdge chart checks passed on %s", name)
    return healthy


def teardown(config: RunConfig, name: str, *, runner: Runner = run_command, sleep: Sleep = time.sleep) -> None:
    provider = create_provider(cluster_spec_for(config, name), config, runner=runner, sleep=sleep)
    provider.delete()
    logger.info("Cluster %s removed", name)


__all__ = [
    "OPERATOR_CRDS",
    "check_image_policy",
    "check_infrastructure",
    "database_cluster_manifest",
    "deploy_operator",
    "image_cases",
    "image_validation_unit",
    "infra_unit",
    "operator_unit",
    "pgedge_helm_unit",
    "teardown",
    "upstream_unit",
]
