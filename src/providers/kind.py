from __future__ import annotations

import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, List

import yaml

from src.common.errors import (
    ClusterConnectionError,
    CommandError,
    DeletionError,
    HarnessError,
    ProvisioningError,
    ReadinessTimeoutError,
)
from src.common.kubectl import Kubectl
from src.common.polling import NotReady, poll_until, retry_call
from src.common.shell import CommandResult, Runner, run_command

from .base import ClusterHandle, ClusterSpec, ProviderState, StateTracker, kubeconfig_path_for, register_provider
from .baseline import (
    has_storage_classes,
    install_image_policy,
    snapshot_class_manifest,
    storage_class_manifest,
    wait_for_nodes,
    wait_for_pods,
)

logger = logging.getLogger(__name__)

CREATE_ATTEMPTS = 3
CREATE_BACKOFF = 10
READY_TIMEOUT = 300
READY_INTERVAL = 5
CSI_POD_TIMEOUT = 300
CSI_POD_INTERVAL = 5
CSI_DRIVER = "hostpath.csi.k8s.io"
CSI_POD_SELECTOR = "app.kubernetes.io/name=csi-hostpathplugin"


def node_image(base: str, kubernetes_version: str) -> str:
    version = kubernetes_version.strip().lstrip("v")
    if version.count(".") == 1:
        version = f"{version}.0"
    return f"{base}:v{version}"


class KindProvider:
    """Multi-node kind cluster on the local Docker host."""

    def __init__(
        self,
        spec: ClusterSpec,
        config,
        *,
        runner: Runner = run_command,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.spec = spec
        self.config = config
        self.kubeconfig_path = kubeconfig_path_for(spec.name)
        self._runner = runner
        self._sleep = sleep
        self._tracker = StateTracker(spec.name)

    @property
    def state(self) -> ProviderState:
        return self._tracker.state

    def _kind(self, args: List[str], *, check: bool = True) -> CommandResult:
        result = self._runner(["kind"] + args)
        if check:
            result.check()
        return result

    def _kubectl(self) -> Kubectl:
        return Kubectl(self.kubeconfig_path, runner=self._runner)

    def cluster_config(self) -> Dict[str, Any]:
        defaults = self.config.matrix.kind
        image = node_image(defaults.image, self.spec.kubernetes_version)
        nodes = [{"role": "control-plane", "image": image}]
        nodes += [{"role": "worker", "image": image} for _ in range(self.spec.node_count - 1)]
        return {
            "kind": "Cluster",
            "apiVersion": "kind.x-k8s.io/v1alpha4",
            "networking": {
                "serviceSubnet": defaults.service_subnet,
                "podSubnet": defaults.pod_subnet,
            },
            "nodes": nodes,
        }

    def list_clusters(self) -> List[str]:
        result = self._kind(["get", "clusters"])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def exists(self) -> bool:
        try:
            return self.spec.name in self.list_clusters()
        except CommandError as exc:
            logger.warning("Unable to list kind clusters: %s", exc)
            return False

    def create(self) -> None:
        try:
            if self.state in (ProviderState.READY, ProviderState.DEGRADED) or self.exists():
                logger.info("Kind cluster %s already exists; deleting it first", self.spec.name)
                self.delete()
            self._tracker.transition(ProviderState.CREATING)
            retry_call(
                self._create_once,
                attempts=CREATE_ATTEMPTS,
                backoff=CREATE_BACKOFF,
                description=f"create kind cluster {self.spec.name}",
                on_failure=lambda exc: self._cleanup_partial(),
                sleep=self._sleep,
            )
        except (HarnessError, OSError) as exc:
            if self.state in (ProviderState.CREATING, ProviderState.DELETING):
                self._tracker.transition(ProviderState.ABSENT)
            raise ProvisioningError(
                f"failed to create kind cluster {self.spec.name} after {CREATE_ATTEMPTS} attempts: {exc}"
            ) from exc
        self._tracker.transition(ProviderState.READY)
        logger.info("Kind cluster %s is ready (kubeconfig %s)", self.spec.name, self.kubeconfig_path)

    def _create_once(self) -> None:
        logger.info(
            "Creating kind cluster %s (kubernetes %s, %d nodes)",
            self.spec.name,
            self.spec.kubernetes_version,
            self.spec.node_count,
        )
        fd, config_path = tempfile.mkstemp(prefix=f"{self.spec.name}-", suffix=".kind.yaml")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(self.cluster_config(), handle, sort_keys=False)
            self._kind(
                [
                    "create",
                    "cluster",
                    "--name",
                    self.spec.name,
                    "--config",
                    config_path,
                    "--kubeconfig",
                    str(self.kubeconfig_path),
                ]
            )
        finally:
            Path(config_path).unlink(missing_ok=True)
        self._wait_ready()

    def _wait_ready(self) -> None:
        kubectl = self._kubectl()
        wait_for_nodes(
            kubectl,
            self.spec.node_count,
            timeout=READY_TIMEOUT,
            interval=READY_INTERVAL,
            sleep=self._sleep,
        )

        def system_pods() -> None:
            if not kubectl.list_items("pods", namespace="kube-system"):
                raise NotReady("no kube-system pods listed yet")

        try:
            poll_until(
                system_pods,
                description="kube-system pods listed",
                timeout=READY_TIMEOUT,
                interval=READY_INTERVAL,
                sleep=self._sleep,
            )
        except ReadinessTimeoutError as exc:
            logger.warning("Continuing without a kube-system pod listing: %s", exc)

    def _cleanup_partial(self) -> None:
        try:
            self._delete_cluster()
        except CommandError as exc:
            logger.warning("Cleanup of partial cluster %s failed: %s", self.spec.name, exc)

    def _delete_cluster(self) -> None:
        self._kind(["delete", "cluster", "--name", self.spec.name])
        self.kubeconfig_path.unlink(missing_ok=True)

    def connect(self) -> None:
        if not self.exists():
            raise ClusterConnectionError(f"kind cluster {self.spec.name} does not exist")
        try:
            self._kind(
                ["export", "kubeconfig", "--name", self.spec.name, "--kubeconfig", str(self.kubeconfig_path)]
            )
        except CommandError as exc:
            raise ClusterConnectionError(f"failed to export kubeconfig for {self.spec.name}: {exc}") from exc
        if not self.is_ready():
            raise ClusterConnectionError(f"kind cluster {self.spec.name} exists but is not ready")
        self._tracker.transition(ProviderState.READY)
        logger.info("Connected to existing kind cluster %s", self.spec.name)

    def delete(self) -> None:
        self._tracker.transition(ProviderState.DELETING)
        try:
            # an unlistable cluster is not an absent one
            if self.spec.name in self.list_clusters():
                logger.info("Deleting kind cluster %s", self.spec.name)
                self._kind(["delete", "cluster", "--name", self.spec.name])
            else:
                logger.info("Kind cluster %s is already absent", self.spec.name)
        except CommandError as exc:
            raise DeletionError(f"failed to delete kind cluster {self.spec.name}: {exc}") from exc
        self.kubeconfig_path.unlink(missing_ok=True)
        self._tracker.transition(ProviderState.ABSENT)

    def is_ready(self) -> bool:
        if not self.kubeconfig_path.exists():
            return False
        return self._kubectl().run(["get", "nodes"], check=False).ok

    def mark_degraded(self) -> None:
        self._tracker.transition(ProviderState.DEGRADED)

    def install_csi_driver(self) -> None:
        kubectl = self._kubectl()
        storage = self.config.matrix.kind.storage
        manifests = self.config.matrix.csi_manifests(self.spec.kubernetes_version)
        logger.info("Installing CSI hostpath driver (%d manifests)", len(manifests))
        for manifest in manifests:
            logger.info("Applying %s (%s)", manifest.name, manifest.stage)
            kubectl.run(["apply", "-f", manifest.url])
        kubectl.apply_manifest(storage_class_manifest(storage.csi_class, CSI_DRIVER), namespace="")
        kubectl.apply_manifest(
            snapshot_class_manifest(storage.snapshot_class, CSI_DRIVER, parameters={"ignoreFailedRead": "true"}),
            namespace="",
        )
        wait_for_pods(
            kubectl,
            CSI_POD_SELECTOR,
            "default",
            timeout=CSI_POD_TIMEOUT,
            interval=CSI_POD_INTERVAL,
            description="CSI hostpath driver pods created",
            require_running=False,
            sleep=self._sleep,
        )
        logger.info("CSI hostpath driver installed")

    def install_image_validation_policy(self) -> None:
        install_image_policy(self._kubectl(), self.config.matrix.image_policy.manifest, sleep=self._sleep)

    def has_baseline(self) -> bool:
        storage = self.config.matrix.kind.storage
        return has_storage_classes(self._kubectl(), storage.csi_class, storage.snapshot_class)

    def connection_handle(self) -> ClusterHandle:
        return ClusterHandle(self.spec.name, self.kubeconfig_path, self, self._runner)


register_provider("kind", KindProvider)

__all__ = ["KindProvider", "node_image"]
