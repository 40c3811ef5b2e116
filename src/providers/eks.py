from __future__ import annotations

import logging
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from src.common.errors import (
    ClusterConnectionError,
    CommandError,
    DeletionError,
    HarnessError,
    ProvisioningError,
)
from src.common.kubectl import Kubectl
from src.common.polling import retry_call
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
from .terraform import Terraform

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 40
CREATE_ATTEMPTS = 3
CREATE_BACKOFF = 10
READY_TIMEOUT = 600
READY_INTERVAL = 10
CSI_POD_TIMEOUT = 300
CSI_POD_INTERVAL = 10
EBS_DRIVER = "ebs.csi.aws.com"
EBS_POD_SELECTOR = "app.kubernetes.io/name=aws-ebs-csi-driver"
TAGS = {"Environment": "e2e-test", "ManagedBy": "cnpg-e2e-harness"}


def eks_cluster_name(name: str) -> str:
    return name[:MAX_NAME_LENGTH].rstrip("-")


class EksProvider:
    """Managed EKS cluster provisioned through a Terraform module."""

    def __init__(
        self,
        spec: ClusterSpec,
        config,
        *,
        runner: Runner = run_command,
        sleep: Callable[[float], None] = time.sleep,
        terraform: Optional[Terraform] = None,
    ) -> None:
        self.spec = spec
        self.config = config
        self.cluster_name = eks_cluster_name(spec.name)
        self.region = spec.region or config.cloud_region
        self.kubeconfig_path = kubeconfig_path_for(self.cluster_name)
        self._runner = runner
        self._sleep = sleep
        self._tracker = StateTracker(self.cluster_name)
        self.terraform = terraform or Terraform(
            Path(config.terraform_dir),
            workspace=self.cluster_name,
            data_dir=Path(tempfile.gettempdir()) / f"tf-{self.cluster_name}",
            runner=runner,
        )

    @property
    def state(self) -> ProviderState:
        return self._tracker.state

    def variables(self) -> Dict[str, Any]:
        return {
            "cluster_name": self.cluster_name,
            "kubernetes_version": self.spec.kubernetes_version,
            "region": self.region,
            "node_count": self.spec.node_count,
            "use_spot_instances": self.config.eks_use_spot,
            "node_instance_type": self.config.eks_node_type,
            "tags": dict(TAGS),
        }

    def _aws(self, args) -> CommandResult:
        return self._runner(["aws"] + list(args))

    def _kubectl(self) -> Kubectl:
        return Kubectl(self.kubeconfig_path, runner=self._runner)

    def _update_kubeconfig(self, region: str, name: str) -> None:
        self._aws(
            ["eks", "update-kubeconfig", "--region", region, "--name", name, "--kubeconfig", str(self.kubeconfig_path)]
        ).check()

    def exists(self) -> bool:
        if not self.terraform.has_state():
            return False
        described = self._aws(["eks", "describe-cluster", "--region", self.region, "--name", self.cluster_name])
        if not described.ok:
            logger.info("Terraform state exists but EKS reports no cluster %s", self.cluster_name)
        return described.ok

    def create(self) -> None:
        try:
            if self.state in (ProviderState.READY, ProviderState.DEGRADED) or self.exists():
                logger.info("EKS cluster %s already exists; destroying it first", self.cluster_name)
                self.delete()
            self._tracker.transition(ProviderState.CREATING)
            retry_call(
                self._create_once,
                attempts=CREATE_ATTEMPTS,
                backoff=CREATE_BACKOFF,
                description=f"create EKS cluster {self.cluster_name}",
                on_failure=lambda exc: self._cleanup_partial(),
                sleep=self._sleep,
            )
        except (HarnessError, OSError) as exc:
            if self.state in (ProviderState.CREATING, ProviderState.DELETING):
                self._tracker.transition(ProviderState.ABSENT)
            raise ProvisioningError(f"failed to create EKS cluster {self.cluster_name}: {exc}") from exc
        self._tracker.transition(ProviderState.READY)
        logger.info("EKS cluster %s is ready (kubeconfig %s)", self.cluster_name, self.kubeconfig_path)

    def _create_once(self) -> None:
        logger.info(
            "Provisioning EKS cluster %s in %s (kubernetes %s, %d nodes)",
            self.cluster_name,
            self.region,
            self.spec.kubernetes_version,
            self.spec.node_count,
        )
        self.terraform.init()
        self.terraform.apply(self.variables())
        outputs = self.terraform.outputs()
        self._update_kubeconfig(
            str(outputs.get("region") or self.region),
            str(outputs.get("cluster_name") or self.cluster_name),
        )
        wait_for_nodes(
            self._kubectl(),
            self.spec.node_count,
            timeout=READY_TIMEOUT,
            interval=READY_INTERVAL,
            sleep=self._sleep,
        )

    def _destroy(self) -> None:
        self.terraform.init()
        self.terraform.destroy(self.variables())
        self.kubeconfig_path.unlink(missing_ok=True)

    def _cleanup_partial(self) -> None:
        try:
            self._destroy()
        except CommandError as exc:
            logger.warning("Cleanup of partial EKS cluster %s failed: %s", self.cluster_name, exc)

    def connect(self) -> None:
        if not self.exists():
            raise ClusterConnectionError(f"EKS cluster {self.cluster_name} does not exist")
        try:
            self.terraform.init()
            self._update_kubeconfig(self.region, self.cluster_name)
        except CommandError as exc:
            raise ClusterConnectionError(f"failed to attach to EKS cluster {self.cluster_name}: {exc}") from exc
        if not self.is_ready():
            raise ClusterConnectionError(f"EKS cluster {self.cluster_name} exists but is not ready")
        self._tracker.transition(ProviderState.READY)
        logger.info("Connected to existing EKS cluster %s", self.cluster_name)

    def delete(self) -> None:
        self._tracker.transition(ProviderState.DELETING)
        try:
            if self.terraform.has_state():
                logger.info("Destroying EKS cluster %s", self.cluster_name)
                self._destroy()
            else:
                logger.info("No Terraform state for %s; nothing to destroy", self.cluster_name)
        except CommandError as exc:
            raise DeletionError(f"failed to destroy EKS cluster {self.cluster_name}: {exc}") from exc
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
        storage = self.config.matrix.eks.storage
        logger.info("Waiting for the EBS CSI driver installed by Terraform")
        wait_for_pods(
            kubectl,
            EBS_POD_SELECTOR,
            "kube-system",
            timeout=CSI_POD_TIMEOUT,
            interval=CSI_POD_INTERVAL,
            description="EBS CSI driver pods running",
            sleep=self._sleep,
        )
        for url in self.config.matrix.eks.snapshot_manifests:
            kubectl.apply_url(url)
        kubectl.apply_manifest(
            storage_class_manifest(
                storage.csi_class,
                EBS_DRIVER,
                binding_mode="WaitForFirstConsumer",
                parameters={"type": "gp3", "encrypted": "true"},
                default=True,
            ),
            namespace="",
        )
        kubectl.apply_manifest(snapshot_class_manifest(storage.snapshot_class, EBS_DRIVER), namespace="")
        logger.info("EBS storage and snapshot classes installed")

    def install_image_validation_policy(self) -> None:
        install_image_policy(self._kubectl(), self.config.matrix.image_policy.manifest, sleep=self._sleep)

    def has_baseline(self) -> bool:
        storage = self.config.matrix.eks.storage
        return has_storage_classes(self._kubectl(), storage.csi_class, storage.snapshot_class)

    def connection_handle(self) -> ClusterHandle:
        return ClusterHandle(self.cluster_name, self.kubeconfig_path, self, self._runner)


register_provider("eks", EksProvider)

__all__ = ["EksProvider", "eks_cluster_name"]
