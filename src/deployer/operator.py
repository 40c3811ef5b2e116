from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from src.common.errors import CommandError, DeletionError, HarnessError, ValidationFailure
from src.common.polling import NotReady, poll_until
from src.config.settings import RunConfig
from src.providers.base import ClusterHandle

from .helm import Helm

logger = logging.getLogger(__name__)

READY_TIMEOUT = 300
READY_INTERVAL = 5
OPERATOR_SELECTOR = "app.kubernetes.io/name=cloudnative-pg"
IMAGE_ENV = "POSTGRES_IMAGE_NAME"


class OperatorDeployer:
    """Installs the CloudNativePG operator chart and waits for it to become available."""

    def __init__(
        self,
        handle: ClusterHandle,
        config: RunConfig,
        *,
        release: Optional[str] = None,
        namespace: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.handle = handle
        self.config = config
        self.release = release or config.matrix.operator_release
        self.namespace = namespace or config.matrix.operator_namespace
        self._sleep = sleep

    @property
    def helm(self) -> Helm:
        return Helm(self.handle.kubeconfig(), runner=self.handle.runner)

    @property
    def operator_image(self) -> str:
        return self.config.operator.operator_image

    @property
    def postgres_image(self) -> str:
        return self.config.postgres_image

    def helm_values(self) -> Dict[str, str]:
        repository, tag = self.config.operator.operator_image_parts()
        return {
            "image.repository": repository,
            "image.tag": tag,
            f"config.data.{IMAGE_ENV}": self.postgres_image,
        }

    def install(self) -> None:
        kubectl = self.handle.kubectl()
        logger.info(
            "Installing operator %s (%s) into %s with postgres image %s",
            self.config.operator.version,
            self.operator_image,
            self.namespace,
            self.postgres_image,
        )
        kubectl.create_namespace(self.namespace)
        self.helm.upgrade_install(
            self.release,
            self.config.chart_path(),
            namespace=self.namespace,
            values=self.helm_values(),
            version=self.config.operator.chart_version if self.config.operator.chart else None,
        )
        self.wait_ready()
        self.verify_postgres_image()
        logger.info("Operator %s is ready", self.release)

    def wait_ready(self, timeout: float = READY_TIMEOUT, interval: float = READY_INTERVAL) -> Dict[str, Any]:
        kubectl = self.handle.kubectl(self.namespace)

        def replicas_ready() -> Dict[str, Any]:
            deployment = kubectl.get_json("deployment", self.release)
            desired = int(deployment.get("spec", {}).get("replicas", 1) or 0)
            ready = int(deployment.get("status", {}).get("readyReplicas", 0) or 0)
            if ready == 0:
                raise NotReady("no ready replicas")
            if ready != desired:
                raise NotReady(f"not all replicas ready: {ready}/{desired}")
            return deployment

        return poll_until(
            replicas_ready,
            description=f"operator deployment {self.release}",
            timeout=timeout,
            interval=interval,
            sleep=self._sleep,
        )

    def configured_postgres_image(self) -> Optional[str]:
        kubectl = self.handle.kubectl(self.namespace)
        deployment = kubectl.get_json("deployment", self.release)
        for container in deployment.get("spec", {}).get("template", {}).get("spec", {}).get("containers") or []:
            for item in container.get("env") or []:
                if item.get("name") == IMAGE_ENV:
                    return item.get("value")
        for configmap in kubectl.list_items("configmap"):
            value = (configmap.get("data") or {}).get(IMAGE_ENV)
            if value:
                return value
        return None

    def verify_postgres_image(self) -> None:
        configured = self.configured_postgres_image()
        if configured != self.postgres_image:
            raise ValidationFailure(
                f"operator {IMAGE_ENV} is {configured!r}, expected {self.postgres_image!r}"
            )

    def operator_logs(self, tail: int = 500) -> str:
        try:
            return self.handle.kubectl(self.namespace).logs(OPERATOR_SELECTOR, tail=tail)
        except HarnessError as exc:
            logger.warning("Unable to fetch operator logs: %s", exc)
            return ""

    def uninstall(self) -> None:
        helm = self.helm
        if helm.release_exists(self.release, namespace=self.namespace):
            try:
                helm.uninstall(self.release, namespace=self.namespace)
            except CommandError as exc:
                raise DeletionError(f"failed to uninstall release {self.release}: {exc}") from exc
        else:
            logger.info("Release %s is not installed", self.release)
        result = self.handle.kubectl().delete("namespace", self.namespace, wait=False)
        if not result.ok:
            logger.warning("Failed to delete namespace %s: %s", self.namespace, result.stderr.strip())
        logger.info("Operator release %s uninstalled", self.release)


__all__ = ["OperatorDeployer"]
