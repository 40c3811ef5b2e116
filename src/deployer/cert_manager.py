from __future__ import annotations

import logging
import time
from typing import Callable

from src.common.polling import NotReady, poll_until
from src.providers.base import ClusterHandle

logger = logging.getLogger(__name__)

NAMESPACE = "cert-manager"
DEPLOYMENTS = ("cert-manager", "cert-manager-cainjector", "cert-manager-webhook")
READY_TIMEOUT = 300
READY_INTERVAL = 5


def install_cert_manager(
    handle: ClusterHandle,
    manifest_url: str,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    kubectl = handle.kubectl()
    logger.info("Installing cert-manager from %s", manifest_url)
    kubectl.apply_url(manifest_url)
    scoped = kubectl.with_namespace(NAMESPACE)

    def available() -> None:
        for name in DEPLOYMENTS:
            status = scoped.get_json("deployment", name).get("status", {})
            replicas = int(status.get("replicas", 0) or 0)
            available = int(status.get("availableReplicas", 0) or 0)
            if replicas == 0 or available < replicas:
                raise NotReady(f"{name}: {available}/{replicas} available")

    poll_until(available, description="cert-manager deployments", timeout=READY_TIMEOUT, interval=READY_INTERVAL, sleep=sleep)
    logger.info("cert-manager is available")


__all__ = ["DEPLOYMENTS", "install_cert_manager"]
