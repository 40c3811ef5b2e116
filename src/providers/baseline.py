from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from src.common.errors import ConfigurationError
from src.common.kubectl import Kubectl, node_is_ready, pod_is_running
from src.common.polling import NotReady, poll_until

logger = logging.getLogger(__name__)

Sleep = Callable[[float], None]


def wait_for_nodes(
    kubectl: Kubectl,
    expected: int,
    *,
    timeout: float,
    interval: float,
    sleep: Sleep = time.sleep,
) -> List[Dict[str, Any]]:
    """Block until at least ``expected`` nodes exist and every node is Ready."""

    def probe() -> List[Dict[str, Any]]:
        nodes = kubectl.list_items("nodes", namespace="")
        if len(nodes) < expected:
            raise NotReady(f"{len(nodes)}/{expected} nodes registered")
        not_ready = [n.get("metadata", {}).get("name", "?") for n in nodes if not node_is_ready(n)]
        if not_ready:
            raise NotReady(f"nodes not ready: {', '.join(not_ready)}")
        return nodes

    logger.info("Waiting for %d nodes to become ready", expected)
    nodes = poll_until(probe, description="nodes ready", timeout=timeout, interval=interval, sleep=sleep)
    logger.info("All %d nodes are ready", len(nodes))
    return nodes


def wait_for_pods(
    kubectl: Kubectl,
    selector: str,
    namespace: str,
    *,
    timeout: float,
    interval: float,
    description: str,
    require_running: bool = True,
    sleep: Sleep = time.sleep,
) -> List[Dict[str, Any]]:
    def probe() -> List[Dict[str, Any]]:
        pods = kubectl.list_items("pods", selector=selector, namespace=namespace)
        if not pods:
            raise NotReady(f"no pods match {selector} in {namespace}")
        if require_running:
            pending = [p.get("metadata", {}).get("name", "?") for p in pods if not pod_is_running(p)]
            if pending:
                raise NotReady(f"pods not running: {', '.join(pending)}")
        return pods

    return poll_until(probe, description=description, timeout=timeout, interval=interval, sleep=sleep)


def storage_class_manifest(
    name: str,
    provisioner: str,
    *,
    binding_mode: str = "Immediate",
    parameters: Optional[Dict[str, str]] = None,
    default: bool = False,
) -> str:
    doc: Dict[str, Any] = {
        "apiVersion": "storage.k8s.io/v1",
        "kind": "StorageClass",
        "metadata": {"name": name},
        "provisioner": provisioner,
        "reclaimPolicy": "Delete",
        "volumeBindingMode": binding_mode,
        "allowVolumeExpansion": True,
    }
    if default:
        doc["metadata"]["annotations"] = {"storageclass.kubernetes.io/is-default-class": "true"}
    if parameters:
        doc["parameters"] = dict(parameters)
    return yaml.safe_dump(doc, sort_keys=False)


def snapshot_class_manifest(
    name: str,
    driver: str,
    *,
    parameters: Optional[Dict[str, str]] = None,
) -> str:
    doc: Dict[str, Any] = {
        "apiVersion": "snapshot.storage.k8s.io/v1",
        "kind": "VolumeSnapshotClass",
        "metadata": {"name": name},
        "driver": driver,
        "deletionPolicy": "Delete",
    }
    if parameters:
        doc["parameters"] = dict(parameters)
    return yaml.safe_dump(doc, sort_keys=False)


def policy_object_names(manifest: Path) -> List[Tuple[str, str]]:
    """(kind, name) of every object in an admission-policy manifest."""

    try:
        documents = list(yaml.safe_load_all(manifest.read_text(encoding="utf-8")))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"image policy manifest not found: {manifest}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"failed to parse {manifest}: {exc}") from exc
    objects = []
    for doc in documents:
        if not isinstance(doc, dict):
            continue
        kind = doc.get("kind")
        name = (doc.get("metadata") or {}).get("name")
        if kind and name:
            objects.append((str(kind), str(name)))
    if not objects:
        raise ConfigurationError(f"{manifest} contains no named objects")
    return objects


def install_image_policy(
    kubectl: Kubectl,
    manifest: Path,
    *,
    timeout: float = 60,
    interval: float = 2,
    sleep: Sleep = time.sleep,
) -> None:
    objects = policy_object_names(manifest)
    logger.info("Installing image validation policy from %s", manifest)
    kubectl.apply_file(manifest)

    def probe() -> None:
        missing = [f"{kind}/{name}" for kind, name in objects if not kubectl.exists(kind.lower(), name, namespace="")]
        if missing:
            raise NotReady(f"not yet served: {', '.join(missing)}")

    poll_until(probe, description="image validation policy", timeout=timeout, interval=interval, sleep=sleep)
    logger.info("Image validation policy is active")


def has_storage_classes(kubectl: Kubectl, storage_class: str, snapshot_class: str) -> bool:
    return kubectl.exists("storageclass", storage_class, namespace="") and kubectl.exists(
        "volumesnapshotclass", snapshot_class, namespace=""
    )


__all__ = [
    "has_storage_classes",
    "install_image_policy",
    "policy_object_names",
    "snapshot_class_manifest",
    "storage_class_manifest",
    "wait_for_nodes",
    "wait_for_pods",
]
