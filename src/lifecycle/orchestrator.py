from __future__ import annotations

import logging
import re
import threading
from contextlib import ExitStack
from typing import Any, Callable, Optional

from src.common.errors import ClusterConnectionError, HarnessError, ProvisioningError
from src.common.shell import Runner, run_command
from src.config.settings import RunConfig, RunPolicy
from src.providers.base import ClusterHandle, ClusterSpec, Provider, create_provider

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9-]+")


def cluster_name(unit: str, config: RunConfig, prefix: str = "cnpg-e2e") -> str:
    """Deterministic per-unit cluster name, so a reused cluster can be found again."""

    raw = f"{prefix}-{unit}-v{config.operator.version}-pg{config.postgres_version}-{config.postgres_variant}"
    name = _INVALID_NAME_CHARS.sub("-", raw.lower().replace(".", "")).strip("-")
    return re.sub(r"-{2,}", "-", name)


def cluster_spec_for(config: RunConfig, name: str) -> ClusterSpec:
    return ClusterSpec(
        name=name,
        backend=config.provider,
        kubernetes_version=config.kubernetes_version,
        node_count=config.node_count,
        region=config.region,
    )


class ClusterLease:
    """A ready cluster plus the teardown registered for it.

    ``release`` runs every deferred action in reverse registration order and is
    safe to call more than once; only the first call does any work.
    """

    def __init__(self, provider: Provider) -> None:
        self.provider = provider
        self.reused = False
        self._stack = ExitStack()
        self._lock = threading.Lock()
        self._released = False

    @property
    def handle(self) -> ClusterHandle:
        return self.provider.connection_handle()

    @property
    def released(self) -> bool:
        return self._released

    def defer(self, action: Callable[..., Any], *args: Any, description: Optional[str] = None, **kwargs: Any) -> None:
        label = description or getattr(action, "__name__", repr(action))

        def run() -> None:
            try:
                action(*args, **kwargs)
            except HarnessError as exc:
                logger.warning("Teardown step %s failed: %s", label, exc)

        self._stack.callback(run)

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._stack.close()

    def __enter__(self) -> "ClusterLease":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def acquire_cluster(provider: Provider, policy: RunPolicy) -> ClusterLease:
    """Bring ``provider`` to a ready cluster according to the reuse/cleanup policy."""

    lease = ClusterLease(provider)
    name = provider.spec.name
    if policy.cleanup:
        lease.defer(provider.delete, description=f"delete cluster {name}")
    try:
        if policy.reuse and provider.exists():
            try:
                provider.connect()
                lease.reused = True
            except ClusterConnectionError as exc:
                logger.warning("Cannot reuse cluster %s (%s); recreating it", name, exc)
        if lease.reused:
            logger.info("Reusing cluster %s; skipping baseline installation", name)
            if not provider.has_baseline():
                logger.warning("Reused cluster %s is missing the baseline storage or snapshot class", name)
        else:
            provider.create()
            provider.install_csi_driver()
            provider.install_image_validation_policy()
            if not provider.is_ready():
                provider.mark_degraded()
                raise ProvisioningError(f"cluster {name} failed its post-install health check")
    except BaseException:
        lease.release()
        raise
    if not policy.cleanup:
        logger.info("Cluster %s will be kept after the run", name)
    return lease


def provision(
    config: RunConfig,
    name: str,
    *,
    runner: Runner = run_command,
    **provider_kwargs: Any,
) -> ClusterLease:
    provider = create_provider(cluster_spec_for(config, name), config, runner=runner, **provider_kwargs)
    return acquire_cluster(provider, config.policy)


__all__ = ["ClusterLease", "acquire_cluster", "cluster_name", "cluster_spec_for", "provision"]
