from __future__ import annotations

import logging
import tempfile
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Optional, Protocol, Tuple

from src.common.errors import ClusterUnavailableError, ConfigurationError, HarnessError
from src.common.kubectl import Kubectl
from src.common.shell import Runner, run_command

logger = logging.getLogger(__name__)


class ProviderState(str, Enum):
    ABSENT = "absent"
    CREATING = "creating"
    READY = "ready"
    DEGRADED = "degraded"
    DELETING = "deleting"


_TRANSITIONS: Dict[ProviderState, FrozenSet[ProviderState]] = {
    ProviderState.ABSENT: frozenset({ProviderState.CREATING, ProviderState.READY, ProviderState.DELETING}),
    ProviderState.CREATING: frozenset({ProviderState.READY, ProviderState.ABSENT, ProviderState.DELETING}),
    ProviderState.READY: frozenset({ProviderState.DELETING, ProviderState.DEGRADED}),
    ProviderState.DEGRADED: frozenset({ProviderState.DELETING, ProviderState.CREATING, ProviderState.READY}),
    ProviderState.DELETING: frozenset({ProviderState.ABSENT}),
}


class IllegalTransition(HarnessError):
    """Raised when a provider attempts a state change the lifecycle does not allow."""


class StateTracker:
    """Thread-safe holder of one provider's lifecycle state."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._state = ProviderState.ABSENT
        self._lock = threading.Lock()

    @property
    def state(self) -> ProviderState:
        return self._state

    def transition(self, target: ProviderState) -> None:
        with self._lock:
            if target == self._state:
                return
            if target not in _TRANSITIONS[self._state]:
                raise IllegalTransition(f"{self.name}: {self._state.value} -> {target.value} is not allowed")
            logger.debug("%s: %s -> %s", self.name, self._state.value, target.value)
            self._state = target


@dataclass(frozen=True)
class ClusterSpec:
    name: str
    backend: str
    kubernetes_version: str
    node_count: int = 3
    region: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("cluster name must not be empty")
        if self.node_count < 1:
            raise ConfigurationError(f"node count must be positive (got {self.node_count})")


def kubeconfig_path_for(name: str) -> Path:
    return Path(tempfile.gettempdir()) / f"{name}.kubeconfig"


class Provider(Protocol):
    spec: ClusterSpec

    @property
    def state(self) -> ProviderState: ...

    def create(self) -> None: ...

    def connect(self) -> None: ...

    def exists(self) -> bool: ...

    def delete(self) -> None: ...

    def is_ready(self) -> bool: ...

    def mark_degraded(self) -> None: ...

    def install_csi_driver(self) -> None: ...

    def install_image_validation_policy(self) -> None: ...

    def has_baseline(self) -> bool: ...

    def connection_handle(self) -> "ClusterHandle": ...


@dataclass(frozen=True)
class ClusterHandle:
    name: str
    kubeconfig_path: Path
    provider: Provider
    runner: Runner = run_command

    def kubeconfig(self) -> Path:
        """Kubeconfig path, only while the owning provider reports ready."""

        if self.provider.state != ProviderState.READY:
            raise ClusterUnavailableError(
                f"cluster {self.name} is {self.provider.state.value}, not ready"
            )
        return self.kubeconfig_path

    def kubectl(self, namespace: Optional[str] = None) -> Kubectl:
        return Kubectl(self.kubeconfig(), namespace=namespace, runner=self.runner)

    @property
    def backend(self) -> str:
        return self.provider.spec.backend


ProviderFactory = Callable[..., Provider]
_REGISTRY: Dict[str, ProviderFactory] = {}


def register_provider(kind: str, factory: ProviderFactory) -> None:
    _REGISTRY[kind] = factory


def registered_providers() -> Tuple[str, ...]:
    return tuple(sorted(_REGISTRY))


def create_provider(spec: ClusterSpec, config, *, runner: Runner = run_command, **kwargs) -> Provider:
    """Instantiate the backend registered under ``spec.backend``."""

    factory = _REGISTRY.get(spec.backend)
    if factory is None:
        raise ConfigurationError(
            f"unknown cluster provider {spec.backend!r} (available: {', '.join(registered_providers())})"
        )
    return factory(spec, config, runner=runner, **kwargs)


__all__ = [
    "ClusterHandle",
    "ClusterSpec",
    "IllegalTransition",
    "Provider",
    "ProviderState",
    "StateTracker",
    "create_provider",
    "kubeconfig_path_for",
    "register_provider",
    "registered_providers",
]
