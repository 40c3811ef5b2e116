from __future__ import annotations

import dataclasses
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from src.common.errors import ConfigurationError

from .versions import OperatorEntry, VersionMatrix, load_version_matrix

logger = logging.getLogger(__name__)

PROVIDERS = ("kind", "eks")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}
_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600}


@dataclass(frozen=True)
class RunPolicy:
    reuse: bool = False
    cleanup: bool = True
    label_filter: str = ""
    exclusions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RunConfig:
    matrix: VersionMatrix
    operator: OperatorEntry
    postgres_version: str
    postgres_variant: str
    postgres_registry: str
    postgres_image: str
    provider: str
    kubernetes_version: str
    node_count: int
    region: Optional[str]
    policy: RunPolicy
    feature_type: str
    test_depth: int
    suite_workers: int = 2
    suite_timeout: float = 3 * 3600
    suite_path: Optional[Path] = None
    keep_suite_clone: bool = False
    results_dir: Path = Path("test-results")
    charts_dir: Path = Path("charts")
    terraform_dir: Path = Path("infra/terraform/eks")
    aws_region: str = "us-east-2"
    eks_node_type: str = "m5.large"
    eks_use_spot: bool = False
    pgedge_helm_path: Optional[Path] = None
    pgedge_helm_branch: Optional[str] = None

    @property
    def cloud_region(self) -> str:
        return self.region or self.aws_region

    def chart_path(self) -> str:
        if self.operator.chart:
            return self.operator.chart
        return str(self.charts_dir / "cloudnative-pg" / f"v{self.operator.version}")

    def with_postgres(self, postgres_version: str, variant: Optional[str] = None) -> "RunConfig":
        variant = variant or self.postgres_variant
        return dataclasses.replace(
            self,
            postgres_version=postgres_version,
            postgres_variant=variant,
            postgres_image=self.matrix.postgres_image(self.postgres_registry, postgres_version, variant),
        )

    def with_operator(self, version: str) -> "RunConfig":
        entry = self.matrix.operator(version)
        return dataclasses.replace(self, operator=entry)

    def with_policy(self, **changes) -> "RunConfig":
        return dataclasses.replace(self, policy=dataclasses.replace(self.policy, **changes))

    def summary(self) -> str:
        return (
            f"operator={self.operator.version} postgres={self.postgres_version}/{self.postgres_variant} "
            f"provider={self.provider} kubernetes={self.kubernetes_version} nodes={self.node_count}"
        )


def parse_bool(name: str, raw: Optional[str], default: bool) -> bool:
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean (got {raw!r})")


def parse_positive_int(name: str, raw: Optional[str], default: int) -> int:
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer (got {raw!r})") from exc
    if value < 1:
        raise ConfigurationError(f"{name} must be at least 1 (got {value})")
    return value


def parse_duration(name: str, raw: Optional[str], default: float) -> float:
    """Seconds from ``raw``; accepts a bare number or an ``s``/``m``/``h`` suffix."""

    if raw is None or raw.strip() == "":
        return default
    match = _DURATION.match(raw.lower())
    if not match:
        raise ConfigurationError(f"{name} must be a duration such as 3600, 90m or 3h (got {raw!r})")
    seconds = float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    if seconds <= 0:
        raise ConfigurationError(f"{name} must be positive")
    return seconds


def _get(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def resolve_run_config(
    env: Optional[Mapping[str, str]] = None,
    versions_path: Optional[Path] = None,
) -> RunConfig:
    """Build the immutable run configuration from the environment and version matrix."""

    env = os.environ if env is None else env
    matrix = load_version_matrix(versions_path or _get(env, "VERSIONS_FILE"))
    operator = matrix.operator(_get(env, "CNPG_VERSION"))

    provider = (_get(env, "CLUSTER_PROVIDER") or matrix.default_provider).lower()
    if provider not in PROVIDERS:
        raise ConfigurationError(f"CLUSTER_PROVIDER must be one of {', '.join(PROVIDERS)} (got {provider!r})")

    postgres_version = _get(env, "POSTGRES_VERSION")
    if postgres_version is None:
        if not operator.postgres_versions:
            raise ConfigurationError(f"operator {operator.version} lists no postgres versions")
        postgres_version = operator.postgres_versions[0]
    elif operator.postgres_versions and postgres_version not in operator.postgres_versions:
        raise ConfigurationError(
            f"postgres version {postgres_version} is not supported by operator {operator.version} "
            f"(supported: {', '.join(operator.postgres_versions)})"
        )

    variant = _get(env, "POSTGRES_VARIANT")
    if variant is None:
        names = [item.name for item in matrix.variants]
        variant = "standard" if "standard" in names else (names[0] if names else "")
    registry = _get(env, "POSTGRES_IMAGE_REGISTRY") or matrix.default_registry
    postgres_image = matrix.postgres_image(registry, postgres_version, variant)

    kubernetes_version = _get(env, "KUBERNETES_VERSION")
    if kubernetes_version is None:
        supported = operator.kubernetes_versions_for(provider)
        kubernetes_version = supported[0] if supported else matrix.default_kubernetes_version

    exclusions = matrix.suite.exclusions
    policy = RunPolicy(
        reuse=parse_bool("CLUSTER_REUSE", env.get("CLUSTER_REUSE"), False),
        cleanup=parse_bool("CLUSTER_CLEANUP", env.get("CLUSTER_CLEANUP"), True),
        label_filter=_get(env, "LABEL_FILTER") or "",
        exclusions=exclusions,
    )

    suite_path = _get(env, "SUITE_PATH")
    helm_path = _get(env, "PGEDGE_HELM_PATH")
    test_depth = _get(env, "TEST_DEPTH")
    try:
        depth = int(test_depth) if test_depth is not None else matrix.default_test_depth
    except ValueError as exc:
        raise ConfigurationError(f"TEST_DEPTH must be an integer (got {test_depth!r})") from exc

    config = RunConfig(
        matrix=matrix,
        operator=operator,
        postgres_version=postgres_version,
        postgres_variant=variant,
        postgres_registry=registry,
        postgres_image=postgres_image,
        provider=provider,
        kubernetes_version=kubernetes_version,
        node_count=parse_positive_int("NODE_COUNT", env.get("NODE_COUNT"), matrix.kind.nodes),
        region=_get(env, "CLOUD_REGION"),
        policy=policy,
        feature_type=_get(env, "FEATURE_TYPE") or matrix.default_feature_type,
        test_depth=depth,
        suite_workers=parse_positive_int("SUITE_WORKERS", env.get("SUITE_WORKERS"), 2),
        suite_timeout=parse_duration("SUITE_TIMEOUT", env.get("SUITE_TIMEOUT"), 3 * 3600),
        suite_path=Path(suite_path) if suite_path else None,
        keep_suite_clone=parse_bool("KEEP_SUITE_CLONE", env.get("KEEP_SUITE_CLONE"), False),
        results_dir=Path(_get(env, "RESULTS_DIR") or "test-results"),
        charts_dir=Path(_get(env, "CHARTS_DIR") or "charts"),
        terraform_dir=Path(_get(env, "TERRAFORM_DIR") or "infra/terraform/eks"),
        aws_region=_get(env, "AWS_REGION") or "us-east-2",
        eks_node_type=_get(env, "EKS_NODE_TYPE") or "m5.large",
        eks_use_spot=parse_bool("EKS_USE_SPOT", env.get("EKS_USE_SPOT"), False),
        pgedge_helm_path=Path(helm_path) if helm_path else None,
        pgedge_helm_branch=_get(env, "PGEDGE_HELM_BRANCH"),
    )
    logger.info("Resolved run configuration: %s", config.summary())
    return config


__all__ = [
    "PROVIDERS",
    "RunConfig",
    "RunPolicy",
    "parse_bool",
    "parse_duration",
    "parse_positive_int",
    "resolve_run_config",
]
