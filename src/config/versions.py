from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from src.common.errors import ConfigurationError

logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_VERSIONS_PATH = REPO_ROOT / "configs" / "versions.yaml"

CSI_STAGE_ORDER: Tuple[str, ...] = (
    "snapshot-crd",
    "snapshot-controller",
    "snapshotter-rbac",
    "sidecar-rbac",
    "driver",
)

_MAJOR_MINOR = re.compile(r"(\d+)\.(\d+)")


@dataclass(frozen=True)
class OperatorEntry:
    version: str
    git_tag: str
    operator_image: str
    postgres_versions: Tuple[str, ...]
    kubernetes_versions: Mapping[str, Tuple[str, ...]]
    chart: Optional[str] = None
    chart_version: Optional[str] = None

    def kubernetes_versions_for(self, provider: str) -> Tuple[str, ...]:
        return tuple(self.kubernetes_versions.get(provider, ()))

    def operator_image_parts(self) -> Tuple[str, str]:
        return split_image(self.operator_image)


@dataclass(frozen=True)
class Registry:
    name: str
    base: str
    description: str = ""


@dataclass(frozen=True)
class ImageVariant:
    name: str
    tag_suffix: str = ""
    description: str = ""


@dataclass(frozen=True)
class StorageClasses:
    default_class: str = "csi-hostpath-sc"
    csi_class: str = "csi-hostpath-sc"
    snapshot_class: str = "csi-hostpath-snapclass"


@dataclass(frozen=True)
class KindDefaults:
    image: str = "kindest/node"
    nodes: int = 3
    service_subnet: str = "10.21.0.0/16"
    pod_subnet: str = "10.20.0.0/16"
    storage: StorageClasses = field(default_factory=StorageClasses)


@dataclass(frozen=True)
class EksDefaults:
    storage: StorageClasses = field(default_factory=StorageClasses)
    snapshot_manifests: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SuiteDefaults:
    repository: str = "https://github.com/cloudnative-pg/cloudnative-pg.git"
    exclusions: Tuple[str, ...] = ()
    skip_patterns: Tuple[str, ...] = ()
    poll_progress_after: str = "1200s"
    poll_progress_interval: str = "150s"


@dataclass(frozen=True)
class PgedgeHelmDefaults:
    repository: str = "https://github.com/pgEdge/pgedge-helm.git"
    branch: str = "main"
    values_file: str = "values.yaml"
    release: str = "pgedge"
    namespace: str = "default"
    expected_clusters: int = 3
    install_timeout: str = "30m"
    test_timeout: str = "5m"

    @property
    def init_job(self) -> str:
        return f"{self.release}-init-spock"


@dataclass(frozen=True)
class CsiManifest:
    name: str
    url: str
    stage: str = "driver"

    def stage_rank(self) -> int:
        try:
            return CSI_STAGE_ORDER.index(self.stage)
        except ValueError:
            return len(CSI_STAGE_ORDER)


@dataclass(frozen=True)
class ImagePolicy:
    manifest: Path
    allowed_prefixes: Tuple[str, ...]


@dataclass(frozen=True)
class VersionMatrix:
    operators: Tuple[OperatorEntry, ...]
    registries: Mapping[str, Registry]
    default_registry: str
    spock_version: str
    variants: Tuple[ImageVariant, ...]
    default_kubernetes_version: str
    kubernetes_manifests: Mapping[str, Tuple[CsiManifest, ...]]
    kind: KindDefaults
    eks: EksDefaults
    suite: SuiteDefaults
    cert_manager_url: str
    image_policy: ImagePolicy
    pgedge_helm: PgedgeHelmDefaults = field(default_factory=PgedgeHelmDefaults)
    operator_release: str = "cloudnative-pg"
    operator_namespace: str = "cnpg-system"
    default_feature_type: str = ""
    default_test_depth: int = 4
    default_provider: str = "kind"

    def operator(self, version: Optional[str] = None) -> OperatorEntry:
        if not version:
            if not self.operators:
                raise ConfigurationError("no operator versions defined in the version matrix")
            return self.operators[0]
        for entry in self.operators:
            if entry.version == version:
                return entry
        raise ConfigurationError(f"operator version {version} not found in the version matrix")

    def variant(self, name: str) -> ImageVariant:
        for variant in self.variants:
            if variant.name == name:
                return variant
        raise ConfigurationError(f"unknown image variant: {name}")

    def postgres_image(self, registry: str, postgres_version: str, variant: str) -> str:
        reg = self.registries.get(registry or self.default_registry)
        if reg is None:
            raise ConfigurationError(f"unknown image registry: {registry}")
        suffix = self.variant(variant).tag_suffix
        return f"{reg.base}:{postgres_version}-{self.spock_version}{suffix}"

    def csi_manifests(self, kubernetes_version: str) -> List[CsiManifest]:
        """Manifest set for ``kubernetes_version`` ordered by install stage."""

        key = major_minor(kubernetes_version)
        manifests = self.kubernetes_manifests.get(key or "")
        if manifests is None:
            logger.info(
                "No CSI manifests for Kubernetes %s; using default %s",
                kubernetes_version,
                self.default_kubernetes_version,
            )
            manifests = self.kubernetes_manifests.get(self.default_kubernetes_version, ())
        return sorted(manifests, key=lambda item: item.stage_rank())


def major_minor(version: str) -> Optional[str]:
    match = _MAJOR_MINOR.search(version or "")
    if not match:
        return None
    return f"{match.group(1)}.{match.group(2)}"


def split_image(image: str) -> Tuple[str, str]:
    slash = image.rfind("/")
    colon = image.rfind(":")
    if colon > slash:
        return image[:colon], image[colon + 1 :]
    return image, "latest"


def load_version_matrix(path: Optional[Union[str, Path]] = None) -> VersionMatrix:
    versions_path = Path(path) if path else DEFAULT_VERSIONS_PATH
    if not versions_path.exists():
        raise ConfigurationError(f"version matrix not found: {versions_path}")
    try:
        data = yaml.safe_load(versions_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"failed to parse {versions_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{versions_path} must contain a mapping at the top level")
    try:
        return _build_matrix(data)
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"invalid version matrix {versions_path}: {exc}") from exc


def _strings(values: Any) -> Tuple[str, ...]:
    if values is None:
        return ()
    if not isinstance(values, list):
        raise TypeError(f"expected a list, got {type(values).__name__}")
    return tuple(str(value) for value in values)


def _storage(raw: Optional[Dict[str, Any]]) -> StorageClasses:
    raw = raw or {}
    defaults = StorageClasses()
    return StorageClasses(
        default_class=str(raw.get("default_class", defaults.default_class)),
        csi_class=str(raw.get("csi_class", defaults.csi_class)),
        snapshot_class=str(raw.get("snapshot_class", defaults.snapshot_class)),
    )


def _operator(raw: Dict[str, Any]) -> OperatorEntry:
    providers = raw.get("providers") or {}
    return OperatorEntry(
        version=str(raw["version"]),
        git_tag=str(raw["git_tag"]),
        operator_image=str(raw["operator_image"]),
        postgres_versions=_strings(raw.get("postgres_versions")),
        kubernetes_versions={
            str(name): _strings((cfg or {}).get("kubernetes_versions"))
            for name, cfg in providers.items()
        },
        chart=raw.get("chart"),
        chart_version=str(raw["chart_version"]) if raw.get("chart_version") is not None else None,
    )


def _build_matrix(data: Dict[str, Any]) -> VersionMatrix:
    operators = tuple(_operator(item) for item in data.get("operators") or [])
    if not operators:
        raise ValueError("at least one operator entry is required")

    images = data.get("postgres_images") or {}
    registries = {
        str(name): Registry(name=str(name), base=str(cfg["base"]), description=str(cfg.get("description", "")))
        for name, cfg in (images.get("registries") or {}).items()
    }
    variants = tuple(
        ImageVariant(
            name=str(item["name"]),
            tag_suffix=str(item.get("tag_suffix") or ""),
            description=str(item.get("description", "")),
        )
        for item in images.get("variants") or []
    )

    manifests: Dict[str, Tuple[CsiManifest, ...]] = {}
    for version, cfg in (data.get("kubernetes_versions") or {}).items():
        manifests[str(version)] = tuple(
            CsiManifest(name=str(item["name"]), url=str(item["url"]), stage=str(item.get("stage", "driver")))
            for item in (cfg or {}).get("manifests") or []
        )

    kind_raw = data.get("kind_defaults") or {}
    networking = kind_raw.get("networking") or {}
    kind_base = KindDefaults()
    kind = KindDefaults(
        image=str(kind_raw.get("image", kind_base.image)),
        nodes=int(kind_raw.get("nodes", kind_base.nodes)),
        service_subnet=str(networking.get("service_subnet", kind_base.service_subnet)),
        pod_subnet=str(networking.get("pod_subnet", kind_base.pod_subnet)),
        storage=_storage(kind_raw.get("storage")),
    )

    eks_raw = data.get("eks_defaults") or {}
    eks = EksDefaults(
        storage=_storage(eks_raw.get("storage")),
        snapshot_manifests=_strings(eks_raw.get("snapshot_manifests")),
    )

    suite_raw = data.get("suite") or {}
    suite_base = SuiteDefaults()
    suite = SuiteDefaults(
        repository=str(suite_raw.get("repository", suite_base.repository)),
        exclusions=_strings(suite_raw.get("exclusions")),
        skip_patterns=_strings(suite_raw.get("skip_patterns")),
        poll_progress_after=str(suite_raw.get("poll_progress_after", suite_base.poll_progress_after)),
        poll_progress_interval=str(suite_raw.get("poll_progress_interval", suite_base.poll_progress_interval)),
    )

    policy_raw = data.get("image_policy") or {}
    policy_manifest = Path(str(policy_raw.get("manifest", "manifests/image-validation-policy.yaml")))
    if not policy_manifest.is_absolute():
        policy_manifest = REPO_ROOT / policy_manifest
    image_policy = ImagePolicy(
        manifest=policy_manifest,
        allowed_prefixes=_strings(policy_raw.get("allowed_prefixes")),
    )

    helm_raw = data.get("pgedge_helm") or {}
    helm_base = PgedgeHelmDefaults()
    pgedge_helm = PgedgeHelmDefaults(
        repository=str(helm_raw.get("repository", helm_base.repository)),
        branch=str(helm_raw.get("branch", helm_base.branch)),
        values_file=str(helm_raw.get("values_file", helm_base.values_file)),
        release=str(helm_raw.get("release", helm_base.release)),
        namespace=str(helm_raw.get("namespace", helm_base.namespace)),
        expected_clusters=int(helm_raw.get("expected_clusters", helm_base.expected_clusters)),
        install_timeout=str(helm_raw.get("install_timeout", helm_base.install_timeout)),
        test_timeout=str(helm_raw.get("test_timeout", helm_base.test_timeout)),
    )

    defaults = data.get("test_defaults") or {}
    operator_defaults = data.get("operator_defaults") or {}
    return VersionMatrix(
        operators=operators,
        registries=registries,
        default_registry=str(images.get("default_registry", "public")),
        spock_version=str(images.get("spock_version", "")),
        variants=variants,
        default_kubernetes_version=str(data["default_kubernetes_version"]),
        kubernetes_manifests=manifests,
        kind=kind,
        eks=eks,
        suite=suite,
        cert_manager_url=str((data.get("cert_manager") or {}).get("manifest_url", "")),
        image_policy=image_policy,
        pgedge_helm=pgedge_helm,
        operator_release=str(operator_defaults.get("release", "cloudnative-pg")),
        operator_namespace=str(operator_defaults.get("namespace", "cnpg-system")),
        default_feature_type=str(defaults.get("feature_type") or ""),
        default_test_depth=int(defaults.get("test_depth", 4)),
        default_provider=str(defaults.get("provider", "kind")),
    )


__all__ = [
    "CSI_STAGE_ORDER",
    "CsiManifest",
    "DEFAULT_VERSIONS_PATH",
    "REPO_ROOT",
    "EksDefaults",
    "ImagePolicy",
    "ImageVariant",
    "KindDefaults",
    "OperatorEntry",
    "PgedgeHelmDefaults",
    "Registry",
    "StorageClasses",
    "SuiteDefaults",
    "VersionMatrix",
    "load_version_matrix",
    "major_minor",
    "split_image",
]
