import tempfile
import unittest
from pathlib import Path

import pytest

from src.common.errors import ConfigurationError
from src.config.settings import parse_bool, parse_duration, resolve_run_config
from src.config.versions import load_version_matrix, major_minor, split_image

MINIMAL_MATRIX = """
default_kubernetes_version: "1.33"
operators:
  - version: "1.28.0"
    git_tag: v1.28.0
    operator_image: ghcr.io/cloudnative-pg/cloudnative-pg:1.28.0
    postgres_versions: ["16", "17"]
    providers:
      kind:
        kubernetes_versions: ["1.32"]
postgres_images:
  default_registry: public
  spock_version: spock5
  registries:
    public:
      base: ghcr.io/pgedge/pgedge-postgres
  variants:
    - name: standard
      tag_suffix: -standard
    - name: minimal
      tag_suffix: ""
kubernetes_versions:
  "1.33":
    manifests:
      - name: plugin
        stage: driver
        url: https://example.invalid/plugin.yaml
      - name: crd
        stage: snapshot-crd
        url: https://example.invalid/crd.yaml
      - name: rbac
        stage: sidecar-rbac
        url: https://example.invalid/rbac.yaml
"""


class VersionMatrixTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "versions.yaml"
        self.path.write_text(MINIMAL_MATRIX, encoding="utf-8")

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_shipped_matrix_loads(self) -> None:
        matrix = load_version_matrix()
        self.assertTrue(matrix.operators)
        self.assertIn("!backup-restore", matrix.suite.exclusions)
        self.assertTrue(matrix.image_policy.manifest.exists())
        self.assertEqual(matrix.pgedge_helm.init_job, "pgedge-init-spock")
        self.assertEqual(matrix.pgedge_helm.expected_clusters, 3)

    def test_postgres_image_format(self) -> None:
        matrix = load_version_matrix(self.path)
        self.assertEqual(
            matrix.postgres_image("public", "17", "standard"),
            "ghcr.io/pgedge/pgedge-postgres:17-spock5-standard",
        )
        self.assertEqual(matrix.postgres_image("public", "16", "minimal"), "ghcr.io/pgedge/pgedge-postgres:16-spock5")

    def test_unknown_registry_or_variant(self) -> None:
        matrix = load_version_matrix(self.path)
        with self.assertRaises(ConfigurationError):
            matrix.postgres_image("nope", "17", "standard")
        with self.assertRaises(ConfigurationError):
            matrix.postgres_image("public", "17", "nope")

    def test_csi_manifests_sorted_by_stage_with_default_fallback(self) -> None:
        matrix = load_version_matrix(self.path)
        names = [m.name for m in matrix.csi_manifests("v1.33.1")]
        self.assertEqual(names, ["crd", "rbac", "plugin"])
        fallback = [m.name for m in matrix.csi_manifests("kindest/node:v1.29")]
        self.assertEqual(fallback, names)

    def test_missing_file_is_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            load_version_matrix(Path(self.tmpdir.name) / "absent.yaml")

    def test_malformed_yaml_is_configuration_error(self) -> None:
        self.path.write_text("operators: [unclosed", encoding="utf-8")
        with self.assertRaises(ConfigurationError):
            load_version_matrix(self.path)

    def test_unknown_operator_version(self) -> None:
        matrix = load_version_matrix(self.path)
        with self.assertRaises(ConfigurationError):
            matrix.operator("9.9.9")


class RunConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "versions.yaml"
        self.path.write_text(MINIMAL_MATRIX, encoding="utf-8")

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_defaults(self) -> None:
        config = resolve_run_config(env={}, versions_path=self.path)
        self.assertEqual(config.provider, "kind")
        self.assertEqual(config.node_count, 3)
        self.assertEqual(config.kubernetes_version, "1.32")
        self.assertEqual(config.postgres_version, "16")
        self.assertEqual(config.postgres_image, "ghcr.io/pgedge/pgedge-postgres:16-spock5-standard")
        self.assertFalse(config.policy.reuse)
        self.assertTrue(config.policy.cleanup)
        self.assertEqual(config.suite_timeout, 3 * 3600)

    def test_environment_overrides(self) -> None:
        env = {
            "POSTGRES_VERSION": "17",
            "POSTGRES_VARIANT": "minimal",
            "KUBERNETES_VERSION": "1.31",
            "NODE_COUNT": "1",
            "CLUSTER_REUSE": "yes",
            "CLUSTER_CLEANUP": "off",
            "LABEL_FILTER": "smoke",
            "SUITE_TIMEOUT": "90m",
            "PGEDGE_HELM_PATH": "/src/pgedge-helm",
            "PGEDGE_HELM_BRANCH": "feature-x",
        }
        config = resolve_run_config(env=env, versions_path=self.path)
        self.assertEqual(config.postgres_image, "ghcr.io/pgedge/pgedge-postgres:17-spock5")
        self.assertEqual(config.kubernetes_version, "1.31")
        self.assertEqual(config.node_count, 1)
        self.assertTrue(config.policy.reuse)
        self.assertFalse(config.policy.cleanup)
        self.assertEqual(config.policy.label_filter, "smoke")
        self.assertEqual(config.suite_timeout, 5400)
        self.assertEqual(config.pgedge_helm_path, Path("/src/pgedge-helm"))
        self.assertEqual(config.pgedge_helm_branch, "feature-x")

    def test_kubernetes_falls_back_to_matrix_default(self) -> None:
        config = resolve_run_config(env={"CLUSTER_PROVIDER": "eks"}, versions_path=self.path)
        self.assertEqual(config.kubernetes_version, "1.33")

    def test_invalid_values_raise(self) -> None:
        for env in (
            {"NODE_COUNT": "0"},
            {"NODE_COUNT": "three"},
            {"CLUSTER_REUSE": "maybe"},
            {"CLUSTER_PROVIDER": "gke"},
            {"POSTGRES_VERSION": "12"},
            {"CNPG_VERSION": "0.0.1"},
        ):
            with self.subTest(env=env):
                with self.assertRaises(ConfigurationError):
                    resolve_run_config(env=env, versions_path=self.path)

    def test_with_postgres_rebuilds_image(self) -> None:
        config = resolve_run_config(env={}, versions_path=self.path)
        other = config.with_postgres("17", "minimal")
        self.assertEqual(other.postgres_image, "ghcr.io/pgedge/pgedge-postgres:17-spock5")
        self.assertEqual(config.postgres_version, "16")


def test_split_image_handles_registry_ports() -> None:
    assert split_image("ghcr.io/cloudnative-pg/cloudnative-pg:1.28.0") == ("ghcr.io/cloudnative-pg/cloudnative-pg", "1.28.0")
    assert split_image("localhost:5000/cnpg") == ("localhost:5000/cnpg", "latest")


def test_major_minor_extraction() -> None:
    assert major_minor("v1.32.0") == "1.32"
    assert major_minor("kindest/node:v1.33") == "1.33"
    assert major_minor("latest") is None


def test_parsers() -> None:
    assert parse_bool("X", "TRUE", False) is True
    assert parse_bool("X", None, True) is True
    assert parse_duration("X", "3h", 0) == 10800
    with pytest.raises(ConfigurationError):
        parse_duration("X", "soon", 0)
