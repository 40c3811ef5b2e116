import tempfile
import unittest
from pathlib import Path

import pytest

from fakes import FakeShell, make_config, no_sleep
from src.common.errors import ConfigurationError, ReadinessTimeoutError, ValidationFailure
from src.deployer.pgedge import HEALTHY_PHASE, PgedgeChartDeployer, healthy_clusters, locate_chart
from src.providers.base import ClusterSpec
from src.providers.kind import KindProvider
from src.scenarios import units


def _chart_checkout(base: Path) -> Path:
    chart = base / "pgedge-helm"
    chart.mkdir()
    (chart / "Chart.yaml").write_text("name: pgedge\n", encoding="utf-8")
    (chart / "values.yaml").write_text("pgEdge:\n  appName: pgedge\n", encoding="utf-8")
    return chart


class PgedgeChartDeployerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.base = Path(self.tmpdir.name)
        self.chart = _chart_checkout(self.base)
        self.config = make_config(self.base, PGEDGE_HELM_PATH=self.chart)
        self.shell = FakeShell()
        spec = ClusterSpec(name="pgedge-test", backend="kind", kubernetes_version="1.33")
        self.provider = KindProvider(spec, self.config, runner=self.shell, sleep=no_sleep)
        self.provider.create()
        self.deployer = PgedgeChartDeployer(self.provider.connection_handle(), self.config, self.chart, sleep=no_sleep)

    def tearDown(self) -> None:
        self.provider.delete()
        self.tmpdir.cleanup()

    def test_install_passes_values_file_and_timeout(self) -> None:
        self.deployer.install()
        call = self.shell.commands("helm")[-1]
        self.assertIn("-f", call)
        self.assertEqual(call[call.index("-f") + 1], str(self.chart / "values.yaml"))
        self.assertEqual(call[call.index("--timeout") + 1], "30m")
        self.assertNotIn("--wait", call)
        self.assertEqual(self.shell.clusters["pgedge-test"].releases["pgedge"]["namespace"], "default")

    def test_init_spock_image_override(self) -> None:
        deployer = PgedgeChartDeployer(
            self.provider.connection_handle(), self.config, self.chart, init_spock_image="ghcr.io/pgedge/utils:dev"
        )
        deployer.install()
        release = self.shell.clusters["pgedge-test"].releases["pgedge"]
        self.assertEqual(release["pgEdge.initSpockImageName"], "ghcr.io/pgedge/utils:dev")

    def test_waits_for_clusters_and_init_job(self) -> None:
        self.deployer.install()
        healthy = self.deployer.wait_for_clusters()
        self.assertEqual(healthy, ["pgedge-n1", "pgedge-n2", "pgedge-n3"])
        self.deployer.wait_for_init_job()
        self.assertIn("Succeeded", self.deployer.run_tests())

    def test_too_few_healthy_clusters_times_out(self) -> None:
        self.shell.pgedge_clusters = 2
        self.deployer.install()
        with self.assertRaises(ReadinessTimeoutError):
            self.deployer.wait_for_clusters(timeout=30, interval=10)

    def test_failed_init_job_stops_waiting_and_reports_logs(self) -> None:
        self.shell.init_job_failed = True
        self.deployer.install()
        with self.assertRaises(ValidationFailure) as ctx:
            self.deployer.wait_for_init_job()
        self.assertIn("pgedge-init-spock failed", str(ctx.exception))
        self.assertIn("could not connect to pgedge-n1", str(ctx.exception))
        self.assertEqual(self.shell.count("kubectl", "get", "job", "pgedge-init-spock", "-o", "json"), 1)

    def test_helm_test_failure_is_validation_failure(self) -> None:
        self.deployer.install()
        self.shell.fail(("helm", "test"), stderr="pod pgedge-test-spock failed")
        with self.assertRaises(ValidationFailure):
            self.deployer.run_tests()

    def test_uninstall_removes_release(self) -> None:
        self.deployer.install()
        self.deployer.uninstall()
        cluster = self.shell.clusters["pgedge-test"]
        self.assertNotIn("pgedge", cluster.releases)
        self.assertEqual(cluster.pg_clusters, [])


class PgedgeHelmUnitTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.base = Path(self.tmpdir.name)
        self.chart = _chart_checkout(self.base)
        self.shell = FakeShell()

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_unit_installs_stack_and_runs_helm_test(self) -> None:
        config = make_config(self.base, PGEDGE_HELM_PATH=self.chart, POSTGRES_VARIANT="minimal")
        healthy = units.pgedge_helm_unit(config, name="pgedge-unit", runner=self.shell, sleep=no_sleep)
        self.assertEqual(len(healthy), 3)
        self.assertEqual(self.shell.count("helm", "test", "pgedge"), 1)
        self.assertEqual(self.shell.count("helm", "uninstall", "pgedge"), 1)
        self.assertEqual(self.shell.count("helm", "uninstall", "cloudnative-pg"), 1)
        applied = [call for call in self.shell.commands("kubectl") if "apply" in call and "cert-manager" in " ".join(call)]
        self.assertTrue(applied)
        installs = [call for call in self.shell.commands("helm") if "--install" in call and "cloudnative-pg" in call]
        postgres_image = next(arg for arg in installs[0] if arg.startswith("config.data.POSTGRES_IMAGE_NAME="))
        self.assertIn("standard", postgres_image)
        self.assertNotIn("pgedge-unit", self.shell.clusters)

    def test_unit_derives_cluster_name(self) -> None:
        config = make_config(self.base, PGEDGE_HELM_PATH=self.chart).with_policy(cleanup=False)
        units.pgedge_helm_unit(config, runner=self.shell, sleep=no_sleep)
        names = list(self.shell.clusters)
        self.assertEqual(len(names), 1)
        self.assertTrue(names[0].startswith("cnpg-e2e-pgedge-helm-v"))

    def test_failed_init_job_fails_unit_and_cleans_up(self) -> None:
        config = make_config(self.base, PGEDGE_HELM_PATH=self.chart)
        self.shell.init_job_failed = True
        with self.assertRaises(ValidationFailure):
            units.pgedge_helm_unit(config, name="pgedge-bad", runner=self.shell, sleep=no_sleep)
        self.assertEqual(self.shell.count("helm", "test"), 0)
        self.assertEqual(self.shell.count("helm", "uninstall", "pgedge"), 1)
        self.assertNotIn("pgedge-bad", self.shell.clusters)


def test_healthy_clusters_filters_on_phase() -> None:
    items = [
        {"metadata": {"name": "a"}, "status": {"phase": HEALTHY_PHASE}},
        {"metadata": {"name": "b"}, "status": {"phase": "Setting up primary"}},
        {"metadata": {"name": "c"}},
    ]
    assert healthy_clusters(items) == ["a"]


def test_locate_chart_rejects_path_without_chart(tmp_path) -> None:
    config = make_config(tmp_path, PGEDGE_HELM_PATH=tmp_path / "empty")
    with pytest.raises(ConfigurationError):
        locate_chart(config, runner=FakeShell())


def test_locate_chart_clones_once_and_reuses(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))
    config = make_config(tmp_path, PGEDGE_HELM_BRANCH="release-1")
    shell = FakeShell()
    path = locate_chart(config, runner=shell)
    assert path == tmp_path / "pgedge-helm"
    assert (path / "Chart.yaml").is_file()
    clone = shell.commands("git")[0]
    assert clone[:6] == ["git", "clone", "--depth", "1", "--branch", "release-1"]
    assert clone[6] == "https://github.com/pgEdge/pgedge-helm.git"
    assert locate_chart(config, runner=shell) == path
    assert len(shell.commands("git")) == 1
