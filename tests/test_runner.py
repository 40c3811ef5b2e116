import io
import json
import sys
import tempfile
import unittest
from pathlib import Path

import pytest

from fakes import FakeShell, make_config, no_sleep
from src.common.errors import ClusterUnavailableError, ConfigurationError, SuiteExecutionFailure, SuiteTimeoutError
from src.providers.base import ClusterSpec
from src.providers.kind import KindProvider
from src.suite.results import TestResult
from src.suite.runner import SuiteRun, SuiteRunner, require_success, run_and_stream


class SuiteRunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.base = Path(self.tmpdir.name)
        self.suite = self.base / "cloudnative-pg"
        (self.suite / "tests" / "e2e").mkdir(parents=True)
        self.config = make_config(self.base, SUITE_PATH=self.suite, LABEL_FILTER="smoke", SUITE_WORKERS=4)
        self.shell = FakeShell()
        self.provider = KindProvider(ClusterSpec("suite-test", "kind", "1.33"), self.config, runner=self.shell, sleep=no_sleep)
        self.provider.create()
        self.runner = SuiteRunner(self.provider.connection_handle(), self.config, runner=self.shell, out=io.StringIO())

    def tearDown(self) -> None:
        self.provider.delete()
        self.tmpdir.cleanup()

    def test_command_flags(self) -> None:
        report = self.base / "r.json"
        cmd = self.runner.command(report)
        self.assertEqual(cmd[:2], ["ginkgo", "run"])
        self.assertIn("--label-filter=smoke && !backup-restore && !snapshot && !postgres-major-upgrade && !plugin && !observability", cmd)
        self.assertIn("--skip=Image.Catalogs", cmd)
        self.assertIn("--nodes=4", cmd)
        self.assertIn("--timeout=10800s", cmd)
        self.assertIn(f"--json-report={report}", cmd)
        self.assertEqual(cmd[-1], "./...")

    def test_environment_injection(self) -> None:
        env = self.runner.environment(base={"PATH": "/usr/bin"})
        self.assertEqual(env["PATH"], "/usr/bin")
        self.assertEqual(env["KUBECONFIG"], str(self.provider.kubeconfig_path))
        self.assertEqual(env["POSTGRES_IMG"], self.config.postgres_image)
        self.assertEqual(env["POSTGRES_IMG_REPOSITORY"], "ghcr.io/pgedge/pgedge-postgres")
        self.assertEqual(env["CONTROLLER_IMG"], self.config.operator.operator_image)
        self.assertEqual(env["TEST_CLOUD_VENDOR"], "local")
        self.assertEqual(env["E2E_CSI_STORAGE_CLASS"], "csi-hostpath-sc")
        self.assertEqual(env["E2E_DEFAULT_VOLUMESNAPSHOT_CLASS"], "csi-hostpath-snapclass")
        self.assertEqual(env["TEST_UPGRADE_TO_V1"], "false")
        self.assertEqual(env["E2E_PRE_ROLLING_UPDATE"], "false")
        self.assertEqual(env["OPERATOR_NAMESPACE"], "cnpg-system")

    def test_suite_path_must_contain_e2e_tree(self) -> None:
        config = make_config(self.base, SUITE_PATH=self.base / "missing")
        runner = SuiteRunner(self.provider.connection_handle(), config, runner=self.shell)
        with self.assertRaises(ConfigurationError):
            runner.locate_suite()

    def test_clone_when_no_suite_path(self) -> None:
        config = make_config(self.base, POSTGRES_VARIANT="minimal")
        runner = SuiteRunner(self.provider.connection_handle(), config, runner=self.shell)
        self.assertTrue(runner.clone_dir().name.endswith("-minimal"))
        runner.clone_dir = lambda: self.base / "clone"
        path, cloned = runner.locate_suite()
        self.assertTrue(cloned)
        clone = self.shell.commands("git")[0]
        self.assertEqual(clone[:6], ["git", "clone", "--depth", "1", "--branch", config.operator.git_tag])
        path_again, cloned_again = runner.locate_suite()
        self.assertEqual(path_again, path)
        self.assertFalse(cloned_again)

    def test_run_streams_and_parses(self) -> None:
        script = (
            "import json, sys\n"
            "print('Ran 2 specs')\n"
            "path = [a.split('=', 1)[1] for a in sys.argv if a.startswith('--json-report=')][0]\n"
            "json.dump([{'SpecReports': [{'LeafNodeType': 'It', 'State': 'passed'}]*2}], open(path, 'w'))\n"
        )
        fake_ginkgo = self.base / "fake_ginkgo.py"
        fake_ginkgo.write_text(script, encoding="utf-8")
        out = io.StringIO()
        runner = SuiteRunner(self.provider.connection_handle(), self.config, runner=self.shell, binary=sys.executable, out=out)
        original = runner.command
        runner.command = lambda report, junit=None: [sys.executable, str(fake_ginkgo)] + original(report, junit)[2:]
        run = runner.run(run_id="unit")
        self.assertEqual(run.exit_code, 0)
        self.assertEqual(run.result, TestResult(passed=2))
        self.assertIn("Ran 2 specs", out.getvalue())
        self.assertIn("Ran 2 specs", run.log_path.read_text(encoding="utf-8"))
        self.assertEqual(run.report_path.name, "unit.json")


    def test_missing_binary_is_execution_failure(self) -> None:
        runner = SuiteRunner(
            self.provider.connection_handle(), self.config, runner=self.shell, binary="ginkgo-not-installed", out=io.StringIO()
        )
        with self.assertRaises(SuiteExecutionFailure) as ctx:
            runner.run(run_id="missing")
        self.assertNotIsInstance(ctx.exception, SuiteTimeoutError)
        self.assertEqual(ctx.exception.exit_code, 127)
        self.assertEqual(ctx.exception.result, TestResult())
        log = (self.config.results_dir / "missing.log").resolve().read_text(encoding="utf-8")
        self.assertIn("failed to start ginkgo-not-installed", log)

    def test_environment_requires_ready_cluster(self) -> None:
        self.provider.delete()
        with self.assertRaises(ClusterUnavailableError):
            self.runner.environment(base={})

def test_run_and_stream_timeout(tmp_path) -> None:
    code, timed_out = run_and_stream(
        [sys.executable, "-c", "import time; print('start', flush=True); time.sleep(30)"],
        cwd=tmp_path,
        env={"PATH": ""},
        log_path=tmp_path / "out.log",
        timeout=0.5,
        out=io.StringIO(),
    )
    assert timed_out
    assert code == 124
    assert "start" in (tmp_path / "out.log").read_text(encoding="utf-8")


def test_require_success() -> None:
    ok = SuiteRun("id", TestResult(passed=3), 0, Path("x.log"), Path("x.json"), 1.0)
    assert require_success(ok) == TestResult(passed=3)
    failed = SuiteRun("id", TestResult(passed=3, failed=1), 1, Path("x.log"), Path("x.json"), 1.0)
    with pytest.raises(SuiteExecutionFailure) as excinfo:
        require_success(failed, fetch_logs=lambda: "operator says no")
    assert excinfo.value.logs == "operator says no"
    assert excinfo.value.result.failed == 1
    empty = SuiteRun("id", TestResult(), 0, Path("x.log"), Path("x.json"), 1.0)
    with pytest.raises(SuiteExecutionFailure):
        require_success(empty)


def test_timeout_error_is_execution_failure() -> None:
    assert issubclass(SuiteTimeoutError, SuiteExecutionFailure)


def test_require_success_names_failed_specs(tmp_path) -> None:
    report = tmp_path / "run.json"
    report.write_text(
        json.dumps(
            [
                {
                    "SpecReports": [
                        {"LeafNodeType": "It", "LeafNodeText": "creates a cluster", "State": "passed"},
                        {
                            "LeafNodeType": "It",
                            "ContainerHierarchyTexts": ["Switchover"],
                            "LeafNodeText": "promotes a replica",
                            "State": "failed",
                        },
                    ]
                }
            ]
        ),
        encoding="utf-8",
    )
    run = SuiteRun("run", TestResult(passed=1, failed=1), 1, tmp_path / "run.log", report, 2.0)
    with pytest.raises(SuiteExecutionFailure) as excinfo:
        require_success(run)
    assert "failed specs: Switchover promotes a replica" in str(excinfo.value)
