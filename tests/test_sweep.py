import tempfile

from fakes import make_config
from src.common.errors import ProvisioningError
from src.scenarios.sweep import expand_configs, run_sweep
from src.suite.results import TestResult


def test_expand_configs_for_selected_operator() -> None:
    with tempfile.TemporaryDirectory() as tmp_dir:
        config = make_config(tmp_dir)
        configs = expand_configs(config, variants=["standard", "minimal"])
    pairs = {(c.postgres_version, c.postgres_variant) for c in configs}
    assert len(configs) == len(config.operator.postgres_versions) * 2
    assert ("16", "minimal") in pairs
    assert all(c.operator.version == config.operator.version for c in configs)


def test_expand_configs_all_operators() -> None:
    with tempfile.TemporaryDirectory() as tmp_dir:
        config = make_config(tmp_dir)
        configs = expand_configs(config, all_operators=True)
    expected = sum(len(entry.postgres_versions) for entry in config.matrix.operators)
    assert len(configs) == expected
    assert {c.operator.version for c in configs} == {e.version for e in config.matrix.operators}


def test_run_sweep_counts_failures_and_continues() -> None:
    seen = []

    def unit(cfg, **_kwargs):
        seen.append(cfg.postgres_version)
        if cfg.postgres_version == "17":
            raise ProvisioningError("kind create failed")
        return TestResult(passed=10)

    with tempfile.TemporaryDirectory() as tmp_dir:
        configs = expand_configs(make_config(tmp_dir))
        report = run_sweep(configs, unit=unit, workers=3)
    assert sorted(seen) == sorted(c.postgres_version for c in configs)
    assert report.failures == 1
    failed = [o for o in report.outcomes if not o.ok]
    assert "kind create failed" in failed[0].error
    assert report.to_dict()["total"] == len(configs)


def test_run_sweep_records_unexpected_errors() -> None:
    def unit(cfg, **_kwargs):
        if cfg.postgres_version == "16":
            raise FileNotFoundError("ginkgo")
        return TestResult(passed=1)

    with tempfile.TemporaryDirectory() as tmp_dir:
        configs = expand_configs(make_config(tmp_dir))
        report = run_sweep(configs, unit=unit, workers=2)
    assert report.failures == 1
    assert len(report.outcomes) == len(configs)
    failed = [o for o in report.outcomes if not o.ok]
    assert failed[0].error.startswith("FileNotFoundError")
    assert "pg 16" in failed[0].label
