from __future__ import annotations

import json
import logging
import signal
import sys
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

import typer

from src.common.errors import ConfigurationError, HarnessError, SuiteExecutionFailure
from src.config.settings import RunConfig, resolve_run_config
from src.lifecycle.orchestrator import cluster_name

from . import units
from .sweep import expand_configs, run_sweep

app = typer.Typer(help="Provision clusters and run CloudNativePG e2e test units against them.")

T = TypeVar("T")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    # SIGTERM unwinds through the same finally blocks as an exception
    signal.signal(signal.SIGTERM, lambda signum, frame: sys.exit(128 + signum))


def _config(
    versions: Optional[Path],
    reuse: Optional[bool],
    cleanup: Optional[bool],
    label_filter: Optional[str] = None,
) -> RunConfig:
    try:
        config = resolve_run_config(versions_path=versions)
    except ConfigurationError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    changes = {}
    if reuse is not None:
        changes["reuse"] = reuse
    if cleanup is not None:
        changes["cleanup"] = cleanup
    if label_filter is not None:
        changes["label_filter"] = label_filter
    return config.with_policy(**changes) if changes else config


def _run(description: str, fn: Callable[[], T]) -> T:
    try:
        return fn()
    except SuiteExecutionFailure as exc:
        typer.echo(f"{description} failed: {exc}", err=True)
        if exc.logs:
            typer.echo("--- operator logs ---", err=True)
            typer.echo(exc.logs, err=True)
        raise typer.Exit(code=1) from exc
    except HarnessError as exc:
        typer.echo(f"{description} failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc


VersionsOption = typer.Option(None, "--versions", help="Version matrix YAML (defaults to VERSIONS_FILE or configs/versions.yaml).")
NameOption = typer.Option(None, "--cluster-name", help="Cluster name; derived from the unit and versions when omitted.")
ReuseOption = typer.Option(None, "--reuse/--no-reuse", help="Attach to an existing cluster with the same name.")
CleanupOption = typer.Option(None, "--cleanup/--no-cleanup", help="Delete the cluster when the unit finishes.")


@app.command()
def infra(
    versions: Optional[Path] = VersionsOption,
    name: Optional[str] = NameOption,
    reuse: Optional[bool] = ReuseOption,
    cleanup: Optional[bool] = CleanupOption,
) -> None:
    """Provision a cluster and check nodes, storage class and snapshot class."""

    config = _config(versions, reuse, cleanup)
    summary = _run("infra", lambda: units.infra_unit(config, name=name))
    typer.echo(f"Infrastructure OK: {summary['nodes']} node(s), storage class {summary['storage_class']}")


@app.command()
def operator(
    versions: Optional[Path] = VersionsOption,
    name: Optional[str] = NameOption,
    reuse: Optional[bool] = ReuseOption,
    cleanup: Optional[bool] = CleanupOption,
    cert_manager: bool = typer.Option(False, "--cert-manager", help="Install cert-manager before the operator."),
) -> None:
    """Deploy the operator and check its deployment and CRDs."""

    config = _config(versions, reuse, cleanup)
    crds = _run("operator", lambda: units.operator_unit(config, name=name, with_cert_manager=cert_manager))
    typer.echo(f"Operator {config.operator.version} OK: {len(crds)} CRD(s) present")


@app.command("image-validation")
def image_validation(
    versions: Optional[Path] = VersionsOption,
    name: Optional[str] = NameOption,
    reuse: Optional[bool] = ReuseOption,
    cleanup: Optional[bool] = CleanupOption,
) -> None:
    """Check that the admission policy admits allowed images and rejects the rest."""

    config = _config(versions, reuse, cleanup)
    summary = _run("image-validation", lambda: units.image_validation_unit(config, name=name))
    typer.echo(f"Image validation OK: {summary['allowed']} admitted, {summary['blocked']} rejected")


@app.command("pgedge-helm")
def pgedge_helm(
    versions: Optional[Path] = VersionsOption,
    name: Optional[str] = NameOption,
    reuse: Optional[bool] = ReuseOption,
    cleanup: Optional[bool] = CleanupOption,
) -> None:
    """Deploy the pgEdge Helm chart on top of the operator and run its helm tests."""

    config = _config(versions, reuse, cleanup)
    healthy = _run("pgedge-helm", lambda: units.pgedge_helm_unit(config, name=name))
    typer.echo(f"pgEdge chart OK: {len(healthy)} healthy cluster(s), helm test passed")


@app.command()
def upstream(
    versions: Optional[Path] = VersionsOption,
    name: Optional[str] = NameOption,
    reuse: Optional[bool] = ReuseOption,
    cleanup: Optional[bool] = CleanupOption,
    label_filter: Optional[str] = typer.Option(None, "--label-filter", help="Ginkgo label filter ANDed with the fixed exclusions."),
) -> None:
    """Run the upstream CloudNativePG e2e suite against the operator under test."""

    config = _config(versions, reuse, cleanup, label_filter)
    result = _run("upstream", lambda: units.upstream_unit(config, name=name))
    typer.echo(f"Upstream suite OK: {result}")


@app.command()
def sweep(
    versions: Optional[Path] = VersionsOption,
    variants: List[str] = typer.Option([], "--variant", help="Image variant to include; repeat for several."),
    all_operators: bool = typer.Option(False, "--all-operators", help="Sweep every operator version in the matrix."),
    workers: int = typer.Option(1, "--workers", min=1, help="Configurations to run in parallel."),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Where to write the sweep report JSON."),
    label_filter: Optional[str] = typer.Option(None, "--label-filter", help="Ginkgo label filter ANDed with the fixed exclusions."),
) -> None:
    """Run the upstream unit for every postgres version and variant."""

    config = _config(versions, None, None, label_filter)
    try:
        configs = expand_configs(config, variants=variants or None, all_operators=all_operators)
    except ConfigurationError as exc:
        raise typer.BadParameter(str(exc)) from exc
    report = run_sweep(configs, workers=workers)
    for outcome in report.outcomes:
        status = "ok" if outcome.ok else f"FAILED ({outcome.error})"
        typer.echo(f"{outcome.label}: {status}")
    if out is not None:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
        typer.echo(f"Sweep report written to {out.resolve()}")
    typer.echo(f"{report.failures}/{len(report.outcomes)} configuration(s) failed")
    if report.failures:
        raise typer.Exit(code=1)


@app.command()
def teardown(
    unit: str = typer.Option("upstream", "--unit", help="Unit whose derived cluster name should be deleted."),
    name: Optional[str] = NameOption,
    versions: Optional[Path] = VersionsOption,
) -> None:
    """Delete a cluster for the configured backend; deleting an absent cluster is fine."""

    config = _config(versions, None, None)
    target = name or cluster_name(unit, config)
    _run("teardown", lambda: units.teardown(config, target))
    typer.echo(f"Cluster {target} removed")


if __name__ == "__main__":  # pragma: no cover
    app()
