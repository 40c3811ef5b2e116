from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from src.common.shell import CommandResult, Runner, run_command

logger = logging.getLogger(__name__)


class Helm:
    def __init__(self, kubeconfig: Union[str, Path], *, runner: Runner = run_command, binary: str = "helm") -> None:
        self.kubeconfig = str(kubeconfig)
        self._runner = runner
        self._binary = binary

    def run(self, args: List[str], *, check: bool = True) -> CommandResult:
        result = self._runner([self._binary, "--kubeconfig", self.kubeconfig] + args)
        if check:
            result.check()
        return result

    def upgrade_install(
        self,
        release: str,
        chart: str,
        *,
        namespace: str,
        values: Optional[Dict[str, str]] = None,
        version: Optional[str] = None,
        values_files: Sequence[str] = (),
        timeout: str = "5m",
        wait: bool = True,
    ) -> CommandResult:
        args = ["upgrade", "--install", release, chart, "--namespace", namespace, "--create-namespace"]
        if wait:
            args.append("--wait")
        args += ["--timeout", timeout]
        for path in values_files:
            args += ["-f", str(path)]
        if version:
            args += ["--version", version]
        for key, value in (values or {}).items():
            args += ["--set", f"{key}={value}"]
        logger.info("helm upgrade --install %s %s (namespace %s)", release, chart, namespace)
        return self.run(args)

    def uninstall(self, release: str, *, namespace: str) -> CommandResult:
        logger.info("helm uninstall %s (namespace %s)", release, namespace)
        return self.run(["uninstall", release, "--namespace", namespace, "--wait"])

    def test(self, release: str, *, namespace: str, timeout: str = "5m") -> CommandResult:
        logger.info("helm test %s (namespace %s)", release, namespace)
        return self.run(["test", release, "--namespace", namespace, "--timeout", timeout, "--logs"])

    def release_exists(self, release: str, *, namespace: str) -> bool:
        return self.run(["status", release, "--namespace", namespace], check=False).ok


__all__ = ["Helm"]
