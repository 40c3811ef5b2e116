from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .errors import CommandError
from .shell import CommandResult, Runner, run_command

logger = logging.getLogger(__name__)


class Kubectl:
    """Thin kubectl wrapper bound to one kubeconfig (and optionally a namespace)."""

    def __init__(
        self,
        kubeconfig: Union[str, Path],
        *,
        namespace: Optional[str] = None,
        runner: Runner = run_command,
        binary: str = "kubectl",
    ) -> None:
        self.kubeconfig = str(kubeconfig)
        self.namespace = namespace
        self._runner = runner
        self._binary = binary

    def with_namespace(self, namespace: Optional[str]) -> "Kubectl":
        return Kubectl(self.kubeconfig, namespace=namespace, runner=self._runner, binary=self._binary)

    def run(
        self,
        args: Sequence[str],
        *,
        input_data: Optional[str] = None,
        namespace: Optional[str] = None,
        check: bool = True,
    ) -> CommandResult:
        cmd: List[str] = [self._binary, "--kubeconfig", self.kubeconfig]
        ns = namespace if namespace is not None else self.namespace
        if ns:
            cmd += ["-n", ns]
        cmd += list(args)
        result = self._runner(cmd, input_data=input_data)
        if check:
            result.check()
        return result

    def apply_url(self, url: str) -> None:
        logger.info("Applying %s", url)
        self.run(["apply", "-f", url])

    def apply_manifest(self, manifest: str, *, namespace: Optional[str] = None, check: bool = True) -> CommandResult:
        return self.run(["apply", "-f", "-"], input_data=manifest, namespace=namespace, check=check)

    def apply_file(self, path: Union[str, Path]) -> CommandResult:
        return self.run(["apply", "-f", str(path)])

    def create_namespace(self, name: str) -> None:
        rendered = self.run(
            ["create", "namespace", name, "--dry-run=client", "-o", "yaml"], namespace=""
        )
        self.apply_manifest(rendered.stdout, namespace="")

    def delete(self, kind: str, name: str, *, namespace: Optional[str] = None, wait: bool = True) -> CommandResult:
        args = ["delete", kind, name, "--ignore-not-found"]
        if not wait:
            args.append("--wait=false")
        return self.run(args, namespace=namespace, check=False)

    def get_json(
        self,
        kind: str,
        name: Optional[str] = None,
        *,
        selector: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> Dict[str, Any]:
        args = ["get", kind]
        if name:
            args.append(name)
        if selector:
            args += ["-l", selector]
        args += ["-o", "json"]
        result = self.run(args, namespace=namespace)
        try:
            return json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise CommandError(result.args, result.returncode, f"invalid JSON output: {exc}") from exc

    def exists(self, kind: str, name: str, *, namespace: Optional[str] = None) -> bool:
        return self.run(["get", kind, name], namespace=namespace, check=False).ok

    def list_items(self, kind: str, *, selector: Optional[str] = None, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        return list(self.get_json(kind, selector=selector, namespace=namespace).get("items") or [])

    def logs(self, selector: str, *, namespace: Optional[str] = None, tail: int = 200) -> str:
        result = self.run(
            ["logs", "-l", selector, f"--tail={tail}", "--all-containers=true"],
            namespace=namespace,
            check=False,
        )
        return result.stdout if result.ok else result.stderr


def node_is_ready(node: Dict[str, Any]) -> bool:
    for condition in node.get("status", {}).get("conditions") or []:
        if condition.get("type") == "Ready":
            return condition.get("status") == "True"
    return False


def pod_is_running(pod: Dict[str, Any]) -> bool:
    return pod.get("status", {}).get("phase") == "Running"


__all__ = ["Kubectl", "node_is_ready", "pod_is_running"]
