from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from src.common.errors import CommandError
from src.common.shell import CommandResult, Runner, run_command

logger = logging.getLogger(__name__)


class Terraform:
    """Terraform CLI bound to one module directory, workspace and data directory."""

    def __init__(
        self,
        working_dir: Path,
        *,
        workspace: str,
        data_dir: Path,
        runner: Runner = run_command,
        binary: str = "terraform",
        base_env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.working_dir = Path(working_dir)
        self.workspace = workspace
        self.data_dir = Path(data_dir)
        self._runner = runner
        self._binary = binary
        self._base_env = dict(os.environ if base_env is None else base_env)

    @property
    def var_file(self) -> Path:
        return self.data_dir / "e2e.tfvars.json"

    @property
    def state_file(self) -> Path:
        if self.workspace == "default":
            return self.working_dir / "terraform.tfstate"
        return self.working_dir / "terraform.tfstate.d" / self.workspace / "terraform.tfstate"

    def _env(self) -> Dict[str, str]:
        env = dict(self._base_env)
        env["TF_DATA_DIR"] = str(self.data_dir)
        env["TF_IN_AUTOMATION"] = "1"
        return env

    def run(self, args: List[str], *, check: bool = True) -> CommandResult:
        result = self._runner([self._binary] + args, env=self._env(), cwd=self.working_dir)
        if check:
            result.check()
        return result

    def write_vars(self, variables: Dict[str, Any]) -> Path:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.var_file.write_text(json.dumps(variables, indent=2, sort_keys=True), encoding="utf-8")
        return self.var_file

    def init(self) -> None:
        logger.info("terraform init (%s, workspace %s)", self.working_dir, self.workspace)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.run(["init", "-input=false", "-no-color"])
        self.ensure_workspace()

    def ensure_workspace(self) -> None:
        if self.workspace == "default":
            return
        # selection is recorded under TF_DATA_DIR, one per cluster
        self.run(["workspace", "select", "-or-create=true", self.workspace])

    def apply(self, variables: Dict[str, Any]) -> None:
        var_file = self.write_vars(variables)
        logger.info("terraform apply (workspace %s)", self.workspace)
        self.run(["apply", "-auto-approve", "-input=false", "-no-color", f"-var-file={var_file}"])

    def destroy(self, variables: Dict[str, Any]) -> None:
        var_file = self.write_vars(variables)
        logger.info("terraform destroy (workspace %s)", self.workspace)
        self.run(["destroy", "-auto-approve", "-input=false", "-no-color", f"-var-file={var_file}"])

    def outputs(self) -> Dict[str, Any]:
        result = self.run(["output", "-json"])
        try:
            raw = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise CommandError(result.args, result.returncode, f"invalid terraform output: {exc}") from exc
        return {name: (value or {}).get("value") for name, value in raw.items()}

    def has_state(self) -> bool:
        if not self.state_file.exists():
            return False
        try:
            state = json.loads(self.state_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return False
        return bool(state.get("resources"))


__all__ = ["Terraform"]
