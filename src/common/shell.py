from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence, Union

from .errors import CommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    args: Sequence[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> "CommandResult":
        if not self.ok:
            raise CommandError(self.args, self.returncode, self.stderr, self.stdout)
        return self


Runner = Callable[..., CommandResult]


def run_command(
    args: Sequence[str],
    *,
    input_data: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[Union[str, Path]] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run an external binary and capture its output.

    A missing executable is reported as exit code 127 instead of raising, so
    callers can treat "not installed" like any other failed invocation.
    """

    cmd = [str(arg) for arg in args]
    logger.debug("$ %s", " ".join(cmd))
    try:
        completed = subprocess.run(
            cmd,
            input=input_data.encode("utf-8") if input_data is not None else None,
            capture_output=True,
            env=dict(env) if env is not None else None,
            cwd=str(cwd) if cwd is not None else None,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError:
        return CommandResult(cmd, 127, "", f"{cmd[0]} executable not found")
    except subprocess.TimeoutExpired as exc:
        stderr = (exc.stderr or b"").decode("utf-8", errors="ignore")
        return CommandResult(cmd, 124, "", stderr or f"timed out after {timeout}s")
    return CommandResult(
        cmd,
        completed.returncode,
        (completed.stdout or b"").decode("utf-8", errors="ignore"),
        (completed.stderr or b"").decode("utf-8", errors="ignore"),
    )


__all__ = ["CommandResult", "Runner", "run_command"]
