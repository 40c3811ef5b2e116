"""Version matrix loading and run configuration resolution."""

from .settings import RunConfig, RunPolicy, resolve_run_config
from .versions import VersionMatrix, load_version_matrix

__all__ = ["RunConfig", "RunPolicy", "VersionMatrix", "load_version_matrix", "resolve_run_config"]
