#!/usr/bin/env python3
"""
Delete leftover kind clusters created by the e2e harness.

Usage examples:

  # Remove every cluster whose name starts with the default prefix.
  python scripts/cleanup_clusters.py

  # Preview what would be removed for a custom prefix.
  python scripts/cleanup_clusters.py --prefix cnpg-e2e-upstream --dry-run

"""

from __future__ import annotations

import argparse
import logging
import sys
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from src.common.shell import Runner, run_command  # noqa: E402

DEFAULT_PREFIX = "cnpg-e2e-"


def list_clusters(runner: Runner = run_command) -> List[str]:
    result = runner(["kind", "get", "clusters"]).check()
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def cleanup(
    prefix: str,
    *,
    dry_run: bool = False,
    runner: Runner = run_command,
    kubeconfig_dir: Optional[Path] = None,
) -> List[str]:
    kubeconfig_dir = kubeconfig_dir or Path(tempfile.gettempdir())
    removed: List[str] = []
    for name in list_clusters(runner):
        if not name.startswith(prefix):
            continue
        if dry_run:
            logging.info("Would delete kind cluster %s", name)
            removed.append(name)
            continue
        logging.info("Deleting kind cluster %s", name)
        result = runner(["kind", "delete", "cluster", "--name", name])
        if not result.ok:
            logging.warning("Failed to delete %s: %s", name, result.stderr.strip())
            continue
        (kubeconfig_dir / f"{name}.kubeconfig").unlink(missing_ok=True)
        removed.append(name)
    return removed


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--prefix", default=DEFAULT_PREFIX, help="Only delete clusters whose name starts with this prefix.")
    parser.add_argument("--dry-run", action="store_true", help="List matching clusters without deleting them.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    args = parse_args(argv)
    removed = cleanup(args.prefix, dry_run=args.dry_run)
    verb = "Matched" if args.dry_run else "Removed"
    print(f"{verb} {len(removed)} cluster(s)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
