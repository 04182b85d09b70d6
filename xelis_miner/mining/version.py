from __future__ import annotations

import os
import pathlib
import subprocess
from importlib import metadata
from typing import Optional

__version__ = "0.2.0"

DIST_NAME = "xelis-stratum-miner"
AGENT_NAME = "xelis-py-miner"


def _installed_version() -> Optional[str]:
    try:
        return metadata.version(DIST_NAME)
    except metadata.PackageNotFoundError:
        return None


def _git_describe(checkout: Optional[pathlib.Path] = None) -> Optional[str]:
    """`git describe --tags --dirty --always` of a source checkout, else None."""
    root = checkout or pathlib.Path(__file__).resolve().parents[2]
    if not (root / ".git").exists():
        return None
    try:
        out = subprocess.check_output(
            ["git", "-C", str(root), "describe", "--tags", "--dirty", "--always"],
            stderr=subprocess.DEVNULL,
        )
    except (OSError, subprocess.CalledProcessError):
        return None
    return out.decode("utf-8", "replace").strip() or None


def get_version() -> str:
    """
    Version shown by `--version` and the startup banner.

    Order: XELIS_MINER_VERSION, `git describe` of a source checkout, the
    installed distribution's metadata, then `__version__`.
    """
    return (
        os.getenv("XELIS_MINER_VERSION")
        or _git_describe()
        or _installed_version()
        or f"v{__version__}"
    )


def user_agent() -> str:
    """Client identifier sent in mining.subscribe."""
    return f"{AGENT_NAME}/{__version__}"


__all__ = ["__version__", "get_version", "user_agent"]
