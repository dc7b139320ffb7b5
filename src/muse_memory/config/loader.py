from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Dict


DEFAULT_CONFIG_PATH = Path("config.toml")
CONFIG_PATH_ENV = "MUSE_CONFIG"
ROOT_TABLE = "muse"


def load_raw_config(path: str | Path | None = None) -> Dict[str, Any]:
    """
    Parse the TOML config file.

    The path is ``path``, else ``$MUSE_CONFIG``, else ``config.toml`` in the
    working directory. A missing file yields ``{}`` and every setting falls
    back to its environment variable.
    """
    if path is None:
        path = os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
    target = Path(path)
    if not target.is_file():
        return {}

    with target.open("rb") as handle:
        return tomllib.load(handle)


def section(config: Dict[str, Any] | None, name: str) -> Dict[str, Any]:
    """Return the ``[muse.<name>]`` table, or ``{}`` when absent."""
    return (config or {}).get(ROOT_TABLE, {}).get(name, {})


__all__ = ["load_raw_config", "section", "DEFAULT_CONFIG_PATH", "CONFIG_PATH_ENV"]
