"""Config file discovery and loading.

Walk-up finder locates docrepo.toml, similar to how git finds .git/.
Supports the DOCREPO_CONFIG env var and the --config CLI flag.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any

from docrepo.config.models import DocRepoConfig

CONFIG_FILENAME = "docrepo.toml"
CONFIG_ENV_VAR = "DOCREPO_CONFIG"


def find_config(start: Path | None = None) -> Path | None:
    """Walk up from *start* (default: cwd) looking for docrepo.toml.

    DOCREPO_CONFIG, when set, wins over discovery. Returns None if nothing
    is found (or the env var names a missing file).
    """
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        p = Path(env_path)
        return p if p.is_file() else None

    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def load_config(path: Path | None = None, cwd: Path | None = None) -> DocRepoConfig:
    """Load and validate config from a TOML file.

    Returns the default config if no file is found.
    """
    if path is None:
        path = find_config(cwd)
    if path is None:
        return DocRepoConfig()

    data: dict[str, Any] = tomllib.loads(path.read_text(encoding="utf-8"))
    return DocRepoConfig.model_validate(data)
