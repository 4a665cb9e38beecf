"""
Memingest Platform Paths
------------------------
Cross-platform data and config directory resolution via platformdirs.

Environment overrides win over platform defaults so batch jobs can be
pointed at an explicit volume (containers, CI, cron hosts).
"""

import os
import logging
from pathlib import Path

import platformdirs

logger = logging.getLogger("Memingest.Platform")

_APP_NAME = "memingest"
_APP_AUTHOR = "Memingest"


def _resolve_dir(env_var: str, platformdirs_fn: str) -> Path:
    """
    Resolve a directory path with priority:
    1. Environment variable override
    2. platformdirs default for the current OS
    """
    env_val = os.environ.get(env_var)
    if env_val:
        return Path(env_val)
    fn = getattr(platformdirs, platformdirs_fn)
    return Path(fn(_APP_NAME, _APP_AUTHOR))


def get_data_dir() -> Path:
    """
    Get the Memingest data directory.

    Priority: MEMINGEST_DATA_DIR env var > platformdirs.
    Contains: qdrant/, memingest.db, .memingest.lock
    """
    return _resolve_dir("MEMINGEST_DATA_DIR", "user_data_dir")


def get_config_dir() -> Path:
    """Get the Memingest configuration directory (holds config.yaml)."""
    return _resolve_dir("MEMINGEST_CONFIG_DIR", "user_config_dir")
