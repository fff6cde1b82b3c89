"""
voxtally/config.py
JSON config with defaults. Persists to voxtally_config.json in the
project root; missing keys fall back to DEFAULT_CONFIG.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "voxtally_config.json"

DEFAULT_CONFIG = {
    "db_path": "voxtally.db",
    "default_region": "PK",
    "timezone": "Asia/Karachi",
    "bridge_host": "http://localhost:3001",
    "bridge_timeout_sec": 10,
    "host": "0.0.0.0",
    "port": 3000,
    "cors_origins": ["*"],
    # /messages also records eligible last messages (idempotent by message id)
    "messages_catch_up": False,
}


def _config_path(project_root: Optional[Path] = None) -> Path:
    root = project_root or Path.cwd()
    return root / CONFIG_FILENAME


def load_config(project_root: Optional[Path] = None) -> Dict[str, Any]:
    """Load config from voxtally_config.json. Returns defaults if missing."""
    path = _config_path(project_root)
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return {**DEFAULT_CONFIG, **data}
            logger.warning(f"Config {path} is not a JSON object, using defaults")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Config load failed: {e}")
    return dict(DEFAULT_CONFIG)


def save_config(config: Dict[str, Any], project_root: Optional[Path] = None) -> Path:
    """Persist config to voxtally_config.json."""
    path = _config_path(project_root)
    path.write_text(json.dumps(config, indent=2), encoding="utf-8")
    return path


def ensure_config(project_root: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load config and apply environment overrides.
    PORT overrides "port" (same variable the hosting platforms set).
    """
    config = load_config(project_root)
    port = os.environ.get("PORT")
    if port:
        try:
            config["port"] = int(port)
        except ValueError:
            logger.warning(f"Ignoring non-numeric PORT={port!r}")
    return config
