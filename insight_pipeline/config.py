"""
Pipeline configuration
-----------------------
Config is plain YAML loaded into a dict; every component reads its own
section with `.get(key, default)` so a partial file is always valid.

Environment overrides (a `.env` file is honoured):
    INSIGHT_PIPELINE_STORE   -> store.dir
"""
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

DEFAULT_CONFIG_PATH = "config/config.yaml"

DEFAULTS: dict[str, Any] = {
    "store": {"dir": "data/store"},
    "chunking": {"chunk_size": 300, "overlap_size": 20},
    "verification": {"minimum_quota": 5},
    "dedup": {
        "identity_fields": {
            "UserJourney": ["persona", "workflow_type", "solution"],
            "TechnicalInsight": ["title", "component"],
            "StrategicTheme": ["category", "title"],
        }
    },
    "extractor": {
        "command": None,
        "url": None,
        "timeout_seconds": 120.0,
        "max_attempts": 2,
    },
    "logging": {
        "level": "INFO",
        "file": "logs/pipeline.log",
        "rotation": "10 MB",
        "retention": "7 days",
        "json": False,
    },
}


def _merge(base: dict, override: dict) -> dict:
    out = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_config(path: Optional[str | Path] = None) -> dict:
    """
    Load the YAML config and layer it over DEFAULTS.

    A missing file is not an error when no explicit path was given -
    the defaults describe a working pipeline.
    """
    load_dotenv()

    cfg_path = Path(path or DEFAULT_CONFIG_PATH)
    raw: dict = {}
    if cfg_path.exists():
        with open(cfg_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    elif path is not None:
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    cfg = _merge(DEFAULTS, raw)

    store_override = os.getenv("INSIGHT_PIPELINE_STORE")
    if store_override:
        cfg["store"]["dir"] = store_override
    return cfg
