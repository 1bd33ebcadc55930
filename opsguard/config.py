# opsguard/config.py
from __future__ import annotations
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging
import os

import yaml

log = logging.getLogger(__name__)

DEFAULT_CFG = Path(__file__).resolve().parents[1] / "configs" / "default.yaml"
CFG_ENV = "OPSGUARD_CFG"

DEFAULTS: Dict[str, Any] = {
    "logging": {"level": "INFO", "file": None},
    "feed": {"max_events": 520, "fallback_store_id": "s001", "default_source": "api"},
    "zone_map": {"path": None},
    "calibration": {
        "reference_points": None,
        "frame": {"width": 1280, "height": 720},
        "anchor_track_ids": [2, 6, 5, 1],
        "model_width_m": 13.0,
        "model_depth_m": 15.12058,
    },
    "gateway": {"host": "0.0.0.0", "port": 8080},
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def config_path() -> Path:
    return Path(os.getenv(CFG_ENV, str(DEFAULT_CFG)))


def load_config(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    YAML config merged over DEFAULTS. A missing file means defaults only; a file that
    is not a YAML mapping raises ValueError.
    """
    p = Path(path) if path else config_path()
    if not p.exists():
        log.info("Config %s not found; using built-in defaults", p)
        return deepcopy(DEFAULTS)
    with open(p, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f) or {}
    if not isinstance(doc, dict):
        raise ValueError(f"{p}: top-level YAML must be a mapping")
    return _merge(DEFAULTS, doc)
