"""Scan configuration: defaults plus an optional YAML override file."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanConfig:
    timeline_capacity: int = 1024
    read_timeout: float = 0.01
    poll_interval: float = 0.001
    read_chunk: int = 4096
    max_arg_length: int = 4096
    max_args: int = 256
    memory_ratio_threshold: float = 50000.0
    passthrough: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


FALLBACK_DEFAULTS = ScanConfig().to_dict()


def load_config(config_path: Optional[Union[str, Path]] = None) -> ScanConfig:
    """Load the `runescan:` section of a YAML file, filling gaps from defaults."""
    if not config_path:
        return ScanConfig()

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    logger.info("Loading config from: %s", config_file)
    with open(config_file, "r") as f:
        user_config = yaml.safe_load(f)

    if not user_config or "runescan" not in user_config:
        logger.warning("Config file has no 'runescan' section. Using defaults.")
        return ScanConfig()

    section = user_config["runescan"] or {}
    known = {f.name for f in fields(ScanConfig)}
    for key in section:
        if key not in known:
            logger.warning("Ignoring unknown config key: %s", key)

    merged = {key: section.get(key, default) for key, default in FALLBACK_DEFAULTS.items()}
    return ScanConfig(**merged)
