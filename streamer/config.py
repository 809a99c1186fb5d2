from __future__ import annotations

import copy
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG_PATH = "config/params.yaml"

# Used whole when the config file is missing, and as the base for partial files.
DEFAULTS: Dict[str, Dict[str, Any]] = {
    "view": {"lat": 48.14738, "lon": 11.57403, "radius": 500.0, "bearing": 90.0, "tilt": 45.0},
    "streaming": {
        "reference_zoom": 15,
        "ring_radius": 10,
        "scene_radius": 5000.0,
        "high_detail_radius": 1000.0,
        "base_lod": 1,
        "high_lod": 3,
        "tick_interval_s": 1.0,
    },
    "tiles": {"root": "data/tiles", "suffix": ".glb", "timeout_s": 10.0, "max_workers": 8, "validate": True},
    "logging": {"level": "INFO", "status_file": "logs/stream_status.jsonl"},
}


@dataclass(slots=True)
class ViewConfig:
    lat: float = 48.14738
    lon: float = 11.57403
    radius: float = 500.0
    bearing: float = 90.0
    tilt: float = 45.0


@dataclass(slots=True)
class StreamingConfig:
    reference_zoom: int = 15
    ring_radius: int = 10
    scene_radius: float = 5000.0
    high_detail_radius: float = 1000.0
    base_lod: int = 1
    high_lod: int = 3
    tick_interval_s: float = 1.0


@dataclass(slots=True)
class StreamerConfig:
    """
    Typed view of config/params.yaml.

    `tiles` and `logging` stay plain dicts; they are handed to make_loader()
    and setup_logging() as-is.
    """
    view: ViewConfig = field(default_factory=ViewConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    tiles: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULTS["tiles"]))
    logging: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULTS["logging"]))

    def __post_init__(self) -> None:
        s = self.streaming
        if s.reference_zoom < 0:
            raise ValueError("streaming.reference_zoom must be >= 0")
        if s.ring_radius < 0:
            raise ValueError("streaming.ring_radius must be >= 0")
        if s.base_lod < 1 or s.high_lod <= s.base_lod:
            raise ValueError("streaming LODs must satisfy 1 <= base_lod < high_lod")
        if s.high_detail_radius < 0 or s.scene_radius <= 0:
            raise ValueError("streaming radii must be positive")
        if s.tick_interval_s <= 0:
            raise ValueError("streaming.tick_interval_s must be > 0")
        if self.view.radius <= 0:
            raise ValueError("view.radius must be > 0")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _merge(base: Dict, override: Optional[Dict]) -> Dict:
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def _load_yaml(path: str) -> Dict:
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def load_config(path: str = DEFAULT_CONFIG_PATH) -> StreamerConfig:
    """Load YAML config over the defaults; a missing file means all defaults."""
    raw = _load_yaml(path) if Path(path).exists() else {}
    if not isinstance(raw, dict):
        raise ValueError(f"config root must be a mapping: {path}")
    P = _merge(DEFAULTS, raw)
    try:
        return StreamerConfig(
            view=ViewConfig(**P["view"]),
            streaming=StreamingConfig(**P["streaming"]),
            tiles=P["tiles"],
            logging=P["logging"],
        )
    except TypeError as e:
        # unknown key in view/streaming
        raise ValueError(f"invalid config {path}: {e}") from None
