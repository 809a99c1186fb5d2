from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional
from datetime import datetime, timezone
import math


IsoTime = str


def now_iso() -> IsoTime:
    """UTC timestamp in RFC3339/ISO-8601 with 'Z' suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class GeoPoint:
    """
    Coordinate pair with latitude and longitude in degrees.

    Not normalized: values outside [-90, 90] / [-180, 180] are kept as given.
    """
    lat: float
    lon: float

    def __str__(self) -> str:
        return f"{self.lat}, {self.lon}"


@dataclass(frozen=True, slots=True)
class PlanarPoint:
    """
    Coordinate pair with x and z in meters, relative to a projection origin.

    Only meaningful together with the origin of the projection that produced it.
    """
    x: float
    z: float

    def __str__(self) -> str:
        return f"{self.x}, {self.z}"

    def distance_to(self, other: "PlanarPoint") -> float:
        return math.hypot(other.x - self.x, other.z - self.z)


@dataclass(slots=True)
class StreamStatus:
    """
    Per-tick status emitted by the tile streamer.

    Attributes:
        ts: ISO-8601 (UTC) time of the tick.
        center_tile: "{zoom}/{x}/{y}" of the tile under the camera (None if off-pyramid).
        center_tile_loading: no LOD of the center tile is resolved yet.
        center_tile_missing: the center tile fetch failed and no LOD of it is loaded.
        pending, loaded, failed: cache entry counts after the tick.
        issued: loads newly issued during the tick.
    """
    ts: IsoTime
    center_tile: Optional[str]
    center_tile_loading: bool
    center_tile_missing: bool
    pending: int = 0
    loaded: int = 0
    failed: int = 0
    issued: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
