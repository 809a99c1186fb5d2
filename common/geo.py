from __future__ import annotations

from typing import Tuple
import math
import numpy as np

from common.types import GeoPoint, PlanarPoint


# --- spherical globe used for scene placement ---
GLOBE_RADIUS = 6371000.0          # meters

# |div| at or below this falls back to the origin longitude
_LON_SINGULARITY_EPS = 1e-5


# -------------------------
# Slippy-map tile edges
# -------------------------
def tile2lon(x: float, zoom: int) -> float:
    """Western edge longitude (deg) of tile column `x` at `zoom`."""
    return x / math.pow(2.0, zoom) * 360.0 - 180.0


def tile2lat(y: float, zoom: int) -> float:
    """Northern edge latitude (deg) of tile row `y` at `zoom` (y grows southward)."""
    n = math.pi - (2.0 * math.pi * y) / math.pow(2.0, zoom)
    return math.degrees(math.atan(math.sinh(n)))


# -------------------------
# Orthographic azimuthal projection
# -------------------------
class OrthographicProjection:
    """
    Projects lat/lon onto a plane touching the globe at `origin`, in meters.

    x grows eastward, z grows northward. Accurate enough as long as the data
    covers only a small part of the globe. PlanarPoints are only meaningful
    relative to the origin that produced them.
    """

    def __init__(self, origin: GeoPoint):
        self.origin = origin
        self._lat0 = math.radians(origin.lat)
        self._lon0 = math.radians(origin.lon)

    def __repr__(self) -> str:
        return f"OrthographicProjection(origin={self.origin!r})"

    def to_planar(self, point: GeoPoint) -> PlanarPoint:
        lat = math.radians(point.lat)
        dlon = math.radians(point.lon) - self._lon0

        x = GLOBE_RADIUS * math.cos(lat) * math.sin(dlon)
        z = GLOBE_RADIUS * (
            math.cos(self._lat0) * math.sin(lat)
            - math.sin(self._lat0) * math.cos(lat) * math.cos(dlon)
        )
        return PlanarPoint(x, z)

    def to_geo(self, pos: PlanarPoint) -> GeoPoint:
        rho = math.hypot(pos.x, pos.z)
        if rho == 0:
            return self.origin

        # beyond the limb of the globe: clamp onto it
        c = math.asin(min(rho / GLOBE_RADIUS, 1.0))
        sin_c, cos_c = math.sin(c), math.cos(c)
        sin_lat0, cos_lat0 = math.sin(self._lat0), math.cos(self._lat0)

        lat = math.asin(cos_c * sin_lat0 + (pos.z * sin_c * cos_lat0) / rho)

        div = rho * cos_lat0 * cos_c - pos.z * sin_lat0 * sin_c
        if abs(div) > _LON_SINGULARITY_EPS:
            lon = self._lon0 + math.atan2(pos.x * sin_c, div)
        else:
            lon = self._lon0

        return GeoPoint(math.degrees(lat), math.degrees(lon))


def to_planar(origin: GeoPoint, point: GeoPoint) -> PlanarPoint:
    """Functional form of OrthographicProjection(origin).to_planar(point)."""
    return OrthographicProjection(origin).to_planar(point)


def to_geo(origin: GeoPoint, pos: PlanarPoint) -> GeoPoint:
    """Functional form of OrthographicProjection(origin).to_geo(pos)."""
    return OrthographicProjection(origin).to_geo(pos)


# -------------------------
# Planar distance helpers
# -------------------------
def rect_corners(a: PlanarPoint, b: PlanarPoint) -> np.ndarray:
    """4x2 array of the corners of the axis-aligned rectangle spanned by a and b."""
    return np.array(
        [[a.x, a.z], [a.x, b.z], [b.x, a.z], [b.x, b.z]],
        dtype=float,
    )


def distance_to_rect(point: PlanarPoint, a: PlanarPoint, b: PlanarPoint) -> float:
    """
    0 if `point` lies within the rectangle spanned by a and b, otherwise the
    distance to the nearest of its four corners.

    NOTE: a point beside an edge (not a corner) gets the nearest-corner
    distance, not the true point-to-segment distance.
    """
    x_lo, x_hi = sorted((a.x, b.x))
    z_lo, z_hi = sorted((a.z, b.z))
    if x_lo <= point.x <= x_hi and z_lo <= point.z <= z_hi:
        return 0.0
    d = rect_corners(a, b) - np.array([point.x, point.z], dtype=float)
    return float(np.min(np.hypot(d[:, 0], d[:, 1])))


def placement_offset(pos: PlanarPoint) -> Tuple[float, float, float]:
    """Scene offset (x, y, z) for an asset centered at `pos`; sign-flipped so the camera appears to move."""
    return (-pos.x, 0.0, -pos.z)
