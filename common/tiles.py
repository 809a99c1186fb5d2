from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Tuple
import math

from common.geo import tile2lat, tile2lon, OrthographicProjection, distance_to_rect
from common.types import GeoPoint, PlanarPoint


class InvalidTileAddress(ValueError):
    """A zoom/x/y triple outside the tile pyramid."""


@dataclass(frozen=True, slots=True)
class TileBounds:
    """
    Geographic extent of a tile.

    `center` is the arithmetic lat/lon midpoint of min and max, not a geodesic
    centroid. Downstream placement and distance math rely on this definition.
    """
    min: GeoPoint
    max: GeoPoint
    center: GeoPoint

    def to_planar(self, proj: OrthographicProjection) -> Tuple[PlanarPoint, PlanarPoint]:
        """Projected (min, max) corners of the tile's planar rectangle."""
        return proj.to_planar(self.min), proj.to_planar(self.max)

    def distance_from(self, point: PlanarPoint, proj: OrthographicProjection) -> float:
        """0 inside the projected rectangle, else distance to its nearest corner."""
        a, b = self.to_planar(proj)
        return distance_to_rect(point, a, b)


@dataclass(frozen=True, slots=True)
class TileAddress:
    """
    Tile number with zoom level, following the common XYZ convention
    (y axis points southward).

    Raises InvalidTileAddress unless zoom >= 0 and 0 <= x, y < 2**zoom.
    """
    zoom: int
    x: int
    y: int

    def __post_init__(self) -> None:
        if self.zoom < 0:
            raise InvalidTileAddress(f"illegal tile number, zoom must not be negative: {self}")
        if self.x < 0 or self.y < 0:
            raise InvalidTileAddress(f"illegal tile number, x and y must not be negative: {self}")
        if self.x >= (1 << self.zoom):
            raise InvalidTileAddress(f"illegal tile number, x too large: {self}")
        if self.y >= (1 << self.zoom):
            raise InvalidTileAddress(f"illegal tile number, y too large: {self}")

    def __str__(self) -> str:
        return f"{self.zoom}/{self.x}/{self.y}"

    @classmethod
    def at_geo_point(cls, zoom: int, point: GeoPoint) -> "TileAddress":
        """
        The tile containing `point` at `zoom` (standard slippy-map formula).

        Approximate inverse of bounds(): feeding bounds().center back in may
        land on an adjacent tile near edges.
        """
        n = 1 << zoom
        lat = math.radians(point.lat)
        try:
            x = math.floor((point.lon + 180.0) / 360.0 * n)
            y = math.floor((1.0 - math.log(math.tan(lat) + 1.0 / math.cos(lat)) / math.pi) / 2.0 * n)
        except (ValueError, OverflowError, ZeroDivisionError):
            # poles and beyond have no Web-Mercator row
            raise InvalidTileAddress(f"no tile at zoom {zoom} for {point}") from None
        return cls(zoom, int(x), int(y))

    @classmethod
    def parse(cls, s: str) -> "TileAddress":
        """Parse "{zoom}/{x}/{y}"."""
        try:
            z, x, y = (int(p) for p in s.strip("/").split("/"))
        except ValueError:
            raise InvalidTileAddress(f"illegal tile number: {s!r}") from None
        return cls(z, x, y)

    def add(self, dx: int, dy: int) -> "TileAddress":
        """Neighbor at the same zoom; raises InvalidTileAddress off the pyramid edge."""
        return TileAddress(self.zoom, self.x + dx, self.y + dy)

    def ring_distance(self, other: "TileAddress") -> int:
        """Chebyshev distance in tiles (same zoom assumed)."""
        return max(abs(self.x - other.x), abs(self.y - other.y))

    def neighborhood(self, rings: int) -> Iterator[Tuple[int, "TileAddress"]]:
        """
        Yield (ring, address) for the square of side 2*rings+1 around this tile,
        ring by ring starting at 0. Addresses off the pyramid are skipped.
        """
        yield 0, self
        for ring in range(1, rings + 1):
            for dy in range(-ring, ring + 1):
                for dx in range(-ring, ring + 1):
                    if max(abs(dx), abs(dy)) != ring:
                        continue
                    try:
                        yield ring, self.add(dx, dy)
                    except InvalidTileAddress:
                        continue

    def bounds(self) -> TileBounds:
        lo = GeoPoint(tile2lat(self.y + 1, self.zoom), tile2lon(self.x, self.zoom))
        hi = GeoPoint(tile2lat(self.y, self.zoom), tile2lon(self.x + 1, self.zoom))
        center = GeoPoint((lo.lat + hi.lat) / 2.0, (lo.lon + hi.lon) / 2.0)
        return TileBounds(min=lo, max=hi, center=center)


@dataclass(frozen=True, slots=True)
class TileWithLod:
    """Tile address plus detail tier (higher = more detail); the cache key."""
    tile: TileAddress
    lod: int

    def __post_init__(self) -> None:
        if self.lod < 1:
            raise ValueError(f"lod must be >= 1, got {self.lod}")

    def __str__(self) -> str:
        return self.locator

    @property
    def locator(self) -> str:
        """Asset locator "lod{lod}/{zoom}/{x}/{y}" (no file suffix)."""
        return f"lod{self.lod}/{self.tile}"
