"""
Tile streamer: cache-coherent LOD scheduling around a moving camera.

Every tick (one-directional pull; tiles never move the camera):
  1) inverse-project the camera target and find the center tile at the reference zoom
  2) collect the square neighborhood of tiles within the scene radius
  3) pick each tile's LOD (high tier only if both tile and camera are close)
  4) issue loads ring by ring from the center; stop after the first ring that issued any
  5) evict what is no longer wanted, keeping an old LOD while its replacement is unresolved
  6) place resolved tiles into the scene sink and publish a StreamStatus

The cache is owned exclusively by the streamer. Fetch completions only perform
the PENDING -> LOADED/FAILED transition on the exact entry they were issued for.
"""
from __future__ import annotations

import threading
from concurrent.futures import CancelledError, Future
from typing import Callable, Dict, List, Optional, Tuple

from common.geo import OrthographicProjection, placement_offset
from common.logging_setup import get_logger
from common.tiles import InvalidTileAddress, TileAddress, TileWithLod
from common.types import GeoPoint, PlanarPoint, StreamStatus, now_iso
from common.utils import clamp
from streamer.assets import AssetLoader, TileAsset
from streamer.cache import CacheEntry, EntryState


log = get_logger("streamer")

Offset = Tuple[float, float, float]
StatusCallback = Callable[[StreamStatus], None]


class SceneSink:
    """
    Where loaded tiles go. The default does nothing but log; a renderer binding
    overrides place/remove.
    """

    def place(self, asset: TileAsset, offset: Offset) -> None:
        log.debug("place", extra={"extra": {"tile": str(asset.key), "offset": offset}})

    def remove(self, asset: TileAsset) -> None:
        log.debug("remove", extra={"extra": {"tile": str(asset.key)}})


class RecordingSink(SceneSink):
    """Keeps the currently placed assets and their offsets (headless service, server)."""

    def __init__(self):
        self.placed: Dict[TileWithLod, Offset] = {}
        self._lock = threading.Lock()

    def place(self, asset: TileAsset, offset: Offset) -> None:
        with self._lock:
            self.placed[asset.key] = offset

    def remove(self, asset: TileAsset) -> None:
        with self._lock:
            self.placed.pop(asset.key, None)

    def snapshot(self) -> Dict[TileWithLod, Offset]:
        with self._lock:
            return dict(self.placed)


class TileStreamer:
    """
    Decides which tile/LOD assets are resident for the current view.

    Params:
        loader: asset loader; `load(key)` returns a Future[TileAsset]
        origin: projection origin (initial view)
        radius, bearing, tilt: initial camera parameters (radius is the distance proxy)
        reference_zoom: zoom level of the tile pyramid being streamed
        ring_radius: rings of neighbors considered around the center tile
        scene_radius: tiles farther than this (m) from the camera target are not wanted
        high_detail_radius: tile and camera within this (m) -> high_lod
        base_lod, high_lod: detail tiers
        sink: SceneSink receiving place/remove calls
        on_status: optional subscriber called with the StreamStatus after each tick
    """

    def __init__(
        self,
        loader: AssetLoader,
        *,
        origin: GeoPoint,
        radius: float = 500.0,
        bearing: float = 90.0,
        tilt: float = 45.0,
        reference_zoom: int = 15,
        ring_radius: int = 10,
        scene_radius: float = 5000.0,
        high_detail_radius: float = 1000.0,
        base_lod: int = 1,
        high_lod: int = 3,
        sink: Optional[SceneSink] = None,
        on_status: Optional[StatusCallback] = None,
    ):
        if high_lod <= base_lod:
            raise ValueError("high_lod must be greater than base_lod")
        if ring_radius < 0:
            raise ValueError("ring_radius must be >= 0")
        self.loader = loader
        self.reference_zoom = int(reference_zoom)
        self.ring_radius = int(ring_radius)
        self.scene_radius = float(scene_radius)
        self.high_detail_radius = float(high_detail_radius)
        self.base_lod = int(base_lod)
        self.high_lod = int(high_lod)
        self.sink = sink or SceneSink()
        self.on_status = on_status

        # guards the entry map and the view snapshot; re-entrant because a
        # future that is already done runs its callback inside load()
        self._lock = threading.RLock()
        self._entries: Dict[TileWithLod, CacheEntry] = {}
        self._last_status: Optional[StreamStatus] = None

        self._origin = origin
        self._proj = OrthographicProjection(origin)
        self._camera_target = PlanarPoint(0.0, 0.0)
        self._radius = 500.0
        self._bearing = 90.0
        self._tilt = 45.0
        self._set_camera_params(radius, bearing, tilt)

    @classmethod
    def from_config(cls, cfg, loader: AssetLoader, **kw) -> "TileStreamer":
        """Build from a StreamerConfig (see streamer.config)."""
        return cls(
            loader,
            origin=GeoPoint(cfg.view.lat, cfg.view.lon),
            radius=cfg.view.radius,
            bearing=cfg.view.bearing,
            tilt=cfg.view.tilt,
            reference_zoom=cfg.streaming.reference_zoom,
            ring_radius=cfg.streaming.ring_radius,
            scene_radius=cfg.streaming.scene_radius,
            high_detail_radius=cfg.streaming.high_detail_radius,
            base_lod=cfg.streaming.base_lod,
            high_lod=cfg.streaming.high_lod,
            **kw,
        )

    # ----------------------------
    # View state
    # ----------------------------
    @property
    def origin(self) -> GeoPoint:
        return self._origin

    @property
    def projection(self) -> OrthographicProjection:
        return self._proj

    @property
    def camera_target(self) -> PlanarPoint:
        return self._camera_target

    @property
    def camera_radius(self) -> float:
        return self._radius

    @property
    def bearing(self) -> float:
        return self._bearing

    @property
    def tilt(self) -> float:
        return self._tilt

    @property
    def last_status(self) -> Optional[StreamStatus]:
        return self._last_status

    def set_view(
        self,
        origin: GeoPoint,
        radius: Optional[float] = None,
        bearing: Optional[float] = None,
        tilt: Optional[float] = None,
    ) -> int:
        """
        Jump to a new location. All planar coordinates of the old origin become
        meaningless, so the whole cache is dropped (no incremental reprojection)
        and the camera target returns to the new origin.

        Raises InvalidTileAddress (cache untouched) if the origin has no tile
        at the reference zoom. Returns the number of released handles.
        """
        TileAddress.at_geo_point(self.reference_zoom, origin)
        if radius is not None and radius <= 0:
            raise ValueError("camera radius must be > 0")
        with self._lock:
            released = self._reset()
            self._origin = origin
            self._proj = OrthographicProjection(origin)
            self._camera_target = PlanarPoint(0.0, 0.0)
            self._set_camera_params(radius, bearing, tilt)
            self._last_status = None
        log.info(
            "View reset",
            extra={"extra": {"lat": origin.lat, "lon": origin.lon, "radius": self._radius, "released": released}},
        )
        return released

    def set_camera(self, target: PlanarPoint, radius: Optional[float] = None) -> None:
        """Record a camera move; loading happens on the next tick."""
        with self._lock:
            self._set_camera_params(radius, None, None)
            self._camera_target = target

    def camera_geo(self) -> GeoPoint:
        with self._lock:
            return self._proj.to_geo(self._camera_target)

    # ----------------------------
    # Tick
    # ----------------------------
    def tick(self) -> StreamStatus:
        """Run one scheduling pass (not re-entrant; concurrent callers serialize)."""
        with self._lock:
            center = self._center_tile()
            if center is None:
                status = self._make_status(None, 0)
            else:
                wanted = self._candidates(center)
                issued = self._issue_by_ring(wanted)
                evicted = self._evict(wanted)
                self._place_resolved()
                status = self._make_status(center, issued)
                log.debug(
                    "tick",
                    extra={"extra": {"center": str(center), "wanted": len(wanted), "issued": issued, "evicted": evicted}},
                )
            self._last_status = status
        self._emit(status)
        return status

    # ----------------------------
    # Inspection
    # ----------------------------
    def state_of(self, key: TileWithLod) -> Optional[EntryState]:
        with self._lock:
            e = self._entries.get(key)
            return e.state if e else None

    def keys(self) -> List[TileWithLod]:
        with self._lock:
            return list(self._entries)

    def placements(self) -> List[Tuple[TileWithLod, Offset]]:
        with self._lock:
            return [(k, e.offset) for k, e in self._entries.items() if e.placed and e.offset is not None]

    def stats(self) -> Dict[str, int]:
        with self._lock:
            out = {s.value: 0 for s in EntryState}
            for e in self._entries.values():
                out[e.state.value] += 1
            out["total"] = len(self._entries)
            return out

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def close(self) -> int:
        """Release every handle and empty the cache."""
        with self._lock:
            return self._reset()

    # -------- internals --------

    def _set_camera_params(self, radius: Optional[float], bearing: Optional[float], tilt: Optional[float]) -> None:
        if radius is not None:
            if radius <= 0:
                raise ValueError("camera radius must be > 0")
            self._radius = float(radius)
        if bearing is not None:
            self._bearing = float(bearing) % 360.0
        if tilt is not None:
            self._tilt = clamp(tilt, 0.0, 90.0)

    def _center_tile(self) -> Optional[TileAddress]:
        geo = self._proj.to_geo(self._camera_target)
        try:
            return TileAddress.at_geo_point(self.reference_zoom, geo)
        except InvalidTileAddress as e:
            log.warning("Camera outside tile pyramid", extra={"extra": {"lat": geo.lat, "lon": geo.lon, "err": str(e)}})
            return None

    def _candidates(self, center: TileAddress) -> Dict[TileWithLod, int]:
        """Wanted keys -> ring, in ring order."""
        cam = self._camera_target
        camera_close = self._radius <= self.high_detail_radius
        wanted: Dict[TileWithLod, int] = {}
        for ring, addr in center.neighborhood(self.ring_radius):
            d = addr.bounds().distance_from(cam, self._proj)
            if d > self.scene_radius:
                continue
            lod = self.high_lod if (camera_close and d <= self.high_detail_radius) else self.base_lod
            wanted[TileWithLod(addr, lod)] = ring
        return wanted

    def _issue_by_ring(self, wanted: Dict[TileWithLod, int]) -> int:
        issued = 0
        ring: Optional[int] = None
        for key, r in wanted.items():
            if r != ring:
                if issued:
                    break
                ring = r
            if key in self._entries:
                continue
            self._issue(key)
            issued += 1
        return issued

    def _issue(self, key: TileWithLod) -> None:
        entry = CacheEntry(key)
        # the PENDING marker goes in before the fetch: one load per key in flight
        self._entries[key] = entry
        try:
            fut = self.loader.load(key)
        except Exception as e:
            log.warning("Tile load could not be issued", extra={"extra": {"tile": str(key), "err": str(e)}})
            entry.resolve(TileAsset.failed(key, e), failed=True)
            return
        fut.add_done_callback(lambda f, entry=entry: self._on_fetched(entry, f))

    def _on_fetched(self, entry: CacheEntry, fut: "Future[TileAsset]") -> None:
        try:
            asset = fut.result()
            failed = False
        except (Exception, CancelledError) as e:
            asset = TileAsset.failed(entry.key, e)
            failed = True

        with self._lock:
            if self._entries.get(entry.key) is not entry:
                # evicted (or view reset) while in flight
                asset.release()
                log.debug("Dropped late tile", extra={"extra": {"tile": str(entry.key)}})
                return
            entry.resolve(asset, failed=failed)

        if failed:
            log.warning("Tile fetch failed", extra={"extra": {"tile": str(entry.key), "err": asset.error}})

    def _evict(self, wanted: Dict[TileWithLod, int]) -> int:
        lods_by_tile: Dict[TileAddress, List[TileWithLod]] = {}
        for key in wanted:
            lods_by_tile.setdefault(key.tile, []).append(key)

        evicted = 0
        for key in list(self._entries):
            if key in wanted:
                continue
            if self._awaiting_replacement(key, lods_by_tile.get(key.tile, ())):
                continue
            self._drop(key)
            evicted += 1
        return evicted

    def _awaiting_replacement(self, key: TileWithLod, replacements) -> bool:
        """True while a wanted other-LOD key of the same tile is not yet resolved."""
        for other in replacements:
            if other.lod == key.lod:
                continue
            e = self._entries.get(other)
            if e is None or e.state is EntryState.PENDING:
                return True
        return False

    def _drop(self, key: TileWithLod) -> bool:
        entry = self._entries.pop(key)
        if entry.placed and entry.handle is not None:
            try:
                self.sink.remove(entry.handle)
            except Exception:
                log.exception("Scene sink remove failed", extra={"extra": {"tile": str(key)}})
        return entry.release()

    def _reset(self) -> int:
        released = 0
        for key in list(self._entries):
            if self._drop(key):
                released += 1
        return released

    def _place_resolved(self) -> None:
        for entry in self._entries.values():
            if entry.placed or not entry.resolved or entry.handle is None:
                continue
            center = self._proj.to_planar(entry.key.tile.bounds().center)
            entry.offset = placement_offset(center)
            entry.placed = True
            try:
                self.sink.place(entry.handle, entry.offset)
            except Exception:
                log.exception("Scene sink place failed", extra={"extra": {"tile": str(entry.key)}})

    def _make_status(self, center: Optional[TileAddress], issued: int) -> StreamStatus:
        counts = {s: 0 for s in EntryState}
        center_states = set()
        for key, e in self._entries.items():
            counts[e.state] += 1
            if center is not None and key.tile == center:
                center_states.add(e.state)

        loaded = EntryState.LOADED in center_states
        failed = EntryState.FAILED in center_states
        if center is None:
            loading, missing = False, True
        else:
            loading, missing = (not loaded and not failed), (failed and not loaded)

        return StreamStatus(
            ts=now_iso(),
            center_tile=str(center) if center is not None else None,
            center_tile_loading=loading,
            center_tile_missing=missing,
            pending=counts[EntryState.PENDING],
            loaded=counts[EntryState.LOADED],
            failed=counts[EntryState.FAILED],
            issued=issued,
        )

    def _emit(self, status: StreamStatus) -> None:
        if self.on_status is None:
            return
        try:
            self.on_status(status)
        except Exception:
            log.exception("Status subscriber failed")
