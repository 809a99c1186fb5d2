"""
Unit tests for the tile streamer (LOD scheduling, ring ordering, eviction)
"""

import os
import sys
from unittest.mock import Mock

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.tiles import InvalidTileAddress, TileAddress, TileWithLod
from common.types import GeoPoint, PlanarPoint, StreamStatus
from streamer.cache import CacheEntry, EntryState
from streamer.assets import TileAsset
from streamer.scheduler import RecordingSink, SceneSink, TileStreamer
from tests.fakes import FakeLoader


MUNICH = GeoPoint(48.14738, 11.57403)
BERLIN = GeoPoint(52.5163, 13.3777)
CENTER = TileAddress.at_geo_point(15, MUNICH)


def make_streamer(loader, **kw):
    params = dict(origin=MUNICH, radius=5000.0, ring_radius=2, scene_radius=1e6, high_detail_radius=1000.0)
    params.update(kw)
    return TileStreamer(loader, **params)


class TestCacheEntry:
    """Test cases for CacheEntry transitions"""

    def test_resolve_once(self):
        key = TileWithLod(CENTER, 1)
        e = CacheEntry(key)
        assert e.state is EntryState.PENDING
        e.resolve(TileAsset(key, data=b"glTF"))
        assert e.state is EntryState.LOADED
        with pytest.raises(RuntimeError):
            e.resolve(TileAsset(key, data=b"glTF"))

    def test_release(self):
        key = TileWithLod(CENTER, 1)
        e = CacheEntry(key)
        assert e.release() is False
        asset = TileAsset(key, data=b"glTF")
        e.resolve(asset)
        assert e.release() is True
        assert asset.released and asset.data is None

    def test_identity_equality(self):
        key = TileWithLod(CENTER, 1)
        assert CacheEntry(key) != CacheEntry(key)


class TestRingScheduling:
    """Loads are issued center-out, one ring per tick"""

    def test_center_first(self):
        """The first tick requests only the tile under the camera"""
        loader = FakeLoader()
        s = make_streamer(loader)
        status = s.tick()
        assert loader.calls == [TileWithLod(CENTER, 1)]
        assert status.issued == 1
        assert status.center_tile == str(CENTER)

    def test_one_ring_per_tick(self):
        loader = FakeLoader()
        s = make_streamer(loader)
        issued = [s.tick().issued for _ in range(4)]
        assert issued == [1, 8, 16, 0]
        assert len(s) == 25
        rings = [CENTER.ring_distance(k.tile) for k in loader.calls]
        assert rings == sorted(rings)

    def test_ring_two_waits_for_ring_zero(self):
        """A missing ring-0 key blocks ring 2 in the same tick"""
        loader = FakeLoader()
        s = make_streamer(loader)
        for _ in range(3):
            s.tick()
        # force the center out of the cache while the rest stays resident
        s._drop(TileWithLod(CENTER, 1))
        loader.calls.clear()
        s.tick()
        assert loader.calls == [TileWithLod(CENTER, 1)]

    def test_pending_counts_as_present(self):
        """A pending ring does not block the next ring"""
        loader = FakeLoader(auto=False)
        s = make_streamer(loader)
        s.tick()
        s.tick()
        assert len(loader.calls) == 9
        assert s.stats()["pending"] == 9

    def test_no_duplicate_loads(self):
        """At most one fetch per key, however often we tick"""
        loader = FakeLoader(auto=False)
        s = make_streamer(loader)
        for _ in range(6):
            s.tick()
        assert len(loader.calls) == len(set(loader.calls)) == 25
        assert s.tick().issued == 0

    def test_scene_radius_cutoff(self):
        """Tiles beyond the scene radius are never requested"""
        loader = FakeLoader()
        s = make_streamer(loader, ring_radius=5, scene_radius=1200.0)
        for _ in range(8):
            s.tick()
        assert loader.calls
        assert max(CENTER.ring_distance(k.tile) for k in loader.calls) <= 2
        for k in loader.calls:
            assert k.tile.bounds().distance_from(s.camera_target, s.projection) <= 1200.0

    def test_idempotent_when_settled(self):
        loader = FakeLoader()
        s = make_streamer(loader, ring_radius=1)
        s.tick()
        s.tick()
        before = s.keys()
        status = s.tick()
        assert status.issued == 0
        assert s.keys() == before


class TestLodSelection:
    """High LOD only when both the tile and the camera are close"""

    def test_far_camera_never_high_lod(self):
        loader = FakeLoader()
        s = make_streamer(loader, radius=5000.0)
        s.tick()
        assert loader.calls == [TileWithLod(CENTER, 1)]

    def test_close_camera_high_lod_near_only(self):
        loader = FakeLoader()
        s = make_streamer(loader, radius=300.0, ring_radius=3)
        for _ in range(4):
            s.tick()
        assert TileWithLod(CENTER, 3) in loader.calls
        for k in loader.calls:
            d = k.tile.bounds().distance_from(s.camera_target, s.projection)
            assert k.lod == (3 if d <= 1000.0 else 1)
        assert any(k.lod == 1 for k in loader.calls)

    def test_invalid_lods(self):
        with pytest.raises(ValueError):
            TileStreamer(FakeLoader(), origin=MUNICH, base_lod=3, high_lod=3)


class TestEviction:
    """Eviction and the keep-old-LOD rule"""

    def test_old_lod_kept_until_replacement_loaded(self):
        loader = FakeLoader()
        s = make_streamer(loader, ring_radius=0)
        s.tick()
        old = TileWithLod(CENTER, 1)
        new = TileWithLod(CENTER, 3)
        assert s.state_of(old) is EntryState.LOADED
        old_asset = loader.assets[-1]

        # zoom in: the same tile is now wanted at LOD 3
        loader.auto = False
        s.set_camera(PlanarPoint(0.0, 0.0), radius=200.0)
        s.tick()
        assert s.state_of(new) is EntryState.PENDING
        assert s.state_of(old) is EntryState.LOADED
        s.tick()
        assert s.state_of(old) is EntryState.LOADED
        assert not old_asset.released

        loader.resolve(new)
        s.tick()
        assert s.state_of(new) is EntryState.LOADED
        assert s.state_of(old) is None
        assert old_asset.released

    def test_old_lod_dropped_when_replacement_fails(self):
        loader = FakeLoader()
        s = make_streamer(loader, ring_radius=0)
        s.tick()
        loader.auto = False
        s.set_camera(PlanarPoint(0.0, 0.0), radius=200.0)
        s.tick()
        assert s.state_of(TileWithLod(CENTER, 1)) is EntryState.LOADED
        loader.fail(TileWithLod(CENTER, 3))
        s.tick()
        assert s.state_of(TileWithLod(CENTER, 3)) is EntryState.FAILED
        assert s.state_of(TileWithLod(CENTER, 1)) is None

    def test_unwanted_tile_evicted(self):
        """Moving away evicts tiles that are no longer candidates"""
        loader = FakeLoader()
        s = make_streamer(loader, ring_radius=0)
        s.tick()
        first = loader.assets[-1]
        s.set_camera(PlanarPoint(3000.0, 0.0))
        s.tick()
        assert s.state_of(TileWithLod(CENTER, 1)) is None
        assert first.released
        assert len(s) == 1

    def test_late_result_for_evicted_key_released(self):
        """A fetch finishing after its entry was evicted does not resurrect it"""
        loader = FakeLoader(auto=False)
        s = make_streamer(loader, ring_radius=0)
        s.tick()
        key = TileWithLod(CENTER, 1)
        s.set_camera(PlanarPoint(3000.0, 0.0))
        s.tick()
        assert s.state_of(key) is None
        late = loader.resolve(key)
        assert late.released
        assert s.state_of(key) is None

    def test_late_result_after_reissue_only_updates_new_entry(self):
        """Entry identity, not key, decides which completion counts"""
        loader = FakeLoader(auto=False)
        s = make_streamer(loader, ring_radius=0)
        key = TileWithLod(CENTER, 1)
        s.tick()
        stale = loader.futures[key]
        s.set_camera(PlanarPoint(3000.0, 0.0))
        s.tick()
        s.set_camera(PlanarPoint(0.0, 0.0))
        s.tick()
        assert loader.calls.count(key) == 2
        assert loader.futures[key] is not stale
        stale_asset = TileAsset(key, data=b"glTF")
        stale.set_result(stale_asset)
        assert stale_asset.released
        assert s.state_of(key) is EntryState.PENDING


class TestFailures:
    """Fetch failures degrade to a single FAILED entry"""

    def test_failed_center(self):
        key = TileWithLod(CENTER, 1)
        loader = FakeLoader(fail={key})
        s = make_streamer(loader, ring_radius=0)
        status = s.tick()
        assert s.keys() == [key]
        assert s.state_of(key) is EntryState.FAILED
        assert status.center_tile_missing is True
        assert status.center_tile_loading is False
        assert status.failed == 1

    def test_failed_neighbor_not_missing(self):
        neighbor = TileWithLod(CENTER.add(1, 0), 1)
        loader = FakeLoader(fail={neighbor})
        s = make_streamer(loader, ring_radius=1)
        s.tick()
        status = s.tick()
        assert s.state_of(neighbor) is EntryState.FAILED
        assert status.failed == 1
        assert status.center_tile_missing is False
        assert status.center_tile_loading is False

    def test_failed_not_retried(self):
        key = TileWithLod(CENTER, 1)
        loader = FakeLoader(fail={key})
        s = make_streamer(loader, ring_radius=0)
        for _ in range(3):
            s.tick()
        assert loader.calls.count(key) == 1

    def test_failed_placeholder(self):
        key = TileWithLod(CENTER, 1)
        sink = RecordingSink()
        s = make_streamer(FakeLoader(fail={key}), ring_radius=0, sink=sink)
        s.tick()
        assert key in sink.snapshot()

    def test_load_raising_synchronously(self):
        loader = Mock()
        loader.load.side_effect = OSError("pool closed")
        s = make_streamer(loader, ring_radius=0)
        status = s.tick()
        assert s.state_of(TileWithLod(CENTER, 1)) is EntryState.FAILED
        assert status.center_tile_missing is True

    def test_cancelled_future(self):
        loader = FakeLoader(auto=False)
        s = make_streamer(loader, ring_radius=0)
        s.tick()
        key = TileWithLod(CENTER, 1)
        assert loader.futures[key].cancel()
        assert s.state_of(key) is EntryState.FAILED

    def test_status_while_pending(self):
        s = make_streamer(FakeLoader(auto=False), ring_radius=0)
        status = s.tick()
        assert status.center_tile_loading is True
        assert status.center_tile_missing is False
        assert status.pending == 1


class TestViewReset:
    """set_view drops the whole cache"""

    def test_reset_releases_all(self):
        loader = FakeLoader()
        s = make_streamer(loader, ring_radius=1)
        s.tick()
        s.tick()
        assert s.stats()["loaded"] == 9
        released = s.set_view(BERLIN)
        assert released == 9
        assert len(s) == 0
        assert all(a.released for a in loader.assets)
        assert s.origin == BERLIN
        assert s.camera_target == PlanarPoint(0.0, 0.0)

    def test_reset_ignores_late_results(self):
        loader = FakeLoader(auto=False)
        s = make_streamer(loader, ring_radius=1)
        s.tick()
        s.tick()
        s.set_view(BERLIN)
        for key in list(loader.futures):
            assert loader.resolve(key).released
        assert len(s) == 0

    def test_reset_records_camera(self):
        s = make_streamer(FakeLoader())
        s.set_view(BERLIN, radius=250.0, bearing=370.0, tilt=120.0)
        assert s.camera_radius == 250.0
        assert s.bearing == pytest.approx(10.0)
        assert s.tilt == 90.0

    def test_new_view_streams_new_center(self):
        loader = FakeLoader()
        s = make_streamer(loader, ring_radius=0)
        s.tick()
        s.set_view(BERLIN)
        status = s.tick()
        assert status.center_tile == str(TileAddress.at_geo_point(15, BERLIN))

    def test_invalid_origin_keeps_cache(self):
        s = make_streamer(FakeLoader(), ring_radius=0)
        s.tick()
        with pytest.raises(InvalidTileAddress):
            s.set_view(GeoPoint(89.9, 0.0))
        assert len(s) == 1
        assert s.origin == MUNICH

    def test_close(self):
        loader = FakeLoader()
        s = make_streamer(loader, ring_radius=1)
        s.tick()
        s.tick()
        assert s.close() == 9
        assert len(s) == 0


class TestSinkAndStatus:
    """Scene placement and the status subscriber"""

    def test_placement_offset(self):
        sink = Mock(spec=SceneSink)
        s = make_streamer(FakeLoader(), ring_radius=0, sink=sink)
        s.tick()
        c = s.projection.to_planar(CENTER.bounds().center)
        sink.place.assert_called_once()
        asset, offset = sink.place.call_args[0]
        assert asset.key == TileWithLod(CENTER, 1)
        assert offset == (-c.x, 0.0, -c.z)
        assert s.placements() == [(TileWithLod(CENTER, 1), offset)]

    def test_placed_once(self):
        sink = Mock(spec=SceneSink)
        s = make_streamer(FakeLoader(), ring_radius=0, sink=sink)
        s.tick()
        s.tick()
        assert sink.place.call_count == 1

    def test_pending_not_placed_until_next_tick(self):
        sink = RecordingSink()
        loader = FakeLoader(auto=False)
        s = make_streamer(loader, ring_radius=0, sink=sink)
        s.tick()
        loader.resolve(TileWithLod(CENTER, 1))
        assert sink.snapshot() == {}
        s.tick()
        assert TileWithLod(CENTER, 1) in sink.snapshot()

    def test_eviction_removes_from_sink(self):
        sink = RecordingSink()
        s = make_streamer(FakeLoader(), ring_radius=0, sink=sink)
        s.tick()
        s.set_camera(PlanarPoint(3000.0, 0.0))
        s.tick()
        assert TileWithLod(CENTER, 1) not in sink.snapshot()

    def test_status_callback(self):
        seen = []
        s = make_streamer(FakeLoader(), ring_radius=0, on_status=seen.append)
        s.tick()
        assert len(seen) == 1
        assert isinstance(seen[0], StreamStatus)
        assert seen[0].center_tile_loading is False
        assert seen[0].center_tile_missing is False
        assert s.last_status is seen[0]

    def test_status_callback_errors_are_contained(self):
        def boom(_status):
            raise RuntimeError("subscriber bug")
        s = make_streamer(FakeLoader(), ring_radius=0, on_status=boom)
        assert s.tick().loaded == 1

    def test_camera_off_pyramid(self):
        """A camera beyond the Web-Mercator range issues nothing and keeps the cache"""
        loader = FakeLoader()
        s = make_streamer(loader, ring_radius=0)
        s.tick()
        s.set_camera(PlanarPoint(0.0, 4_250_000.0))
        status = s.tick()
        assert status.center_tile is None
        assert status.center_tile_missing is True
        assert len(loader.calls) == 1
        assert len(s) == 1
