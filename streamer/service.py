from __future__ import annotations

"""
Headless tile streaming service: drives TileStreamer.tick() on a fixed interval
and appends one status row per tick to a JSONL file.

Examples:
  # Stream around the configured view for 30 s
  python -m streamer.service --config config/params.yaml --duration 30

  # Jump somewhere else, closer camera, tiles from a remote tile root
  python -m streamer.service --lat 52.5163 --lon 13.3777 --radius 300 \
      --tiles https://tiles.example.org/3d --status-file logs/berlin.jsonl
"""

import argparse
import json
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from common.logging_setup import get_logger, setup_logging
from common.types import StreamStatus
from common.utils import RateTimer, RunningStats, timer_ms
from streamer.assets import make_loader
from streamer.config import load_config, DEFAULT_CONFIG_PATH
from streamer.scheduler import RecordingSink, TileStreamer


log = get_logger("streamer.service")


def _write_status_row(path: Path, row: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", buffering=1) as f:
        f.write(json.dumps(row) + "\n")


def status_file_writer(path: Path) -> Callable[[StreamStatus], None]:
    """Status subscriber appending every StreamStatus as a JSON line."""
    def _on_status(status: StreamStatus) -> None:
        _write_status_row(path, status.to_dict())
    return _on_status


class Ticker:
    """
    Calls `streamer.tick()` every `interval_s` seconds on a daemon thread.

    Ticks never overlap: the next one starts only after the previous returned.
    Fetches a tick issued may still be in flight when the next tick starts.
    """

    def __init__(self, streamer: TileStreamer, interval_s: float = 1.0):
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.streamer = streamer
        self.interval_s = float(interval_s)
        self.rate = RateTimer(window=20)
        self.tick_ms = RunningStats()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="tile-ticker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def tick_once(self) -> StreamStatus:
        status, dt_ms = timer_ms(self.streamer.tick)()
        self.tick_ms.add(dt_ms)
        hz = self.rate.tick()
        if self.tick_ms.n % 30 == 0:
            log.info(
                "Ticker stats",
                extra={"extra": {"ticks": self.tick_ms.n, "rate_hz": round(hz, 2),
                                 "tick_ms_mean": round(self.tick_ms.mean, 2), "tick_ms_max": round(self.tick_ms.peak, 2)}},
            )
        return status

    def _run(self) -> None:
        while not self._stop.is_set():
            t0 = time.perf_counter()
            try:
                self.tick_once()
            except Exception:
                log.exception("Tick failed")
            sleep_for = self.interval_s - (time.perf_counter() - t0)
            if sleep_for > 0:
                self._stop.wait(sleep_for)


def main() -> None:
    ap = argparse.ArgumentParser(description="LOD tile streaming service (headless)")
    ap.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    ap.add_argument("--lat", type=float, default=None, help="Override view latitude (deg)")
    ap.add_argument("--lon", type=float, default=None, help="Override view longitude (deg)")
    ap.add_argument("--radius", type=float, default=None, help="Camera distance (m)")
    ap.add_argument("--tiles", default=None, help="Tile root directory or URL")
    ap.add_argument("--interval", type=float, default=None, help="Tick interval (s)")
    ap.add_argument("--duration", type=float, default=None, help="Stop after N seconds")
    ap.add_argument("--status-file", default=None, help="JSONL file for per-tick status rows")
    args = ap.parse_args()

    cfg = load_config(args.config)
    setup_logging(cfg.logging.get("level", "INFO"), force=True)

    if args.lat is not None:
        cfg.view.lat = args.lat
    if args.lon is not None:
        cfg.view.lon = args.lon
    if args.radius is not None:
        cfg.view.radius = args.radius
    if args.tiles:
        cfg.tiles["root"] = args.tiles

    status_path = Path(args.status_file or cfg.logging.get("status_file", "logs/stream_status.jsonl"))
    loader = make_loader(cfg.tiles)
    sink = RecordingSink()
    streamer = TileStreamer.from_config(cfg, loader, sink=sink, on_status=status_file_writer(status_path))

    ticker = Ticker(streamer, args.interval or cfg.streaming.tick_interval_s)
    log.info(
        "Tile streaming started",
        extra={"extra": {"lat": cfg.view.lat, "lon": cfg.view.lon, "root": cfg.tiles.get("root"), "status": str(status_path)}},
    )
    ticker.start()
    t_end = None if args.duration is None else time.perf_counter() + float(args.duration)
    try:
        while ticker.running and (t_end is None or time.perf_counter() < t_end):
            time.sleep(0.2)
    except KeyboardInterrupt:
        pass
    finally:
        ticker.stop()
        released = streamer.close()
        loader.close()
        log.info("Tile streaming stopped", extra={"extra": {"released": released, "placed": len(sink.snapshot())}})


if __name__ == "__main__":
    main()
