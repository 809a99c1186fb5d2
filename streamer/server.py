from __future__ import annotations

"""
Tile server + view control for the tile streamer.

- Serves pre-rendered tiles from `tiles.root`: /tiles/lod{lod}/{z}/{x}/{y}.glb
- Hosts a TileStreamer over the same directory, ticked in the background:
    POST /view, POST /camera, POST /tick, GET /status, GET /placements
- /health, /stats

Run:
    STREAMER_CONFIG=config/params.yaml uvicorn streamer.server:app --port 8000
"""

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel

from common.logging_setup import get_logger, setup_logging
from common.tiles import InvalidTileAddress, TileAddress, TileWithLod
from common.types import GeoPoint, PlanarPoint
from streamer.assets import AssetLoader, FileTileLoader
from streamer.config import DEFAULT_CONFIG_PATH, StreamerConfig, load_config
from streamer.scheduler import RecordingSink, TileStreamer
from streamer.service import Ticker


log = get_logger("streamer.server")


class ViewRequest(BaseModel):
    lat: float
    lon: float
    radius: Optional[float] = None
    bearing: Optional[float] = None
    tilt: Optional[float] = None


class CameraRequest(BaseModel):
    x: float
    z: float
    radius: Optional[float] = None


def create_app(cfg: StreamerConfig, loader: Optional[AssetLoader] = None) -> FastAPI:
    """
    Build the app. The hosted streamer reads tiles from `cfg.tiles["root"]`
    unless another loader is given.
    """
    tile_root = Path(str(cfg.tiles.get("root", "data/tiles")))
    suffix = str(cfg.tiles.get("suffix", ".glb"))
    if loader is None:
        loader = FileTileLoader(
            str(tile_root),
            suffix=suffix,
            max_workers=int(cfg.tiles.get("max_workers", 8)),
            validate=bool(cfg.tiles.get("validate", True)),
        )
    sink = RecordingSink()
    streamer = TileStreamer.from_config(cfg, loader, sink=sink)
    ticker = Ticker(streamer, cfg.streaming.tick_interval_s)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        ticker.start()
        try:
            yield
        finally:
            ticker.stop()
            streamer.close()
            loader.close()

    app = FastAPI(title="Tile Streamer API", version="0.1.0", lifespan=lifespan)
    app.state.streamer = streamer
    app.state.ticker = ticker
    app.state.sink = sink

    # (Optional) CORS for browser viewers on another origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _tile_stats() -> dict:
        if isinstance(loader, FileTileLoader):
            return loader.stats()
        return {}

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "tiles": _tile_stats(),
            "ticker": {"running": ticker.running, "interval_s": ticker.interval_s},
        }

    @app.get("/stats")
    def stats():
        return {"tiles": _tile_stats(), "cache": streamer.stats()}

    @app.get("/tiles/lod{lod}/{z}/{x}/{y}" + suffix)
    def tile(lod: int, z: int, x: int, y: int):
        try:
            key = TileWithLod(TileAddress(z, x, y), lod)
        except ValueError as e:  # includes InvalidTileAddress
            raise HTTPException(status_code=400, detail=str(e))
        path = tile_root / f"{key.locator}{suffix}"
        if not path.is_file():
            raise HTTPException(status_code=404, detail="tile_not_found")
        return Response(
            content=path.read_bytes(),
            media_type="model/gltf-binary",
            headers={"Cache-Control": "public, max-age=3600", "X-Tile": key.locator},
        )

    @app.post("/view")
    def set_view(req: ViewRequest):
        origin = GeoPoint(req.lat, req.lon)
        try:
            released = streamer.set_view(origin, radius=req.radius, bearing=req.bearing, tilt=req.tilt)
        except InvalidTileAddress as e:
            raise HTTPException(status_code=400, detail=f"no tiles at this location: {e}")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {
            "origin": {"lat": origin.lat, "lon": origin.lon},
            "radius": streamer.camera_radius,
            "bearing": streamer.bearing,
            "tilt": streamer.tilt,
            "released": released,
        }

    @app.post("/camera")
    def set_camera(req: CameraRequest):
        try:
            streamer.set_camera(PlanarPoint(req.x, req.z), radius=req.radius)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        geo = streamer.camera_geo()
        return {"target": {"x": req.x, "z": req.z}, "geo": {"lat": geo.lat, "lon": geo.lon}}

    @app.post("/tick")
    def tick():
        return ticker.tick_once().to_dict()

    @app.get("/status")
    def status():
        last = streamer.last_status
        geo = streamer.camera_geo()
        return {
            "status": last.to_dict() if last else None,
            "cache": streamer.stats(),
            "origin": {"lat": streamer.origin.lat, "lon": streamer.origin.lon},
            "camera": {"lat": geo.lat, "lon": geo.lon, "radius": streamer.camera_radius},
        }

    @app.get("/placements")
    def placements():
        return [
            {"tile": key.locator, "offset": list(offset)}
            for key, offset in streamer.placements()
        ]

    return app


P = load_config(os.environ.get("STREAMER_CONFIG", DEFAULT_CONFIG_PATH))
setup_logging(P.logging.get("level", "INFO"), force=True)
app = create_app(P)


# -------- local dev entrypoint --------
if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
