"""
Tile streamer — LOD tile streaming for a live 3D viewport

- scheduler.TileStreamer: decides every tick which tiles to load, at which LOD,
  and which to evict (center-out by rings, never double-loading a key)
- assets: asynchronous tile loaders (local directory or HTTP tile root)
- service: background ticker + headless CLI
- server: FastAPI app serving pre-rendered tiles and a view-control API

Usage examples:
    from streamer.scheduler import TileStreamer
    from streamer.assets import make_loader
"""
