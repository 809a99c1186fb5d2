"""
Common — geodesy, tile addressing and shared plumbing

- types: GeoPoint, PlanarPoint, StreamStatus
- geo: orthographic azimuthal projection, slippy-map tile edges, planar distance
- tiles: TileAddress (zoom/x/y pyramid), TileBounds, TileWithLod
- logging_setup: JSON logging to stdout
- utils: loop diagnostics helpers
"""
