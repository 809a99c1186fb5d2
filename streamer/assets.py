"""
Tile asset loaders.

A loader turns a TileWithLod into a `concurrent.futures.Future` resolving to a
TileAsset (the handle the streamer owns) or raising. Tiles are pre-rendered
glTF binaries addressed as

    {root}/lod{lod}/{zoom}/{x}/{y}.glb

Bytes are opaque to the streamer; the only check is the 4-byte glTF magic so a
malformed response (HTML error page, truncated body) fails that single tile.
"""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import requests

from common.tiles import TileWithLod


log = logging.getLogger(__name__)

GLB_MAGIC = b"glTF"


class TileFetchError(RuntimeError):
    """A tile could not be fetched or its body is not a tile."""


@dataclass
class TileAsset:
    """
    Handle for one loaded (or placeholder) tile.

    Owned by the streamer's cache; `release()` drops the bytes and is idempotent.
    """
    key: TileWithLod
    data: Optional[bytes] = field(default=None, repr=False)
    placeholder: bool = False
    error: Optional[str] = None
    released: bool = False

    @classmethod
    def failed(cls, key: TileWithLod, error: BaseException) -> "TileAsset":
        """Placeholder standing in for a tile whose fetch failed."""
        return cls(key=key, placeholder=True, error=f"{type(error).__name__}: {error}")

    @property
    def size(self) -> int:
        return len(self.data) if self.data else 0

    def release(self) -> None:
        self.data = None
        self.released = True


def check_glb(data: bytes, where: str) -> bytes:
    if not data:
        raise TileFetchError(f"empty tile body: {where}")
    if data[:4] != GLB_MAGIC:
        raise TileFetchError(f"not a glTF binary: {where}")
    return data


class AssetLoader:
    """
    Base loader: runs `_fetch` on a small thread pool and wraps the bytes in a
    TileAsset. Subclasses implement `_fetch(key) -> bytes` and raise on failure.
    """

    def __init__(self, *, suffix: str = ".glb", max_workers: int = 8, validate: bool = True):
        self.suffix = suffix
        self.validate = validate
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tile-fetch")

    def locate(self, key: TileWithLod) -> str:
        return f"{key.locator}{self.suffix}"

    def load(self, key: TileWithLod) -> "Future[TileAsset]":
        return self._pool.submit(self._load_sync, key)

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    # -------- internals --------

    def _load_sync(self, key: TileWithLod) -> TileAsset:
        data = self._fetch(key)
        if self.validate:
            check_glb(data, self.locate(key))
        return TileAsset(key=key, data=data)

    def _fetch(self, key: TileWithLod) -> bytes:
        raise NotImplementedError


class FileTileLoader(AssetLoader):
    """Reads tiles from a local directory laid out as lod{lod}/{z}/{x}/{y}.glb."""

    def __init__(self, root: str = "data/tiles", **kw):
        super().__init__(**kw)
        self.root = Path(root)

    def _fetch(self, key: TileWithLod) -> bytes:
        path = self.root / self.locate(key)
        # FileNotFoundError -> failed tile
        with path.open("rb") as f:
            return f.read()

    def stats(self) -> Dict[str, int]:
        """Tile counts per LOD directory found under root."""
        out: Dict[str, int] = {}
        if not self.root.exists():
            return out
        for lod_dir in sorted(self.root.glob("lod*")):
            if lod_dir.is_dir():
                out[lod_dir.name] = sum(1 for _ in lod_dir.rglob(f"*{self.suffix}"))
        return out


class HttpTileLoader(AssetLoader):
    """Fetches tiles from an HTTP tile root via a shared requests.Session."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        **kw,
    ):
        super().__init__(**kw)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def url_for(self, key: TileWithLod) -> str:
        return f"{self.base_url}/{self.locate(key)}"

    def _fetch(self, key: TileWithLod) -> bytes:
        url = self.url_for(key)
        r = self.session.get(url, timeout=self.timeout)
        if r.status_code != 200 or not r.content:
            raise TileFetchError(f"tile request failed: {r.status_code} {url}")
        return r.content

    def close(self) -> None:
        super().close()
        self.session.close()


def make_loader(tiles_cfg: Dict) -> AssetLoader:
    """
    Build a loader from the `tiles` config section:
      root: http(s) URL -> HttpTileLoader, anything else -> FileTileLoader
    """
    root = str(tiles_cfg.get("root", "data/tiles"))
    kw = {
        "suffix": str(tiles_cfg.get("suffix", ".glb")),
        "max_workers": int(tiles_cfg.get("max_workers", 8)),
        "validate": bool(tiles_cfg.get("validate", True)),
    }
    if root.startswith(("http://", "https://")):
        log.info("Using HTTP tile root", extra={"extra": {"root": root}})
        return HttpTileLoader(root, timeout=float(tiles_cfg.get("timeout_s", 10.0)), **kw)
    log.info("Using local tile root", extra={"extra": {"root": root}})
    return FileTileLoader(root, **kw)
