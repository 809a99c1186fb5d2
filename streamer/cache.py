from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from common.tiles import TileWithLod
from streamer.assets import TileAsset


class EntryState(str, Enum):
    PENDING = "pending"
    LOADED = "loaded"
    FAILED = "failed"


@dataclass(eq=False)
class CacheEntry:
    """
    One resident tile in the streamer's cache.

    Lifecycle: created PENDING right before the fetch is issued, resolved once
    to LOADED (asset handle) or FAILED (placeholder handle), dropped on
    eviction. Entries compare by identity so a late fetch result can tell
    whether the entry it was issued for is still the one in the cache.
    """
    key: TileWithLod
    state: EntryState = EntryState.PENDING
    handle: Optional[TileAsset] = None
    offset: Optional[Tuple[float, float, float]] = None
    placed: bool = False

    @property
    def resolved(self) -> bool:
        return self.state is not EntryState.PENDING

    def resolve(self, handle: TileAsset, *, failed: bool = False) -> None:
        if self.state is not EntryState.PENDING:
            raise RuntimeError(f"entry {self.key} already {self.state.value}")
        self.handle = handle
        self.state = EntryState.FAILED if failed else EntryState.LOADED

    def release(self) -> bool:
        """Release the owned handle, if any. Returns True when a handle was released."""
        if self.handle is None:
            return False
        self.handle.release()
        self.handle = None
        return True
