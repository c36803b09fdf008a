from __future__ import annotations

import json
import logging
from typing import Any, Dict

from common.types import ArchiveStatus, TileCoord, TileResponse
from tileserver.errors import (
    ArchiveNotFound,
    ArchiveNotReady,
    MetadataFetchError,
    TileEmpty,
    TileFetchError,
)
from tileserver.mbtiles import TileNotFound
from tileserver.registry import ArchiveHandle, ArchiveRegistry


log = logging.getLogger(__name__)

MVT_CONTENT_TYPE = "application/x-protobuf"


def default_tile_headers(cache_max_age: int = 3600) -> Dict[str, str]:
    return {
        "Content-Type": MVT_CONTENT_TYPE,
        "Cache-Control": f"public, max-age={int(cache_max_age)}",
        "X-Content-Type-Options": "nosniff",
    }


class TileService:
    """
    Resolves tile and metadata requests against the archive registry.

    Never mutates the registry. Every outcome is logged here so the HTTP
    layer only has to map exceptions to status codes.
    """

    def __init__(self, registry: ArchiveRegistry, cache_max_age: int = 3600):
        self.registry = registry
        self.cache_max_age = cache_max_age

    def get_tile(self, name: str, z: int, x: int, y: int) -> TileResponse:
        """
        Return the tile at z/x/y of archive `name`.

        Raises:
            ArchiveNotFound: unknown archive, or one that failed to load.
            ArchiveNotReady: archive still opening.
            TileEmpty: the archive has no tile at that coordinate.
            TileFetchError: any other reader failure.
        """
        coord = TileCoord(z, x, y)
        ctx = {"archive": name, "tile": str(coord)}
        handle = self._ready_handle(name, ctx)
        try:
            data, reader_headers = handle.reader.get_tile(*coord.zxy)  # type: ignore[union-attr]
        except TileNotFound:
            log.info("tile empty", extra={"extra": ctx})
            raise TileEmpty(f"{name}/{coord}") from None
        except Exception as e:
            log.error("error serving tile", exc_info=True, extra={"extra": ctx})
            raise TileFetchError(name, e) from e

        headers = default_tile_headers(self.cache_max_age)
        headers.update(reader_headers or {})
        resp = TileResponse(data=data, headers=headers)
        log.info("tile served", extra={"extra": {**ctx, **resp.to_meta()}})
        return resp

    def get_metadata(self, name: str) -> Dict[str, Any]:
        ctx = {"archive": name}
        handle = self._ready_handle(name, ctx)
        try:
            info = handle.reader.get_info()  # type: ignore[union-attr]
            # same rules the JSON response renderer applies
            json.dumps(info, allow_nan=False)
        except Exception as e:
            log.error("error loading metadata", exc_info=True, extra={"extra": ctx})
            raise MetadataFetchError(name, e) from e
        log.info("metadata served", extra={"extra": ctx})
        return info

    def is_healthy(self) -> bool:
        return self.registry.all_ready()

    def _ready_handle(self, name: str, ctx: Dict[str, Any]) -> ArchiveHandle:
        try:
            handle = self.registry.lookup(name)
        except ArchiveNotFound:
            log.warning("archive not found", extra={"extra": ctx})
            raise
        if handle.status is ArchiveStatus.LOADING:
            log.warning("archive not ready", extra={"extra": ctx})
            raise ArchiveNotReady(name)
        if not handle.ready:
            # failed (or already closed during shutdown): not servable
            log.warning("archive not found", extra={"extra": {**ctx, "status": handle.status.value}})
            raise ArchiveNotFound(name)
        return handle
