from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from common.types import ArchiveStatus
from tileserver.errors import ArchiveDirectoryUnreadable, ArchiveLoadFailure, ArchiveNotFound
from tileserver.mbtiles import MBTiles


log = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".mbtiles"

Opener = Callable[[Path], MBTiles]


@dataclass(eq=False)
class ArchiveHandle:
    """One discovered archive file and the state of its reader."""
    name: str
    path: Path
    status: ArchiveStatus = ArchiveStatus.LOADING
    reader: Optional[MBTiles] = field(default=None, repr=False)
    error: Optional[BaseException] = field(default=None, repr=False)
    closed: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def ready(self) -> bool:
        return self.status is ArchiveStatus.READY and not self.closed

    def settle(self, reader: Optional[MBTiles], error: Optional[BaseException] = None) -> None:
        """Record the outcome of the open; a handle closed meanwhile drops the reader."""
        with self._lock:
            if self.status is not ArchiveStatus.LOADING:
                raise RuntimeError(f"archive {self.name!r} already settled")
            if error is not None:
                self.error = error
                self.status = ArchiveStatus.FAILED
                return
            self.reader = reader
            self.status = ArchiveStatus.READY
            if self.closed:
                self._close_reader()

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
            self._close_reader()

    def _close_reader(self) -> None:
        if self.reader is not None:
            self.reader.close()


class ArchiveRegistry:
    """
    Maps archive name (file stem) -> ArchiveHandle for every *.mbtiles file in `root`.

    Keys are fixed by `discover()` and never change afterwards; `load()` only
    moves each handle from loading to ready/failed, once. Request handlers
    read the mapping without locking.
    """

    def __init__(self, root: Path, opener: Opener = MBTiles):
        self.root = Path(root)
        self._opener = opener
        self._handles: Dict[str, ArchiveHandle] = {}
        self._discovered = False

    # -------- public API --------

    def discover(self) -> List[str]:
        """List archive files and register a loading handle per file. Idempotent."""
        if self._discovered:
            return list(self._handles)
        try:
            entries = sorted(p for p in self.root.iterdir() if p.suffix == ARCHIVE_SUFFIX)
        except OSError as e:
            raise ArchiveDirectoryUnreadable(str(self.root), e) from e

        handles: Dict[str, ArchiveHandle] = {}
        for path in entries:
            if not path.is_file():
                continue
            handles[path.stem] = ArchiveHandle(name=path.stem, path=path)
        self._handles = handles
        self._discovered = True
        log.info(
            "archives discovered",
            extra={"extra": {"dir": str(self.root), "archives": list(handles)}},
        )
        if not handles:
            log.warning("no archives found", extra={"extra": {"dir": str(self.root)}})
        return list(handles)

    async def load(self) -> None:
        """Open every loading handle concurrently; each settles independently."""
        pending = [h for h in self._handles.values() if h.status is ArchiveStatus.LOADING]
        await asyncio.gather(*(asyncio.to_thread(self._open, h) for h in pending))
        log.info("archive loading finished", extra={"extra": self.stats()})

    async def scan(self) -> None:
        self.discover()
        await self.load()

    def lookup(self, name: str) -> ArchiveHandle:
        try:
            return self._handles[name]
        except KeyError:
            raise ArchiveNotFound(name) from None

    def all_ready(self) -> bool:
        return any(h.ready for h in self._handles.values())

    def close_all(self) -> None:
        for h in self._handles.values():
            try:
                h.close()
            except Exception:
                log.exception("error closing archive", extra={"extra": {"archive": h.name}})
        log.info("archives closed", extra={"extra": {"count": len(self._handles)}})

    def names(self) -> List[str]:
        return list(self._handles)

    def summary(self) -> List[Dict[str, str]]:
        return [{"name": h.name, "status": h.status.value} for h in self._handles.values()]

    def stats(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in ArchiveStatus}
        for h in self._handles.values():
            counts[h.status.value] += 1
        return counts

    # -------- internals --------

    def _open(self, handle: ArchiveHandle) -> None:
        try:
            reader = self._opener(handle.path)
        except Exception as e:
            failure = ArchiveLoadFailure(handle.name, e)
            log.error(str(failure), extra={"extra": {"archive": handle.name, "path": str(handle.path)}})
            handle.settle(None, failure)
            return
        handle.settle(reader)
        log.info("archive loaded", extra={"extra": {"archive": handle.name, "path": str(handle.path)}})
