"""
Error taxonomy of the tile server.

Per-request errors are converted to HTTP statuses in tileserver.server;
only ArchiveDirectoryUnreadable is fatal (raised before serving starts).
"""
from __future__ import annotations

from typing import Optional


class TileServerError(Exception):
    """Base class for all tile server errors."""


class ArchiveDirectoryUnreadable(TileServerError):
    def __init__(self, directory: str, cause: Optional[BaseException] = None):
        super().__init__(f"cannot read archive directory: {directory}")
        self.directory = directory
        self.cause = cause


class ArchiveLoadFailure(TileServerError):
    """One archive failed to open; logged and excluded, never fatal."""

    def __init__(self, name: str, cause: BaseException):
        super().__init__(f"failed to load archive {name!r}: {cause}")
        self.name = name
        self.cause = cause


class ArchiveNotFound(TileServerError):
    def __init__(self, name: str):
        super().__init__(f"no such archive: {name!r}")
        self.name = name


class ArchiveNotReady(TileServerError):
    """The archive was discovered but its open has not settled yet."""

    def __init__(self, name: str):
        super().__init__(f"archive not loaded yet: {name!r}")
        self.name = name


class TileEmpty(TileServerError):
    """The archive has no tile at the requested coordinate (HTTP 204)."""


class TileFetchError(TileServerError):
    def __init__(self, name: str, cause: BaseException):
        super().__init__(f"error reading tile from {name!r}: {cause}")
        self.name = name
        self.cause = cause


class MetadataFetchError(TileServerError):
    def __init__(self, name: str, cause: BaseException):
        super().__init__(f"error reading metadata from {name!r}: {cause}")
        self.name = name
        self.cause = cause


class ShutdownTimeout(TileServerError):
    """In-flight requests did not finish within the shutdown window."""
