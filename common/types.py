from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple


class ArchiveStatus(str, Enum):
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class TileCoord:
    """XYZ tile address as requested by clients (y grows southwards)."""
    z: int
    x: int
    y: int

    def __post_init__(self) -> None:
        if self.z < 0 or self.x < 0 or self.y < 0:
            raise ValueError("tile coordinates must be >= 0")

    @property
    def zxy(self) -> Tuple[int, int, int]:
        return (self.z, self.x, self.y)

    def __str__(self) -> str:
        return f"{self.z}/{self.x}/{self.y}"


@dataclass(slots=True)
class TileResponse:
    """
    A served tile.

    Attributes:
        data: raw tile payload exactly as stored in the archive.
        headers: HTTP headers (defaults overlaid by archive-supplied values).
    """
    data: bytes
    headers: Dict[str, str] = field(default_factory=dict)

    def to_meta(self) -> Dict[str, Any]:
        """Loggable summary without the payload."""
        return {
            "bytes": len(self.data),
            "content_type": self.headers.get("Content-Type"),
            "content_encoding": self.headers.get("Content-Encoding"),
        }
