from __future__ import annotations

import json
import math
import sqlite3
import threading
from email.utils import formatdate
from pathlib import Path
from typing import Any, Dict, Optional, Tuple


class MBTilesError(Exception):
    """Any failure opening or reading an MBTiles archive."""


class TileNotFound(MBTilesError):
    def __init__(self, z: int, x: int, y: int):
        super().__init__("Tile does not exist")
        self.zxy = (z, x, y)


# metadata rows whose values are numbers or number lists
_INT_KEYS = ("minzoom", "maxzoom")
_LIST_KEYS = ("bounds", "center")

DEFAULT_BOUNDS = [-180.0, -85.0511, 180.0, 85.0511]


def tile_headers(data: bytes) -> Dict[str, str]:
    """Content-Type / Content-Encoding sniffed from the payload magic bytes."""
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return {"Content-Type": "image/png"}
    if data[:2] == b"\xff\xd8":
        return {"Content-Type": "image/jpeg"}
    if data[:4] == b"GIF8":
        return {"Content-Type": "image/gif"}
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return {"Content-Type": "image/webp"}
    headers = {"Content-Type": "application/x-protobuf"}
    if data[:2] == b"\x1f\x8b":
        headers["Content-Encoding"] = "gzip"
    elif data[:2] == b"\x78\x9c":
        headers["Content-Encoding"] = "deflate"
    return headers


class MBTiles:
    """
    Read-only MBTiles archive.

    One SQLite connection per archive, shared across request threads and
    serialized with a lock. Clients address tiles in XYZ; the archive stores
    them in TMS rows, so `get_tile` flips y.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        if not self.path.is_file():
            raise MBTilesError(f"MBTiles not found: {self.path}")
        uri = self.path.resolve().as_uri() + "?mode=ro"
        try:
            self._conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            # fails with "file is not a database" / "no such table" on bad input
            self._conn.execute("SELECT 1 FROM tiles LIMIT 1").fetchall()
            self._conn.execute("SELECT name, value FROM metadata LIMIT 1").fetchall()
        except sqlite3.Error as e:
            self.close()
            raise MBTilesError(f"{self.path.name}: {e}") from e
        st = self.path.stat()
        self._mtime = st.st_mtime
        self._size = st.st_size

    @property
    def closed(self) -> bool:
        return self._conn is None

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def get_tile(self, z: int, x: int, y: int) -> Tuple[bytes, Dict[str, str]]:
        """
        Return (tile bytes, headers) for XYZ coordinate z/x/y.

        Raises TileNotFound when the archive has no such tile (including
        coordinates outside the 2^z grid), MBTilesError on database errors.
        """
        z, x, y = int(z), int(x), int(y)
        size = 1 << z if 0 <= z < 64 else 0
        if not (0 <= x < size and 0 <= y < size):
            raise TileNotFound(z, x, y)
        tms_y = size - 1 - y
        row = self._fetchone(
            "SELECT tile_data FROM tiles WHERE zoom_level = ? AND tile_column = ? AND tile_row = ?",
            (z, x, tms_y),
        )
        if row is None or row["tile_data"] is None:
            raise TileNotFound(z, x, y)
        data = bytes(row["tile_data"])
        headers = tile_headers(data)
        headers["Last-Modified"] = formatdate(self._mtime, usegmt=True)
        headers["ETag"] = f'"{self._size}-{int(self._mtime * 1000)}"'
        return data, headers

    def get_info(self) -> Dict[str, Any]:
        """
        Archive metadata as a JSON-ready dict.

        The `metadata` table is flattened into the result; `bounds`/`center`
        become number lists, `minzoom`/`maxzoom` ints, and the `json` row (if
        any) is merged in so `vector_layers` appears at the top level.
        """
        rows = self._fetchall("SELECT name, value FROM metadata")
        info: Dict[str, Any] = {
            "id": self.path.stem,
            "basename": self.path.name,
            "filesize": self._size,
            "scheme": "tms",
        }
        for row in rows:
            name, value = _text(row["name"]), _text(row["value"])
            if name == "json":
                try:
                    extra = json.loads(value, parse_constant=_reject_constant)
                except (TypeError, ValueError):
                    continue
                if isinstance(extra, dict):
                    info.update(extra)
            elif name in _INT_KEYS:
                parsed = _parse_int(value)
                if parsed is not None:
                    info[name] = parsed
            elif name in _LIST_KEYS:
                parsed_list = _parse_numbers(value)
                if parsed_list is not None:
                    info[name] = parsed_list
            else:
                info[name] = value

        if "minzoom" not in info or "maxzoom" not in info:
            row = self._fetchone("SELECT MIN(zoom_level) AS minz, MAX(zoom_level) AS maxz FROM tiles", ())
            if row is not None and row["minz"] is not None:
                info.setdefault("minzoom", int(row["minz"]))
                info.setdefault("maxzoom", int(row["maxz"]))
        if len(info.get("bounds") or []) != 4:
            info["bounds"] = list(DEFAULT_BOUNDS)
        if len(info.get("center") or []) != 3:
            w, s, e, n = info["bounds"]
            zoom = info.get("minzoom", 0)
            info["center"] = [(w + e) / 2.0, (s + n) / 2.0, zoom]
        return info

    # -------- internals --------

    def _conn_or_raise(self) -> sqlite3.Connection:
        if self._conn is None:
            raise MBTilesError(f"{self.path.name}: archive is closed")
        return self._conn

    def _fetchone(self, sql: str, params: tuple) -> Optional[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn_or_raise().execute(sql, params).fetchone()
            except sqlite3.Error as e:
                raise MBTilesError(f"{self.path.name}: {e}") from e

    def _fetchall(self, sql: str) -> list:
        with self._lock:
            try:
                return self._conn_or_raise().execute(sql).fetchall()
            except sqlite3.Error as e:
                raise MBTilesError(f"{self.path.name}: {e}") from e


def _parse_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _parse_numbers(value: Optional[str]) -> Optional[list]:
    if not value:
        return None
    out = []
    for part in str(value).split(","):
        try:
            number = float(part)
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        out.append(number)
    return out


def _text(value: Any) -> Any:
    """BLOB metadata values are decoded; everything else passes through."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    return value


def _reject_constant(token: str) -> Any:
    # NaN / Infinity are not valid JSON
    raise ValueError(f"invalid JSON constant: {token}")
