"""
Shared fixtures: tiny MBTiles archives built on the fly with sqlite3.
"""

import gzip
import json
import logging
import os
import sqlite3
import sys
import threading
from pathlib import Path

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(project_root)

MVT_PAYLOAD = b"\x1a\x0b\x0a\x05water\x28\x80\x20\x78\x02"
PNG_PAYLOAD = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def build_mbtiles(path: Path, tiles=None, metadata=None) -> Path:
    """
    Write an MBTiles file. `tiles` maps XYZ (z, x, y) -> bytes; rows are
    stored TMS-flipped as the format requires.
    """
    if tiles is None:
        tiles = {(0, 0, 0): gzip.compress(MVT_PAYLOAD)}
    if metadata is None:
        metadata = {
            "name": path.stem,
            "format": "pbf",
            "minzoom": "0",
            "maxzoom": "5",
            "bounds": "-10.5,40.0,3.5,44.0",
            "center": "-3.5,42.0,2",
            "attribution": "test data",
            "json": json.dumps({"vector_layers": [{"id": "water", "fields": {}}]}),
        }
    conn = sqlite3.connect(str(path))
    try:
        conn.execute("CREATE TABLE metadata (name TEXT, value TEXT)")
        conn.execute(
            "CREATE TABLE tiles (zoom_level INTEGER, tile_column INTEGER, tile_row INTEGER, tile_data BLOB)"
        )
        conn.executemany("INSERT INTO metadata VALUES (?, ?)", list(metadata.items()))
        for (z, x, y), data in tiles.items():
            conn.execute("INSERT INTO tiles VALUES (?, ?, ?, ?)", (z, x, (1 << z) - 1 - y, data))
        conn.commit()
    finally:
        conn.close()
    return path


@pytest.fixture
def tiles_dir(tmp_path):
    """A directory with one good archive (`roads`) and one corrupt file (`broken`)."""
    d = tmp_path / "tiles"
    d.mkdir()
    build_mbtiles(
        d / "roads.mbtiles",
        tiles={
            (0, 0, 0): gzip.compress(MVT_PAYLOAD),
            (2, 1, 3): MVT_PAYLOAD,
        },
    )
    (d / "broken.mbtiles").write_bytes(b"this is not an sqlite database" * 10)
    (d / "notes.txt").write_text("ignored")
    return d


@pytest.fixture
def roads_path(tiles_dir):
    return tiles_dir / "roads.mbtiles"


@pytest.fixture
def restore_root_logger():
    """Lets a test call setup_logging and puts the root logger back afterwards."""
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    saved_flag = getattr(root, "_tileserver_configured", False)
    saved_hook = threading.excepthook
    root._tileserver_configured = False
    yield root
    for h in list(root.handlers):
        root.removeHandler(h)
        if h not in saved_handlers:
            h.close()
    for h in saved_handlers:
        root.addHandler(h)
    root.setLevel(saved_level)
    root._tileserver_configured = saved_flag
    threading.excepthook = saved_hook
