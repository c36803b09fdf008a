#!/usr/bin/env python3
"""
Build a tiny MBTiles archive for local testing of the tile server.

Writes {out} with a metadata table and one gzipped placeholder vector tile
per requested zoom (tile 0/0 at each zoom's top-left corner), so that
/tiles/<name>/0/0/0.mvt and /metadata/<name> answer out of the box.

Examples:
  python scripts/build_sample_mbtiles.py --out tiles/output.mbtiles
  python scripts/build_sample_mbtiles.py --out tiles/roads.mbtiles --zoom 0 1 2
"""
from __future__ import annotations

import argparse
import gzip
import json
import sqlite3
from pathlib import Path
from typing import List

# layer "sample" with no features; enough for clients to decode
PLACEHOLDER_MVT = b"\x1a\x0c\x0a\x06sample\x28\x80\x20\x78\x02"


def write_mbtiles(out: Path, zooms: List[int], name: str) -> None:
    out.parent.mkdir(parents=True, exist_ok=True)
    if out.exists():
        out.unlink()
    meta = {
        "name": name,
        "format": "pbf",
        "minzoom": str(min(zooms)),
        "maxzoom": str(max(zooms)),
        "bounds": "-180.0,-85.0511,180.0,85.0511",
        "center": f"0,0,{min(zooms)}",
        "json": json.dumps({"vector_layers": [{"id": "sample", "fields": {}}]}),
    }
    conn = sqlite3.connect(str(out))
    try:
        conn.execute("CREATE TABLE metadata (name TEXT, value TEXT)")
        conn.execute(
            "CREATE TABLE tiles (zoom_level INTEGER, tile_column INTEGER, tile_row INTEGER, tile_data BLOB)"
        )
        conn.execute("CREATE UNIQUE INDEX tile_index ON tiles (zoom_level, tile_column, tile_row)")
        conn.executemany("INSERT INTO metadata VALUES (?, ?)", list(meta.items()))
        data = gzip.compress(PLACEHOLDER_MVT)
        for z in zooms:
            # XYZ (0, 0) is TMS row 2^z - 1
            conn.execute("INSERT INTO tiles VALUES (?, 0, ?, ?)", (z, (1 << z) - 1, data))
        conn.commit()
    finally:
        conn.close()


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--out", default="tiles/output.mbtiles")
    ap.add_argument("--zoom", type=int, nargs="+", default=[0])
    ap.add_argument("--name", default=None, help="metadata name (default: file stem)")
    args = ap.parse_args()

    out = Path(args.out)
    write_mbtiles(out, sorted(set(args.zoom)), args.name or out.stem)
    print(f"Wrote {out} (zooms {sorted(set(args.zoom))})")


if __name__ == "__main__":
    main()
