"""
MBTiles Tile Server

- Scans a directory for `*.mbtiles` archives and opens each one read-only
- Serves /tiles/{file}/{z}/{x}/{y}.mvt (raw tile bytes) and /metadata/{file} (JSON)
- /health reports 200 once at least one archive is ready, 503 before
- /archives lists discovered archives and their load status
"""
