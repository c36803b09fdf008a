"""
Unit tests for the MBTiles reader
"""

import gzip

import pytest

from tests.conftest import MVT_PAYLOAD, PNG_PAYLOAD, build_mbtiles
from tileserver.mbtiles import MBTiles, MBTilesError, TileNotFound, tile_headers


class TestMBTilesOpen:
    """Opening and closing archives"""

    def test_open_valid_archive(self, roads_path):
        reader = MBTiles(roads_path)
        assert not reader.closed
        reader.close()
        assert reader.closed

    def test_close_is_idempotent(self, roads_path):
        reader = MBTiles(roads_path)
        reader.close()
        reader.close()
        assert reader.closed

    def test_open_missing_file(self, tmp_path):
        with pytest.raises(MBTilesError, match="not found"):
            MBTiles(tmp_path / "nope.mbtiles")

    def test_open_corrupt_file(self, tiles_dir):
        with pytest.raises(MBTilesError):
            MBTiles(tiles_dir / "broken.mbtiles")

    def test_open_sqlite_without_tiles_table(self, tmp_path):
        import sqlite3
        path = tmp_path / "empty.mbtiles"
        conn = sqlite3.connect(str(path))
        conn.execute("CREATE TABLE metadata (name TEXT, value TEXT)")
        conn.commit()
        conn.close()
        with pytest.raises(MBTilesError, match="tiles"):
            MBTiles(path)


class TestMBTilesTiles:
    """Tile lookup"""

    def test_gzipped_vector_tile(self, roads_path):
        reader = MBTiles(roads_path)
        data, headers = reader.get_tile(0, 0, 0)
        assert gzip.decompress(data) == MVT_PAYLOAD
        assert headers["Content-Type"] == "application/x-protobuf"
        assert headers["Content-Encoding"] == "gzip"
        assert headers["Last-Modified"].endswith("GMT")
        assert headers["ETag"].startswith('"')
        reader.close()

    def test_y_is_flipped_to_tms(self, roads_path):
        reader = MBTiles(roads_path)
        data, headers = reader.get_tile(2, 1, 3)
        assert data == MVT_PAYLOAD
        assert "Content-Encoding" not in headers
        with pytest.raises(TileNotFound):
            reader.get_tile(2, 1, 0)
        reader.close()

    def test_missing_tile(self, roads_path):
        reader = MBTiles(roads_path)
        with pytest.raises(TileNotFound, match="Tile does not exist"):
            reader.get_tile(1, 1, 1)
        reader.close()

    def test_coordinate_outside_grid(self, roads_path):
        reader = MBTiles(roads_path)
        with pytest.raises(TileNotFound):
            reader.get_tile(0, 1, 0)
        with pytest.raises(TileNotFound):
            reader.get_tile(3, 0, 8)
        reader.close()

    def test_read_after_close(self, roads_path):
        reader = MBTiles(roads_path)
        reader.close()
        with pytest.raises(MBTilesError, match="closed"):
            reader.get_tile(0, 0, 0)

    def test_sniff_headers(self):
        assert tile_headers(PNG_PAYLOAD) == {"Content-Type": "image/png"}
        assert tile_headers(b"\xff\xd8\xff\xe0")["Content-Type"] == "image/jpeg"
        assert tile_headers(b"RIFF\x00\x00\x00\x00WEBPVP8 ")["Content-Type"] == "image/webp"
        assert tile_headers(b"\x78\x9c\x00")["Content-Encoding"] == "deflate"
        assert tile_headers(MVT_PAYLOAD) == {"Content-Type": "application/x-protobuf"}


class TestMBTilesInfo:
    """Metadata parsing"""

    def test_info_fields(self, roads_path):
        reader = MBTiles(roads_path)
        info = reader.get_info()
        reader.close()
        assert info["id"] == "roads"
        assert info["basename"] == "roads.mbtiles"
        assert info["format"] == "pbf"
        assert info["minzoom"] == 0
        assert info["maxzoom"] == 5
        assert info["bounds"] == [-10.5, 40.0, 3.5, 44.0]
        assert info["center"] == [-3.5, 42.0, 2.0]
        assert info["attribution"] == "test data"
        assert info["vector_layers"][0]["id"] == "water"
        assert "json" not in info
        assert info["filesize"] > 0

    def test_info_infers_zoom_and_defaults(self, tmp_path):
        path = build_mbtiles(
            tmp_path / "bare.mbtiles",
            tiles={(3, 1, 1): MVT_PAYLOAD, (6, 2, 2): MVT_PAYLOAD},
            metadata={"name": "bare", "bounds": "garbage"},
        )
        reader = MBTiles(path)
        info = reader.get_info()
        reader.close()
        assert info["minzoom"] == 3
        assert info["maxzoom"] == 6
        assert len(info["bounds"]) == 4
        assert info["center"][2] == 3

    def test_non_finite_numbers_fall_back(self, tmp_path):
        path = build_mbtiles(
            tmp_path / "odd.mbtiles",
            metadata={"minzoom": "0", "maxzoom": "2", "bounds": "nan,0,1,1", "center": "inf,0,1"},
        )
        reader = MBTiles(path)
        info = reader.get_info()
        reader.close()
        assert info["bounds"] == [-180.0, -85.0511, 180.0, 85.0511]
        assert info["center"] == [0.0, 0.0, 0]

    def test_blob_values_are_decoded(self, tmp_path):
        path = build_mbtiles(
            tmp_path / "blob.mbtiles",
            metadata={"description": "Caminos de Galicia".encode("utf-8"), "version": b"\xff2"},
        )
        reader = MBTiles(path)
        info = reader.get_info()
        reader.close()
        assert info["description"] == "Caminos de Galicia"
        assert info["version"] == "\ufffd2"

    def test_json_row_with_nan_is_skipped(self, tmp_path):
        path = build_mbtiles(
            tmp_path / "nan.mbtiles",
            metadata={"name": "nan", "json": '{"vector_layers": [], "scale": NaN}'},
        )
        reader = MBTiles(path)
        info = reader.get_info()
        reader.close()
        assert info["name"] == "nan"
        assert "scale" not in info
        assert "vector_layers" not in info
