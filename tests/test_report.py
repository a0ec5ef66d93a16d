"""
Test tile size reporting and run metadata.
"""
import csv
import json

from tile_layer_processing.models import LayerOptions, LayerSpec, RunContext
from tile_layer_processing.report import (
    collect_tile_sizes,
    write_run_report,
    write_tile_sizes,
)


def write_tile(root, rel, size):
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)


def read_csv_rows(path):
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.reader(f))


class TestTileSizes:
    """Per-zoom maximum tile size."""

    def test_max_per_zoom_sorted_numerically(self, tmp_path):
        write_tile(tmp_path, "10/1/1.pbf", 5)
        write_tile(tmp_path, "2/0/0.pbf", 10)
        write_tile(tmp_path, "2/1/0.pbf", 30)
        write_tile(tmp_path, "2/1/1.pbf", 20)
        (tmp_path / "metadata.json").write_text("{}")

        rows = collect_tile_sizes(tmp_path)

        assert [(r.zoom_level, r.max_size_bytes) for r in rows] == [("2", 30), ("10", 5)]

    def test_zoom_without_tiles_is_skipped(self, tmp_path):
        write_tile(tmp_path, "3/0/0.pbf", 7)
        (tmp_path / "4" / "0").mkdir(parents=True)
        write_tile(tmp_path, "5/0/notes.txt", 100)

        rows = collect_tile_sizes(tmp_path)

        assert [r.zoom_level for r in rows] == ["3"]

    def test_empty_tree_gives_header_only(self, tmp_path):
        tiles = tmp_path / "tiles"
        tiles.mkdir()
        out = write_tile_sizes(collect_tile_sizes(tiles), tmp_path / "tile_sizes.csv")

        assert out.read_text(encoding="utf-8") == "zoom_level,max_size_bytes\n"


class TestRunReport:
    """tile_sizes.csv, config copy and layers_info.json."""

    def test_writes_all_artifacts(self, tmp_path):
        config = tmp_path / "config" / "tiles.yml"
        config.parent.mkdir()
        config.write_text("layers: []\n# original text\n", encoding="utf-8")
        tiles = tmp_path / "tiles_root" / "tiles"
        write_tile(tiles, "0/0/0.pbf", 12)
        layers = [
            LayerSpec("regions", 0, 4, ("region_id",), LayerOptions(True), {"detect_shared_borders": True}),
            LayerSpec("parcels", 10, 14),
        ]
        ctx = RunContext(timestamp="20240102_030405")

        manifest = write_run_report(ctx, layers, tiles, tmp_path / "tiles_root" / "tile_sizes.csv", config)

        assert read_csv_rows(tmp_path / "tiles_root" / "tile_sizes.csv") == [
            ["zoom_level", "max_size_bytes"],
            ["0", "12"],
        ]
        assert (tiles / "tiles.yml").read_text(encoding="utf-8") == config.read_text(encoding="utf-8")

        info = json.loads((tiles / "layers_info.json").read_text(encoding="utf-8"))
        assert info == {
            "timestamp": "20240102_030405",
            "layers": [
                {
                    "name": "regions",
                    "zoom_levels": {"min": 0, "max": 4},
                    "dissolve_fields": ["region_id"],
                    "options": {"detect_shared_borders": True},
                },
                {
                    "name": "parcels",
                    "zoom_levels": {"min": 10, "max": 14},
                    "dissolve_fields": [],
                    "options": {},
                },
            ],
        }
        assert manifest.timestamp == "20240102_030405"
        assert len(manifest.tile_sizes) == 1
