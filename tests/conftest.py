import subprocess
from pathlib import Path

import geopandas as gpd
import pyogrio
import pytest
from shapely.geometry import box


def square(x: float, y: float, size: float = 1.0):
    return box(x, y, x + size, y + size)


def write_polygons(path: Path, records, driver: str = "FlatGeobuf") -> Path:
    """Write a list of attribute dicts, each with a `geometry`, to `path`."""
    df = gpd.GeoDataFrame(records, geometry="geometry", crs="EPSG:4326")
    path.parent.mkdir(parents=True, exist_ok=True)
    pyogrio.write_dataframe(df, path, driver=driver)
    return path


def _flag_value(cmd, flag):
    return cmd[cmd.index(flag) + 1]


class FakeTippecanoe:
    """Stands in for tippecanoe: writes one tile per zoom into the -e directory."""

    def __init__(self, fail_layers=()):
        self.calls = []
        self.fail_layers = set(fail_layers)

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        layer = _flag_value(cmd, "-l")
        if layer in self.fail_layers:
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="boom")

        output_dir = Path(_flag_value(cmd, "-e"))
        max_zoom = int(next(a for a in cmd if a.startswith("-z"))[2:])
        min_zoom = int(next(a for a in cmd if a.startswith("-Z"))[2:])
        for z in range(min_zoom, max_zoom + 1):
            tile = output_dir / str(z) / "0" / "0.pbf"
            tile.parent.mkdir(parents=True, exist_ok=True)
            tile.write_bytes(f"{layer}:{z}".encode() * (z + 1))
        (output_dir / "metadata.json").write_text(f'{{"name": "{layer}"}}')
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    def commands_for(self, layer_name):
        return [c for c in self.calls if _flag_value(c, "-l") == layer_name]


@pytest.fixture
def fake_tippecanoe(monkeypatch):
    fake = FakeTippecanoe()
    monkeypatch.setattr("tile_layer_processing.tiling.subprocess.run", fake)
    return fake


@pytest.fixture
def regions_dataset(tmp_path):
    """Five parcels across three region ids."""
    return write_polygons(
        tmp_path / "regions.fgb",
        [
            {"region_id": "north", "old_a": "x", "b": 1, "c": "p", "geometry": square(0, 0)},
            {"region_id": "north", "old_a": "y", "b": 2, "c": "q", "geometry": square(1, 0)},
            {"region_id": "south", "old_a": "z", "b": 3, "c": "r", "geometry": square(0, 5)},
            {"region_id": "east", "old_a": "w", "b": 4, "c": "s", "geometry": square(5, 5)},
            {"region_id": "east", "old_a": "v", "b": 5, "c": "t", "geometry": square(6, 5)},
        ],
    )


TIPPECANOE_SCRIPT = """#!/bin/sh
# Writes one tile per zoom holding the layer name; used where subprocess.run
# cannot be patched because tiling runs in worker processes.
out=""
layer=""
zmin=0
zmax=0
while [ $# -gt 1 ]; do
  case "$1" in
    -e) out="$2"; shift ;;
    -l) layer="$2"; shift ;;
    -z*) zmax="${1#-z}" ;;
    -Z*) zmin="${1#-Z}" ;;
  esac
  shift
done

case ",$TILES_SLOW_LAYERS," in
  *",$layer,"*) sleep 1 ;;
esac
case ",$TILES_FAIL_LAYERS," in
  *",$layer,"*) echo "cannot tile $layer" >&2; exit 1 ;;
esac

z=$zmin
while [ "$z" -le "$zmax" ]; do
  mkdir -p "$out/$z/0"
  printf '%s' "$layer" > "$out/$z/0/0.pbf"
  z=$((z + 1))
done
"""


@pytest.fixture
def tippecanoe_script(tmp_path):
    """An executable stand-in for tippecanoe, visible to worker processes."""
    script = tmp_path / "bin" / "tippecanoe"
    script.parent.mkdir(parents=True, exist_ok=True)
    script.write_text(TIPPECANOE_SCRIPT, encoding="utf-8")
    script.chmod(0o755)
    return script
