import csv
import json
import logging
import shutil
from pathlib import Path
from typing import List, Sequence

from .models import LayerSpec, RunContext, RunManifest, TileSizeRow
from .tiling import TILE_EXTENSION

logger = logging.getLogger(__name__)

TILE_SIZES_HEADER = ["zoom_level", "max_size_bytes"]
LAYERS_INFO_FILE = "layers_info.json"


def _zoom_sort_key(path: Path):
    return (0, int(path.name), "") if path.name.isdigit() else (1, 0, path.name)


def collect_tile_sizes(tiles_dir: Path) -> List[TileSizeRow]:
    """
    Largest tile per zoom directory, ordered by zoom level.

    Zoom directories without any tiles produce no row.
    """
    rows = []
    if not tiles_dir.exists():
        return rows

    for zoom_dir in sorted((p for p in tiles_dir.iterdir() if p.is_dir()), key=_zoom_sort_key):
        sizes = [p.stat().st_size for p in zoom_dir.rglob(f"*{TILE_EXTENSION}") if p.is_file()]
        if not sizes:
            logger.debug(f"No tiles in zoom directory {zoom_dir.name}")
            continue
        rows.append(TileSizeRow(zoom_level=zoom_dir.name, max_size_bytes=max(sizes)))
    return rows


def write_tile_sizes(rows: Sequence[TileSizeRow], output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f, lineterminator="\n")
        writer.writerow(TILE_SIZES_HEADER)
        for row in rows:
            writer.writerow([row.zoom_level, row.max_size_bytes])
    return output_path


def copy_layer_config(config_path: Path, tiles_dir: Path) -> Path:
    dst = tiles_dir / config_path.name
    shutil.copy2(config_path, dst)
    return dst


def write_layers_info(manifest: RunManifest, tiles_dir: Path) -> Path:
    output_path = tiles_dir / LAYERS_INFO_FILE
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(manifest.to_dict(), f, indent=2)
    return output_path


def write_run_report(
    ctx: RunContext,
    layers: Sequence[LayerSpec],
    tiles_dir: Path,
    tile_sizes_path: Path,
    config_path: Path,
) -> RunManifest:
    """Write tile_sizes.csv, a copy of the layer config and layers_info.json."""
    manifest = RunManifest(
        timestamp=ctx.timestamp,
        layers=list(layers),
        tile_sizes=collect_tile_sizes(tiles_dir),
    )

    write_tile_sizes(manifest.tile_sizes, tile_sizes_path)
    tiles_dir.mkdir(parents=True, exist_ok=True)
    copy_layer_config(config_path, tiles_dir)
    write_layers_info(manifest, tiles_dir)

    for row in manifest.tile_sizes:
        logger.info(f"z{row.zoom_level}: largest tile {row.max_size_bytes:,} bytes")
    return manifest
