import logging
import shutil
import subprocess
from pathlib import Path
from typing import List

from .errors import ToolError
from .models import LayerSpec

logger = logging.getLogger(__name__)

TILE_EXTENSION = ".pbf"


def build_tippecanoe_command(
    input_file: Path, output_dir: Path, layer: LayerSpec, tippecanoe_bin: str = "tippecanoe"
) -> List[str]:
    """Command line that tiles one layer into a directory of uncompressed tiles."""
    cmd = [
        tippecanoe_bin,
        "-e", str(output_dir),
        "--no-tile-compression",
        f"-z{layer.zoom_max}", f"-Z{layer.zoom_min}",
        "--no-tile-size-limit",
        "--no-feature-limit",
        "-l", layer.name,
        "--description", layer.name,
    ]

    if layer.options.detect_shared_borders:
        cmd.append("--detect-shared-borders")
    if layer.options.no_simplification_shared_nodes:
        cmd.append("--no-simplification-of-shared-nodes")

    cmd.append(str(input_file))
    return cmd


def run_tippecanoe(cmd: List[str], layer_name: str) -> None:
    """Run tippecanoe and raise ToolError on any failure."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, encoding="utf-8", errors="replace"
        )
    except FileNotFoundError as e:
        raise ToolError(f"Tippecanoe executable not found: {cmd[0]}") from e

    if result.returncode != 0:
        logger.error(f"Tippecanoe failed for {layer_name} (Exit code {result.returncode})")
        logger.error(f"STDOUT: {result.stdout}")
        logger.error(f"STDERR: {result.stderr}")
        raise ToolError(
            f"Tippecanoe failed for layer '{layer_name}'",
            returncode=result.returncode,
            stderr=result.stderr,
        )


def layer_temp_dir(tiles_root: Path, layer: LayerSpec) -> Path:
    return tiles_root / f"{layer.name}_temp"


def generate_tile_layer(
    input_file: Path, tiles_root: Path, layer: LayerSpec, tippecanoe_bin: str = "tippecanoe"
) -> Path:
    """
    Tile one layer into its own temporary directory under `tiles_root`.

    Any leftovers from an earlier run are removed first so the directory only
    ever holds this layer's output.
    """
    output_dir = layer_temp_dir(tiles_root, layer)
    if output_dir.exists():
        shutil.rmtree(output_dir)
    output_dir.mkdir(parents=True)

    cmd = build_tippecanoe_command(input_file, output_dir, layer, tippecanoe_bin)
    run_tippecanoe(cmd, layer.name)

    tile_count = sum(1 for _ in output_dir.rglob(f"*{TILE_EXTENSION}"))
    logger.info(f"Layer {layer.name}: {tile_count} tile(s) at z{layer.zoom_min}-{layer.zoom_max}")
    return output_dir
