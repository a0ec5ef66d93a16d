import logging
import shutil
from pathlib import Path
from typing import Sequence

from tqdm import tqdm

logger = logging.getLogger(__name__)


def merge_tile_trees(layer_dirs: Sequence[Path], combined_dir: Path) -> Path:
    """
    Copy every per-layer tile tree into `combined_dir`.

    Trees are copied in the given order. A file already present at the same
    relative path is overwritten, so the last layer wins.
    """
    if combined_dir.exists():
        shutil.rmtree(combined_dir)
    combined_dir.mkdir(parents=True)

    for layer_dir in tqdm(layer_dirs, desc="Merging", unit="lyr"):
        overwritten = 0
        for src in layer_dir.rglob("*"):
            if not src.is_file():
                continue
            dst = combined_dir / src.relative_to(layer_dir)
            if dst.exists():
                overwritten += 1
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)
        if overwritten:
            logger.warning(f"{layer_dir.name}: replaced {overwritten} file(s) written by earlier layers")

    return combined_dir


def remove_layer_dirs(layer_dirs: Sequence[Path]) -> None:
    for layer_dir in layer_dirs:
        if layer_dir.exists():
            shutil.rmtree(layer_dir)


def promote_tree(combined_dir: Path, canonical_dir: Path) -> Path:
    """Replace `canonical_dir` with `combined_dir`."""
    if canonical_dir.exists():
        shutil.rmtree(canonical_dir)
    canonical_dir.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(combined_dir), str(canonical_dir))
    return canonical_dir


def combine_layers(layer_dirs: Sequence[Path], tiles_root: Path) -> Path:
    """Merge per-layer trees, drop them and move the result to `tiles_root/tiles`."""
    combined = merge_tile_trees(layer_dirs, tiles_root / "combined")
    remove_layer_dirs(layer_dirs)
    canonical = promote_tree(combined, tiles_root / "tiles")
    logger.info(f"Combined {len(layer_dirs)} layer(s) into {canonical}")
    return canonical
