import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

from .errors import ToolError
from .models import RunContext
from .report import LAYERS_INFO_FILE

logger = logging.getLogger(__name__)


def destination_name(ctx: RunContext) -> str:
    return "tiles" if ctx.is_production else f"{ctx.timestamp}-tiles"


def copy_optional(src: Path, dst_dir: Path) -> Optional[Path]:
    """Copy `src` into `dst_dir` if it exists; None when it does not."""
    if not src.exists():
        return None
    dst = dst_dir / src.name
    shutil.copy2(src, dst)
    return dst


def _reset_dir(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)


def _clear_contents(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    for child in path.iterdir():
        if child.is_dir():
            shutil.rmtree(child)
        else:
            child.unlink()


def copy_output(tiles_dir: Path, tile_sizes_path: Path, config_name: str, dest: Path) -> Path:
    """Copy the tile tree plus its report files into `dest`."""
    dest.mkdir(parents=True, exist_ok=True)
    shutil.copytree(tiles_dir, dest, dirs_exist_ok=True)
    shutil.copy2(tile_sizes_path, dest / tile_sizes_path.name)
    shutil.copy2(tiles_dir / config_name, dest / config_name)

    if copy_optional(tiles_dir / LAYERS_INFO_FILE, dest) is None:
        logger.warning(f"{LAYERS_INFO_FILE} missing from {tiles_dir}, not copied to {dest}")
    return dest


def publish(
    ctx: RunContext,
    tiles_dir: Path,
    tile_sizes_path: Path,
    config_name: str,
    publish_root: Path,
    site_dir: Path,
) -> List[Path]:
    """
    Copy the finished build to its publish location and the site staging dir.

    Production builds replace `tiles/` and empty the site dir first; test
    builds go to a timestamped directory next to earlier ones.
    """
    name = destination_name(ctx)
    repo_dest = publish_root / name
    site_dest = site_dir / name

    if ctx.is_production:
        _reset_dir(repo_dest)
        _clear_contents(site_dir)

    published = [
        copy_output(tiles_dir, tile_sizes_path, config_name, repo_dest),
        copy_output(tiles_dir, tile_sizes_path, config_name, site_dest),
    ]
    logger.info(f"Published {ctx.build_label.lower()} to {repo_dest} and {site_dest}")
    return published


def _git(git_bin: str, args: List[str], cwd: Path) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(
            [git_bin] + args, cwd=cwd, capture_output=True, text=True
        )
    except FileNotFoundError as e:
        raise ToolError(f"git executable not found: {git_bin}") from e


def _check(result: subprocess.CompletedProcess, action: str) -> None:
    if result.returncode != 0:
        raise ToolError(
            f"git {action} failed: {result.stderr.strip() or result.stdout.strip()}",
            returncode=result.returncode,
            stderr=result.stderr,
        )


def commit_message(ctx: RunContext) -> str:
    return f"Update vector tiles - {ctx.timestamp} ({ctx.build_label})"


def commit_and_push(ctx: RunContext, publish_root: Path, git_bin: str = "git") -> bool:
    """
    Commit the published directory and push it.

    Returns False when there was nothing to commit.
    """
    dest = destination_name(ctx)
    _check(_git(git_bin, ["add", dest], publish_root), "add")

    staged = _git(git_bin, ["diff", "--cached", "--quiet"], publish_root)
    if staged.returncode == 0:
        logger.info("No changes to commit")
        return False
    if staged.returncode != 1:
        _check(staged, "diff")

    _check(_git(git_bin, ["commit", "-m", commit_message(ctx)], publish_root), "commit")
    _check(_git(git_bin, ["push"], publish_root), "push")
    logger.info(f"Committed and pushed {dest}")
    return True
