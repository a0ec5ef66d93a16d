import argparse
import logging
import os
import sys
from pathlib import Path

from .config import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_RENAME_TABLE,
    DEFAULT_SITE_DIR,
    DEFAULT_SOURCE_DIR,
    DEFAULT_WORK_DIR,
    PipelineSettings,
)
from .errors import PipelineError
from .models import RunContext
from .orchestrator import TilePipeline, setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build vector tile layers from polygon sources and publish them"
    )
    parser.add_argument("--source", default=str(DEFAULT_SOURCE_DIR), help="Directory of .geojson/.fgb sources")
    parser.add_argument("--config", default=str(DEFAULT_CONFIG_PATH), help="Layer configuration (YAML)")
    parser.add_argument("--rename-table", default=str(DEFAULT_RENAME_TABLE), help="Optional attribute rename CSV")
    parser.add_argument("--work-dir", default=str(DEFAULT_WORK_DIR), help="Directory for intermediate files")
    parser.add_argument("--publish-root", default=".", help="Repository root the build is published into")
    parser.add_argument("--site-dir", default=str(DEFAULT_SITE_DIR), help="Static site staging directory")
    parser.add_argument("--production", action="store_true", help="Production build (default: timestamped test build)")
    parser.add_argument("--no-publish", action="store_true", help="Stop after writing the tile tree and reports")
    parser.add_argument("--commit", action="store_true", help="git commit and push the published directory")
    parser.add_argument("--parallel", type=int, default=1, help="Number of layers tiled in parallel (default: 1)")
    parser.add_argument(
        "--tippecanoe",
        default=os.environ.get("TIPPECANOE_BIN", "tippecanoe"),
        help="tippecanoe executable",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    log_level = logging.DEBUG if args.debug else logging.INFO
    setup_logging(log_level)

    settings = PipelineSettings(
        source_dir=Path(args.source),
        config_path=Path(args.config),
        rename_table=Path(args.rename_table),
        work_dir=Path(args.work_dir),
        publish_root=Path(args.publish_root),
        site_dir=Path(args.site_dir),
        tippecanoe_bin=args.tippecanoe,
        max_workers=max(1, args.parallel),
    )
    ctx = RunContext.create(is_production=args.production)

    pipeline = TilePipeline(settings, ctx)
    try:
        pipeline.run(do_publish=not args.no_publish, commit=args.commit)
    except PipelineError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
