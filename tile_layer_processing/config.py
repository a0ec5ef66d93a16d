import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Tuple

import pandas as pd
import yaml

from .errors import ConfigurationError
from .models import AttributeRenameRule, LayerOptions, LayerSpec

logger = logging.getLogger(__name__)

# Defaults mirror the repository layout the CI workflow runs against
DEFAULT_SOURCE_DIR = Path("source")
DEFAULT_CONFIG_PATH = Path("config") / "tiles.yml"
DEFAULT_RENAME_TABLE = DEFAULT_SOURCE_DIR / "list.csv"
DEFAULT_WORK_DIR = Path("processed")
DEFAULT_SITE_DIR = Path("_site")
SOURCE_SUFFIXES = (".geojson", ".fgb")


@dataclass
class PipelineSettings:
    source_dir: Path = DEFAULT_SOURCE_DIR
    config_path: Path = DEFAULT_CONFIG_PATH
    rename_table: Path = DEFAULT_RENAME_TABLE
    work_dir: Path = DEFAULT_WORK_DIR
    publish_root: Path = Path(".")
    site_dir: Path = DEFAULT_SITE_DIR
    tippecanoe_bin: str = field(
        default_factory=lambda: os.environ.get("TIPPECANOE_BIN", "tippecanoe")
    )
    git_bin: str = "git"
    max_workers: int = 1

    @property
    def merged_path(self) -> Path:
        return self.work_dir / "merged.fgb"

    @property
    def tiles_root(self) -> Path:
        return self.work_dir / "tiles"

    @property
    def canonical_tiles_dir(self) -> Path:
        return self.tiles_root / "tiles"

    @property
    def tile_sizes_path(self) -> Path:
        return self.tiles_root / "tile_sizes.csv"


def _parse_zoom_levels(name: str, zoom_levels: Any) -> Tuple[int, int]:
    if not isinstance(zoom_levels, dict):
        raise ConfigurationError(f"Layer '{name}': zoom_levels must be a mapping with min and max")
    try:
        zoom_min = zoom_levels["min"]
        zoom_max = zoom_levels["max"]
    except KeyError as e:
        raise ConfigurationError(f"Layer '{name}': zoom_levels is missing {e.args[0]}") from e

    for value in (zoom_min, zoom_max):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"Layer '{name}': zoom levels must be integers, got {value!r}")
    if zoom_min < 0 or zoom_min > zoom_max:
        raise ConfigurationError(
            f"Layer '{name}': invalid zoom range {zoom_min}..{zoom_max}"
        )
    return zoom_min, zoom_max


def parse_layer(entry: Any) -> LayerSpec:
    """Build a LayerSpec from one entry of the `layers` list."""
    if not isinstance(entry, dict):
        raise ConfigurationError(f"Layer entries must be mappings, got {entry!r}")

    name = entry.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigurationError(f"Layer is missing a name: {entry!r}")
    # Names become directory and file names under the work dir
    if "/" in name or os.sep in name or ".." in name or Path(name).is_absolute():
        raise ConfigurationError(f"Layer '{name}': name must not contain path separators or '..'")
    if "zoom_levels" not in entry:
        raise ConfigurationError(f"Layer '{name}': zoom_levels is required")
    zoom_min, zoom_max = _parse_zoom_levels(name, entry["zoom_levels"])

    dissolve_fields = entry.get("dissolve_fields") or []
    if not isinstance(dissolve_fields, list) or not all(
        isinstance(f, str) for f in dissolve_fields
    ):
        raise ConfigurationError(f"Layer '{name}': dissolve_fields must be a list of strings")
    if len(set(dissolve_fields)) != len(dissolve_fields):
        raise ConfigurationError(f"Layer '{name}': dissolve_fields contains duplicates")

    options = entry.get("options") or {}
    if not isinstance(options, dict):
        raise ConfigurationError(f"Layer '{name}': options must be a mapping")

    return LayerSpec(
        name=name,
        zoom_min=zoom_min,
        zoom_max=zoom_max,
        dissolve_fields=tuple(dissolve_fields),
        options=LayerOptions.from_dict(options),
        raw_options=dict(options),
    )


def load_layer_config(config_path: Path) -> List[LayerSpec]:
    """
    Load the layer configuration document.

    Raises ConfigurationError when the file is missing, is not valid YAML,
    has no `layers` list, or declares the same layer name twice.
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Layer configuration not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse {config_path}: {e}") from e

    if not isinstance(config, dict) or not isinstance(config.get("layers"), list):
        raise ConfigurationError(f"{config_path} must contain a 'layers' list")

    layers = [parse_layer(entry) for entry in config["layers"]]

    seen = set()
    for layer in layers:
        if layer.name in seen:
            raise ConfigurationError(f"Duplicate layer name '{layer.name}' in {config_path}")
        seen.add(layer.name)

    if not layers:
        logger.warning(f"No layers configured in {config_path}")
    logger.info(f"Loaded {len(layers)} layer(s) from {config_path}")
    return layers


def load_rename_rules(table_path: Path) -> Optional[List[AttributeRenameRule]]:
    """
    Load the optional attribute rename table.

    Returns None when the table does not exist. Column 0 holds the old
    attribute name and column 1 the new one; the first row is a header.
    """
    if not table_path.exists():
        logger.debug(f"No rename table at {table_path}")
        return None

    try:
        df = pd.read_csv(table_path, header=0, dtype=str, skipinitialspace=True)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Could not parse rename table {table_path}: {e}") from e

    if df.shape[1] < 2:
        raise ConfigurationError(
            f"Rename table {table_path} needs two columns (old name, new name)"
        )

    rules = []
    for index, row in df.iterrows():
        old_name, new_name = row.iloc[0], row.iloc[1]
        if pd.isna(old_name) or pd.isna(new_name) or not old_name.strip() or not new_name.strip():
            # header is line 1, so data row N is line N + 2
            raise ConfigurationError(f"Rename table {table_path}: malformed row at line {index + 2}")
        rules.append(AttributeRenameRule(old_name.strip(), new_name.strip()))

    old_names = [r.old_name for r in rules]
    if len(set(old_names)) != len(old_names):
        raise ConfigurationError(f"Rename table {table_path} renames an attribute twice")

    logger.info(f"Loaded {len(rules)} rename rule(s) from {table_path}")
    return rules
