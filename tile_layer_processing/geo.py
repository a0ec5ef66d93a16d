import logging
import math
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import geopandas as gpd
import pandas as pd
import pyogrio
from pyogrio.errors import DataLayerError, DataSourceError
from shapely.geometry import MultiPolygon, Polygon
from tqdm import tqdm

from .config import SOURCE_SUFFIXES
from .errors import ConfigurationError, DataError
from .models import AttributeRenameRule

# Increase the max object size for OGR GeoJSON driver to support large complex geometries
os.environ["OGR_GEOJSON_MAX_OBJ_SIZE"] = "0"

logger = logging.getLogger(__name__)

DRIVER = "FlatGeobuf"
TARGET_CRS = "EPSG:4326"
GEOMETRY_COLUMN = "geometry"
_READ_ERRORS = (DataSourceError, DataLayerError, OSError)


def find_source_files(source_dir: Path) -> List[Path]:
    """List GeoJSON and FlatGeobuf sources, sorted by name."""
    if not source_dir.exists():
        return []
    return sorted(
        p for p in source_dir.iterdir() if p.is_file() and p.suffix.lower() in SOURCE_SUFFIXES
    )


def read_field_names(dataset_path: Path) -> List[str]:
    """Attribute names of a dataset, excluding the geometry column."""
    try:
        meta = pyogrio.read_info(dataset_path)
    except _READ_ERRORS as e:
        raise DataError(f"Could not read schema of {dataset_path}: {e}") from e
    return [str(name) for name in meta["fields"]]


def read_dataset(dataset_path: Path) -> gpd.GeoDataFrame:
    try:
        return pyogrio.read_dataframe(dataset_path)
    except _READ_ERRORS as e:
        raise DataError(f"Could not read {dataset_path}: {e}") from e


def _none_if_nan(value):
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def write_dataset(df: gpd.GeoDataFrame, output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    if output_path.exists():
        output_path.unlink()

    # Missing text values must reach OGR as None, not as float NaN
    df = df.copy()
    for column in df.columns:
        if column != GEOMETRY_COLUMN and df[column].dtype == object:
            df[column] = df[column].map(_none_if_nan)
    # FlatGeobuf refuses NULL geometries when it builds a spatial index
    try:
        pyogrio.write_dataframe(df, output_path, driver=DRIVER, SPATIAL_INDEX="NO")
    except _READ_ERRORS as e:
        raise DataError(f"Could not write {output_path}: {e}") from e
    return output_path


def to_multipolygon(geom):
    if geom is None or geom.is_empty:
        return geom
    if isinstance(geom, MultiPolygon):
        return geom
    if isinstance(geom, Polygon):
        return MultiPolygon([geom])
    # GeometryCollections from unions may carry stray lines or points
    polygons = [g for g in getattr(geom, "geoms", []) if isinstance(g, (Polygon, MultiPolygon))]
    parts = []
    for g in polygons:
        parts.extend(g.geoms if isinstance(g, MultiPolygon) else [g])
    if not parts:
        return None
    return MultiPolygon(parts)


def normalize_dataset(source_path: Path) -> gpd.GeoDataFrame:
    """
    Read one source file, cast it to MultiPolygon and reproject to WGS84.

    Sources without a declared CRS are assumed to already be in WGS84.
    """
    df = read_dataset(source_path)

    geom_types = set(df.geometry.dropna().geom_type.unique())
    unsupported = geom_types - {"Polygon", "MultiPolygon", "GeometryCollection"}
    if unsupported:
        raise DataError(
            f"{source_path.name} contains non-polygon geometries: {sorted(unsupported)}"
        )

    if df.crs is None:
        df = df.set_crs(TARGET_CRS)
    elif df.crs.to_epsg() != 4326:
        logger.debug(f"Reprojecting {source_path.name} from {df.crs} to {TARGET_CRS}")
        df = df.to_crs(TARGET_CRS)

    df[GEOMETRY_COLUMN] = df.geometry.apply(to_multipolygon)
    return drop_empty_geometries(df, source_path.name)


def drop_empty_geometries(df: gpd.GeoDataFrame, label: str) -> gpd.GeoDataFrame:
    """Remove features whose geometry is missing or empty."""
    empty = df.geometry.isna() | df.geometry.is_empty
    if empty.any():
        logger.warning(f"{label}: dropping {int(empty.sum())} feature(s) without polygon geometry")
        df = df[~empty].reset_index(drop=True)
    return df


def merge_sources(source_files: Sequence[Path], merged_path: Path) -> Optional[Path]:
    """
    Normalise and concatenate every source into one dataset.

    Returns None when there is nothing to merge; the caller decides whether
    that is fatal.
    """
    if not source_files:
        logger.warning("No source files found")
        return None

    frames = []
    for source_path in tqdm(source_files, desc="Normalizing", unit="file"):
        df = normalize_dataset(source_path)
        logger.debug(f"{source_path.name}: {len(df)} feature(s)")
        frames.append(df)

    merged = gpd.GeoDataFrame(
        pd.concat(frames, ignore_index=True), geometry=GEOMETRY_COLUMN, crs=TARGET_CRS
    )
    write_dataset(merged, merged_path)
    logger.info(f"Merged {len(source_files)} source file(s), {len(merged)} feature(s) -> {merged_path}")
    return merged_path


def plan_rename_columns(
    fields: Iterable[str], rules: Sequence[AttributeRenameRule]
) -> Tuple[Dict[str, str], List[str]]:
    """
    Work out the column mapping and output order for a rename pass.

    Output order is geometry, then renamed attributes in rule order, then
    every untouched attribute in dataset order.
    """
    fields = list(fields)
    missing = [r.old_name for r in rules if r.old_name not in fields]
    if missing:
        raise DataError(f"Rename table refers to missing attribute(s): {missing}")

    mapping = {r.old_name: r.new_name for r in rules}
    renamed = [r.new_name for r in rules]
    unchanged = [f for f in fields if f not in mapping]
    columns = renamed + unchanged

    clashes = sorted({c for c in columns if columns.count(c) > 1})
    if clashes or GEOMETRY_COLUMN in columns:
        raise ConfigurationError(
            f"Rename table produces duplicate attribute name(s): {clashes or [GEOMETRY_COLUMN]}"
        )
    return mapping, [GEOMETRY_COLUMN] + columns


def rename_attributes(dataset_path: Path, rules: Sequence[AttributeRenameRule]) -> Path:
    """
    Rename attributes of the dataset in place.

    The rewrite goes to a sibling file that only replaces the original once
    it has been fully written.
    """
    fields = read_field_names(dataset_path)
    mapping, columns = plan_rename_columns(fields, rules)

    staged_path = dataset_path.with_name(f"{dataset_path.stem}_renamed{dataset_path.suffix}")
    try:
        df = read_dataset(dataset_path).rename(columns=mapping)[columns]
        write_dataset(df, staged_path)
        try:
            os.replace(staged_path, dataset_path)
        except OSError as e:
            raise DataError(f"Could not replace {dataset_path.name} with renamed copy: {e}") from e
    finally:
        if staged_path.exists():
            staged_path.unlink()

    logger.info(f"Renamed {len(mapping)} attribute(s) in {dataset_path.name}")
    return dataset_path


def dissolve_dataset(dataset_path: Path, output_path: Path, group_fields: Sequence[str]) -> Path:
    """
    Union geometries sharing the same values across `group_fields`.

    Only the grouping fields survive. Missing values form their own group.
    """
    group_fields = list(group_fields)
    if not group_fields:
        raise ValueError("dissolve_dataset needs at least one grouping field")

    fields = read_field_names(dataset_path)
    missing = [f for f in group_fields if f not in fields]
    if missing:
        raise DataError(f"Dissolve field(s) {missing} not found in {dataset_path.name}")

    df = read_dataset(dataset_path)
    dissolved = df[group_fields + [GEOMETRY_COLUMN]].dissolve(
        by=group_fields, dropna=False, as_index=False
    )
    dissolved[GEOMETRY_COLUMN] = dissolved.geometry.apply(to_multipolygon)
    dissolved = drop_empty_geometries(dissolved, output_path.name)

    write_dataset(dissolved, output_path)
    logger.info(
        f"Dissolved {len(df)} feature(s) into {len(dissolved)} by {', '.join(group_fields)} -> {output_path.name}"
    )
    return output_path
