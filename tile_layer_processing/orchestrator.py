import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from tqdm import tqdm

from .config import PipelineSettings, load_layer_config, load_rename_rules
from .geo import dissolve_dataset, find_source_files, merge_sources, rename_attributes
from .merge import combine_layers
from .models import AttributeRenameRule, LayerSpec, RunContext, RunManifest
from .publish import commit_and_push, publish
from .report import write_run_report
from .tiling import generate_tile_layer

logger = logging.getLogger(__name__)


class TqdmLoggingHandler(logging.Handler):
    def emit(self, record):
        try:
            msg = self.format(record)
            tqdm.write(msg)
            self.flush()
        except Exception:
            self.handleError(record)


def setup_logging(level=logging.INFO):
    # Remove existing handlers
    main_logger = logging.getLogger()
    for handler in main_logger.handlers[:]:
        main_logger.removeHandler(handler)

    handler = TqdmLoggingHandler()
    formatter = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s", datefmt="%H:%M:%S"
    )
    handler.setFormatter(formatter)
    main_logger.addHandler(handler)
    main_logger.setLevel(level)


def _generate_layer_task(
    input_file: Path, tiles_root: Path, layer: LayerSpec, tippecanoe_bin: str, log_level: int
) -> Path:
    # Configure logging for worker process
    logging.basicConfig(
        level=log_level, format="%(asctime)s - %(levelname)s - %(message)s"
    )
    return generate_tile_layer(input_file, tiles_root, layer, tippecanoe_bin)


class TilePipeline:
    def __init__(self, settings: PipelineSettings, ctx: RunContext):
        self.settings = settings
        self.ctx = ctx

    def prepare_dataset(self, rules: Optional[List[AttributeRenameRule]] = None) -> Optional[Path]:
        """
        Build the merged dataset and apply the rename table if there is one.

        Returns None when no source files were found.
        """
        merged_path = self.settings.merged_path
        if merged_path.exists():
            merged_path.unlink()

        sources = find_source_files(self.settings.source_dir)
        logger.info(f"Found {len(sources)} source file(s) in {self.settings.source_dir}")
        dataset = merge_sources(sources, merged_path)
        if dataset is None:
            return None

        if rules:
            rename_attributes(dataset, rules)
        return dataset

    def plan_inputs(self, layers: List[LayerSpec], dataset: Path) -> Dict[str, Path]:
        """
        Pick the tiling input of every layer, dissolving where asked.

        Layers grouping by the same fields share one dissolved dataset.
        """
        dissolved: Dict[Tuple[str, ...], Path] = {}
        inputs = {}
        for layer in layers:
            if not layer.needs_dissolve:
                inputs[layer.name] = dataset
                continue

            if layer.dissolve_fields not in dissolved:
                output = self.settings.work_dir / f"merged_{layer.name}_dissolved.fgb"
                dissolved[layer.dissolve_fields] = dissolve_dataset(
                    dataset, output, layer.dissolve_fields
                )
            else:
                logger.info(f"Layer {layer.name}: reusing dissolve by {', '.join(layer.dissolve_fields)}")
            inputs[layer.name] = dissolved[layer.dissolve_fields]
        return inputs

    def generate_layers(self, layers: List[LayerSpec], inputs: Dict[str, Path]) -> List[Path]:
        """Tile every layer; the result follows configured layer order."""
        tiles_root = self.settings.tiles_root
        tiles_root.mkdir(parents=True, exist_ok=True)
        tippecanoe_bin = self.settings.tippecanoe_bin

        if self.settings.max_workers <= 1 or len(layers) <= 1:
            return [
                generate_tile_layer(inputs[layer.name], tiles_root, layer, tippecanoe_bin)
                for layer in tqdm(layers, desc="Tiling", unit="lyr")
            ]

        results: Dict[str, Path] = {}
        with ProcessPoolExecutor(max_workers=self.settings.max_workers) as executor:
            log_level = logger.getEffectiveLevel()
            futures = {
                executor.submit(
                    _generate_layer_task,
                    inputs[layer.name],
                    tiles_root,
                    layer,
                    tippecanoe_bin,
                    log_level,
                ): layer
                for layer in layers
            }

            with tqdm(total=len(futures), desc="Tiling", unit="lyr") as pbar:
                for future in as_completed(futures):
                    layer = futures[future]
                    try:
                        results[layer.name] = future.result()
                    except Exception:
                        logger.error(f"Tiling failed for layer {layer.name}, aborting run")
                        for pending in futures:
                            pending.cancel()
                        raise
                    pbar.update(1)

        return [results[layer.name] for layer in layers]

    def build(self) -> RunManifest:
        """Run every stage up to and including the size report."""
        layers = load_layer_config(self.settings.config_path)
        rules = load_rename_rules(self.settings.rename_table)

        dataset = self.prepare_dataset(rules)
        layer_dirs: List[Path] = []
        if dataset is None and layers:
            logger.error(
                f"No merged dataset, skipping tiling of {len(layers)} configured layer(s); "
                "the published tile tree will be empty"
            )
        elif dataset is None:
            logger.warning("No merged dataset and no layers configured")
        else:
            inputs = self.plan_inputs(layers, dataset)
            layer_dirs = self.generate_layers(layers, inputs)

        tiles_dir = combine_layers(layer_dirs, self.settings.tiles_root)
        return write_run_report(
            self.ctx,
            layers,
            tiles_dir,
            self.settings.tile_sizes_path,
            self.settings.config_path,
        )

    def run(self, do_publish: bool = True, commit: bool = False) -> RunManifest:
        logger.info(f"Starting {self.ctx.build_label.lower()} {self.ctx.timestamp}")
        manifest = self.build()

        if do_publish:
            publish(
                self.ctx,
                self.settings.canonical_tiles_dir,
                self.settings.tile_sizes_path,
                self.settings.config_path.name,
                self.settings.publish_root,
                self.settings.site_dir,
            )
            if commit:
                commit_and_push(self.ctx, self.settings.publish_root, self.settings.git_bin)

        logger.info("Processing complete.")
        return manifest
