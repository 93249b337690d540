"""
Shared scaffolding for the benchmark potential-productivity methods.

Every benchmark reads the same per-year covariate archive, masks it to the
study area and writes per-year rasters with the (observed, potential,
mean_estimate, index) contract, so trend and skill evaluation treat all
methods uniformly.
"""

import time
from concurrent.futures import ProcessPoolExecutor
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from tqdm import tqdm

from shared_utils import setup_logging, resolve_config, ensure_directory, log_pipeline_start, log_pipeline_end
from shared_utils.central_data_paths_constants import COVARIATES_DIR, STUDY_AREA_FILE
from potential_productivity.core.raster_io import (
    DEFAULT_NODATA, METHOD_OUTPUT_BANDS, CovariateArchive, load_study_area,
    method_output_path, output_is_complete, study_area_mask
)

from .time_series_arena import TimeSeriesArena, WindowedRasterWriter


class BenchmarkPipeline:
    """
    Base class for benchmark methods.

    Subclasses set `method_key` (their config section) and
    `default_output_dir`, and implement `run`.
    """

    method_key: str = ''
    default_output_dir: Path = Path('.')

    def __init__(self, config: Optional[Union[str, Path, Dict]] = None):
        """
        Initialize the benchmark pipeline.

        Args:
            config: Configuration dictionary or path to config file
        """
        self.config = resolve_config(config, "benchmark_methods", [self.method_key])

        self.logger = setup_logging(
            level=self.config['logging']['level'],
            component_name=f'{self.method_key}_benchmark',
            log_file=self.config['logging'].get('log_file')
        )

        self.method_config = self.config[self.method_key]
        self.method_name = self.method_config.get('method_name', self.method_key)
        self.inputs_config = self.config.get('inputs', {})
        self.observed_band = self.inputs_config.get('observed_band', 'GPP')

        compute = self.config.get('compute', {})
        self.num_workers = int(compute.get('num_workers', 1))
        self.batch_size = int(compute.get('batch_size', 10000))
        self.block_rows = int(compute.get('block_rows', 256))

        self.geotiff_options = self.config.get('output', {}).get('geotiff', {})
        self.nodata = float(self.geotiff_options.get('nodata_value', DEFAULT_NODATA))

        self.logger.info(f"Initialized {self.__class__.__name__}")

    # ==================== SHARED STEPS ====================

    def open_archive(self, covariate_dir: Union[str, Path]) -> CovariateArchive:
        archive = CovariateArchive(
            covariate_dir, self.inputs_config.get('covariate_pattern', 'covariates_{year}.tif')
        )
        if not archive.years:
            raise FileNotFoundError(f"No covariate rasters found in {covariate_dir}")
        archive.check_alignment()
        return archive

    def build_mask(self, profile: Dict, study_area=None) -> np.ndarray:
        """Study mask on the archive grid; a path is read and reprojected first."""
        if isinstance(study_area, (str, Path)):
            study_area = load_study_area(study_area, profile.get('crs'))
        mask = study_area_mask(study_area, profile['transform'], (profile['height'], profile['width']))
        self.logger.info(f"Study area covers {int(mask.sum()):,} of {mask.size:,} cells")
        return mask

    def output_paths(self, output_dir: Union[str, Path], years: Sequence[int]) -> Dict[int, Path]:
        output_dir = ensure_directory(output_dir)
        return {year: method_output_path(output_dir, self.method_name, year) for year in years}

    def pending_years(self, paths: Dict[int, Path], overwrite: bool) -> List[int]:
        """Years still to be written (all of them when overwriting)."""
        if overwrite:
            return list(paths)
        return [year for year, path in paths.items() if not output_is_complete(path, METHOD_OUTPUT_BANDS)]

    @contextmanager
    def worker_pool(self):
        """Yield a process pool for per-pixel batches, or None for sequential runs."""
        if self.num_workers <= 1:
            yield None
            return
        with ProcessPoolExecutor(max_workers=self.num_workers) as executor:
            yield executor

    # ==================== ORCHESTRATION ====================

    def run(
        self,
        covariate_dir: Union[str, Path],
        output_dir: Union[str, Path],
        study_area=None,
        years: Optional[Sequence[int]] = None,
        overwrite: bool = False
    ) -> Dict[int, str]:
        raise NotImplementedError

    def run_full_pipeline(
        self,
        covariate_dir: Optional[Union[str, Path]] = None,
        output_dir: Optional[Union[str, Path]] = None,
        study_area_path: Optional[Union[str, Path]] = None,
        years: Optional[List[int]] = None
    ) -> bool:
        """
        Run the method with default paths.

        Returns:
            bool: True if every requested year was written or already present
        """
        pipeline_name = f"{self.method_name.upper()} benchmark"
        start_time = time.time()
        log_pipeline_start(self.logger, pipeline_name, self.method_config)

        study_area_path = Path(study_area_path or STUDY_AREA_FILE)
        study_area = study_area_path if study_area_path.exists() else None
        if study_area is None:
            self.logger.warning(f"Study area not found ({study_area_path}), using the full grid")

        try:
            status = self.run(
                covariate_dir or COVARIATES_DIR,
                output_dir or self.default_output_dir,
                study_area=study_area,
                years=years or self.config.get('years'),
                overwrite=bool(self.config.get('overwrite', False))
            )
        except Exception as e:
            self.logger.error(f"{pipeline_name} failed: {e}")
            log_pipeline_end(self.logger, pipeline_name, False, time.time() - start_time)
            return False

        success = all(state != 'failed' for state in status.values())
        log_pipeline_end(self.logger, pipeline_name, success, time.time() - start_time)
        return success


class SeriesBenchmarkPipeline(BenchmarkPipeline):
    """
    Benchmark whose per-year outputs depend on each pixel's whole series.

    The grid is processed in row blocks through a TimeSeriesArena; every
    year's raster (and an optional per-pixel raster such as fit
    diagnostics) is written window by window and committed at the end, so
    an interrupted run leaves earlier outputs untouched.
    """

    def input_bands(self) -> List[str]:
        raise NotImplementedError

    def compute_block(self, block: Dict[str, np.ndarray], executor) -> Tuple[Dict[str, np.ndarray], Dict[str, np.ndarray]]:
        """
        Compute one row block.

        Returns:
            Tuple of (per-year outputs keyed by METHOD_OUTPUT_BANDS, each
            (n_pixels, n_years); per-pixel extra outputs, each (n_pixels,))
        """
        raise NotImplementedError

    def extra_output(self, output_dir: Path) -> Optional[Tuple[Path, List[str]]]:
        """Optional per-pixel raster: (path, band names)."""
        return None

    def run(
        self,
        covariate_dir: Union[str, Path],
        output_dir: Union[str, Path],
        study_area=None,
        years: Optional[Sequence[int]] = None,
        overwrite: bool = False
    ) -> Dict[int, str]:
        """
        Compute the method for every requested year.

        Args:
            covariate_dir: Directory of per-year covariate rasters
            output_dir: Directory for per-year output rasters
            study_area: Boundary (GeoDataFrame or vector path), None for the full grid
            years: Years forming the series (all archive years if None)
            overwrite: Recompute even if every output exists

        Returns:
            Dict mapping year to 'written', 'skipped' or 'failed'
        """
        archive = self.open_archive(covariate_dir)
        years = sorted(years) if years else archive.years
        output_dir = ensure_directory(output_dir)
        paths = self.output_paths(output_dir, years)
        extra = self.extra_output(output_dir)

        pending = self.pending_years(paths, overwrite)
        extra_done = extra is None or output_is_complete(extra[0], extra[1])
        if not pending and extra_done:
            self.logger.info(f"All {len(years)} {self.method_name} outputs exist, skipping")
            return {year: 'skipped' for year in years}

        arena = TimeSeriesArena({year: archive.path_for(year) for year in years}, self.block_rows)
        mask = self.build_mask(arena.profile, study_area)

        writer = WindowedRasterWriter(paths, METHOD_OUTPUT_BANDS, arena.profile,
                                      nodata=self.nodata, geotiff_options=self.geotiff_options)
        extra_writer = None
        if extra is not None:
            extra_writer = WindowedRasterWriter({'extra': extra[0]}, extra[1], arena.profile,
                                                nodata=self.nodata, geotiff_options=self.geotiff_options)

        windows = list(arena.windows())
        self.logger.info(f"Processing {len(years)} years in {len(windows)} row blocks")

        try:
            with ExitStack() as stack:
                stack.enter_context(writer.open())
                if extra_writer is not None:
                    stack.enter_context(extra_writer.open())
                executor = stack.enter_context(self.worker_pool())

                for window in tqdm(windows, desc=f"{self.method_name.upper()} row blocks"):
                    block = arena.read_block(self.input_bands(), window, mask)
                    outputs, extras = self.compute_block(block, executor)

                    for t, year in enumerate(years):
                        writer.write(year, {band: outputs[band][:, t] for band in METHOD_OUTPUT_BANDS}, window)
                    if extra_writer is not None:
                        extra_writer.write('extra', extras, window)

                    del block, outputs, extras
        except Exception as e:
            self.logger.error(f"{self.method_name.upper()} failed, existing outputs are unaffected: {e}")
            return {year: 'failed' for year in years}

        return {year: 'written' for year in years}
