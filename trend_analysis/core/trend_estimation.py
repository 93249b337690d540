"""
Per-pixel trend estimation.

Computes, for each pixel's chronologically ordered series, the Theil-Sen
slope (median of pairwise slopes) with the Mann-Kendall significance of a
monotonic trend, and Kendall's tau-b between year and value with its own
significance. Any missing year leaves the whole result undefined.

The kernels are vectorized over batches of pixels so the trend raster
pipeline can map them over arena row blocks on a worker pool.
"""

import time
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
from scipy.stats import norm
from tqdm import tqdm

from shared_utils import setup_logging, resolve_config, ensure_directory, log_pipeline_start, log_pipeline_end, log_section
from shared_utils.central_data_paths_constants import METHOD_OUTPUTS_DIR, RESTREND_DIAGNOSTICS_FILE, TRENDS_DIR
from potential_productivity.core.raster_io import (
    DEFAULT_NODATA, find_method_outputs, output_is_complete, read_single_band
)
from benchmark_methods.core.restrend import unfit_mask_from_diagnostics
from benchmark_methods.core.time_series_arena import (
    TimeSeriesArena, WindowedRasterWriter, block_mask, map_pixel_batches
)

TREND_BANDS = ('slope', 'slope_significance', 'rank_correlation', 'rank_significance')


@dataclass(frozen=True)
class TrendResult:
    """Trend statistics of one pixel series; all NaN when undefined."""
    slope: float
    slope_significance: float
    rank_correlation: float
    rank_significance: float

    @property
    def is_defined(self) -> bool:
        return bool(np.isfinite(self.slope))


def _two_sided_p(z: np.ndarray) -> np.ndarray:
    return 2.0 * norm.sf(np.abs(z))


def trend_batch(values: np.ndarray, years: Sequence[float]) -> Dict[str, np.ndarray]:
    """
    Trend statistics for a batch of pixel series sharing one year axis.

    Args:
        values: Array (n_pixels, n_years); a NaN anywhere in a row makes
            that row's statistics NaN
        years: Strictly increasing years of the columns

    Returns:
        Dict of per-pixel arrays keyed by TREND_BANDS
    """
    values = np.asarray(values, dtype=np.float64)
    years = np.asarray(years, dtype=np.float64)
    n_pixels, n_years = values.shape

    result = {band: np.full(n_pixels, np.nan) for band in TREND_BANDS}
    if n_years < 2 or n_pixels == 0:
        return result
    if np.any(np.diff(years) <= 0):
        raise ValueError("Years must be strictly increasing")

    complete = np.isfinite(values).all(axis=1)
    if not complete.any():
        return result
    series = values[complete]

    i, j = np.triu_indices(n_years, k=1)
    differences = series[:, j] - series[:, i]

    # Theil-Sen: median of all pairwise slopes
    slope = np.median(differences / (years[j] - years[i]), axis=1)

    # Mann-Kendall S with tie-corrected variance; tie groups of size t
    # contribute (t - 1)(2t + 5) once per member
    s = np.sign(differences).sum(axis=1)
    tie_sizes = (series[:, :, None] == series[:, None, :]).sum(axis=2)
    tie_term = ((tie_sizes - 1) * (2 * tie_sizes + 5)).sum(axis=1)
    variance = (n_years * (n_years - 1) * (2 * n_years + 5) - tie_term) / 18.0

    n_pairs = n_years * (n_years - 1) / 2.0
    tied_pairs = (tie_sizes - 1).sum(axis=1) / 2.0

    defined = variance > 0
    sd = np.sqrt(np.where(defined, variance, 1.0))

    z_corrected = np.where(s > 0, (s - 1) / sd, np.where(s < 0, (s + 1) / sd, 0.0))
    z_corrected = np.where(defined, z_corrected, 0.0)
    z_plain = np.where(defined, s / sd, 0.0)

    with np.errstate(divide='ignore', invalid='ignore'):
        tau = np.where(n_pairs - tied_pairs > 0, s / np.sqrt((n_pairs - tied_pairs) * n_pairs), 0.0)

    result['slope'][complete] = slope
    result['slope_significance'][complete] = _two_sided_p(z_corrected)
    result['rank_correlation'][complete] = tau
    result['rank_significance'][complete] = _two_sided_p(z_plain)
    return result


def estimate_trend(years: Sequence[int], values: Sequence[float]) -> TrendResult:
    """
    Trend statistics of a single pixel series.

    Input in any order is sorted by year first, so the result depends only
    on the (year, value) pairs.

    Args:
        years: Year of each observation
        values: Observed value per year (NaN for a missing year)

    Returns:
        TrendResult, entirely NaN if any year is missing

    Raises:
        ValueError: If years and values differ in length or a year repeats
    """
    years = np.asarray(years, dtype=np.float64)
    values = np.asarray(values, dtype=np.float64)
    if years.shape != values.shape:
        raise ValueError(f"Got {len(years)} years for {len(values)} values")

    order = np.argsort(years, kind='stable')
    years, values = years[order], values[order]
    if np.any(np.diff(years) == 0):
        raise ValueError("Duplicated year in pixel series")

    stats = trend_batch(values[None, :], years)
    return TrendResult(**{band: float(stats[band][0]) for band in TREND_BANDS})


class TrendAnalysisPipeline:
    """
    Trend rasters for every method's per-year outputs.

    Reads one band (default 'index') of a method's per-year rasters through
    the time-series arena, maps trend_batch over pixel batches and writes a
    4-band trend raster. Pixels flagged unfit by a method (RESTREND) are
    forced to no-data.
    """

    def __init__(self, config: Optional[Union[str, Path, Dict]] = None):
        """
        Initialize the trend pipeline.

        Args:
            config: Configuration dictionary or path to config file
        """
        self.config = resolve_config(config, "trend_analysis", ['trend'])

        self.logger = setup_logging(
            level=self.config['logging']['level'],
            component_name='trend_analysis',
            log_file=self.config['logging'].get('log_file')
        )

        self.trend_config = self.config['trend']
        compute = self.config.get('compute', {})
        self.num_workers = int(compute.get('num_workers', 1))
        self.batch_size = int(compute.get('batch_size', 10000))
        self.block_rows = int(compute.get('block_rows', 256))

        self.geotiff_options = self.config.get('output', {}).get('geotiff', {})
        self.nodata = float(self.geotiff_options.get('nodata_value', DEFAULT_NODATA))

        self.logger.info("Initialized TrendAnalysisPipeline")

    def trend_raster(
        self,
        year_paths: Dict[int, Path],
        output_path: Union[str, Path],
        band: str = 'index',
        unfit_mask: Optional[np.ndarray] = None
    ) -> Path:
        """
        Compute and write the trend raster of one method.

        Args:
            year_paths: Per-year rasters of the method
            output_path: Destination trend GeoTIFF
            band: Band holding the series
            unfit_mask: Boolean grid of pixels excluded from trend output

        Returns:
            Path: The written trend raster

        Raises:
            ValueError: If the years are not contiguous
        """
        years = sorted(year_paths)
        if years != list(range(years[0], years[-1] + 1)):
            raise ValueError(f"Per-year outputs are not contiguous: {years}")

        arena = TimeSeriesArena(year_paths, self.block_rows)
        writer = WindowedRasterWriter({'trend': output_path}, TREND_BANDS, arena.profile,
                                      nodata=self.nodata, geotiff_options=self.geotiff_options)
        year_axis = np.asarray(years, dtype=np.float64)

        executor = ProcessPoolExecutor(max_workers=self.num_workers) if self.num_workers > 1 else None
        try:
            with writer.open():
                for window in tqdm(list(arena.windows()), desc=f"Trend {Path(output_path).stem}"):
                    series = arena.read_block([band], window)[band]
                    stats = map_pixel_batches(trend_batch, [series], self.batch_size, executor, years=year_axis)

                    if unfit_mask is not None:
                        excluded = block_mask(unfit_mask, window)
                        for values in stats.values():
                            values[excluded] = np.nan

                    writer.write('trend', stats, window)
        finally:
            if executor is not None:
                executor.shutdown()

        return Path(output_path)

    def _unfit_mask(self, method: str) -> Optional[np.ndarray]:
        diagnostics = self.trend_config.get('unfit_masks', {}).get(method)
        if diagnostics is None and method == 'restrend':
            diagnostics = RESTREND_DIAGNOSTICS_FILE
        if diagnostics is None or not Path(diagnostics).exists():
            return None
        return unfit_mask_from_diagnostics(read_single_band(diagnostics, 'fit_flag'))

    def run_full_pipeline(
        self,
        methods: Optional[List[str]] = None,
        method_dirs: Optional[Dict[str, Union[str, Path]]] = None,
        output_dir: Optional[Union[str, Path]] = None
    ) -> bool:
        """
        Write a trend raster for every configured method.

        Returns:
            bool: True if every method's trend raster exists at the end
        """
        start_time = time.time()
        log_pipeline_start(self.logger, "Trend analysis", self.trend_config)

        methods = methods or list(self.trend_config['methods'])
        method_dirs = method_dirs or self.trend_config.get('method_dirs') or {}
        output_dir = ensure_directory(output_dir or TRENDS_DIR)
        band = self.trend_config.get('band', 'index')
        years = self.trend_config.get('years')
        overwrite = bool(self.trend_config.get('overwrite', False))

        failed = []
        for method in methods:
            log_section(self.logger, f"Trend of {method}")
            output_path = output_dir / f"{method}_trend.tif"

            if not overwrite and output_is_complete(output_path, TREND_BANDS):
                self.logger.info(f"Trend raster exists, skipping: {output_path}")
                continue

            try:
                year_paths = find_method_outputs(method_dirs.get(method, METHOD_OUTPUTS_DIR / method), method)
                if years:
                    year_paths = {y: p for y, p in year_paths.items() if y in set(years)}
                if not year_paths:
                    raise FileNotFoundError(f"No per-year outputs found for method '{method}'")

                self.trend_raster(year_paths, output_path, band=band, unfit_mask=self._unfit_mask(method))
                self.logger.info(f"Trend raster written: {output_path}")
            except Exception as e:
                self.logger.error(f"Trend of {method} failed: {e}")
                failed.append(method)

        success = not failed
        log_pipeline_end(self.logger, "Trend analysis", success, time.time() - start_time)
        return success
