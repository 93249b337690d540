"""
Pixel time-series arena.

Reads aligned per-year rasters row block by row block into arrays of shape
(n_pixels, n_years), so per-pixel fits can be mapped over batches of rows
without building per-pixel data structures. Also provides the windowed
writer used by methods whose per-year outputs depend on the whole series.
"""

from concurrent.futures import Executor
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Callable, Dict, Hashable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import rasterio
from rasterio.windows import Window

from shared_utils import get_logger, atomic_output_path
from potential_productivity.core.raster_io import (
    DEFAULT_NODATA, check_raster_alignment, iter_row_windows, output_profile, read_band_names
)


class TimeSeriesArena:
    """
    Row-block reader over a set of co-registered per-year rasters.

    Years are held in increasing order; duplicated years cannot occur since
    the input is keyed by year.
    """

    def __init__(self, year_paths: Dict[int, Union[str, Path]], block_rows: int = 256):
        if not year_paths:
            raise ValueError("Time-series arena needs at least one year")

        self.year_paths = {int(year): Path(path) for year, path in sorted(year_paths.items())}
        self.block_rows = int(block_rows)
        self.logger = get_logger('time_series_arena')

        check_raster_alignment(list(self.year_paths.values()))

        with rasterio.open(self.paths[0]) as src:
            self.profile = src.profile.copy()
        self.band_names = read_band_names(self.paths[0])

    @property
    def years(self) -> List[int]:
        return list(self.year_paths.keys())

    @property
    def paths(self) -> List[Path]:
        return list(self.year_paths.values())

    @property
    def shape(self) -> Tuple[int, int]:
        return self.profile['height'], self.profile['width']

    def windows(self) -> Iterator[Window]:
        height, width = self.shape
        return iter_row_windows(height, width, self.block_rows)

    def read_block(
        self,
        bands: Sequence[str],
        window: Window,
        mask: Optional[np.ndarray] = None
    ) -> Dict[str, np.ndarray]:
        """
        Read named bands for one window across all years.

        Args:
            bands: Band names to read
            window: Row-block window
            mask: Full-grid boolean study mask; cells outside become NaN

        Returns:
            Dict mapping band name to float64 array (n_pixels, n_years),
            pixels in row-major order within the window
        """
        missing = [b for b in bands if b not in self.band_names]
        if missing:
            raise KeyError(f"Bands {missing} not found in arena rasters (available: {self.band_names})")

        n_pixels = int(window.height * window.width)
        block = {band: np.empty((n_pixels, len(self.years)), dtype=np.float64) for band in bands}

        for t, path in enumerate(self.paths):
            with rasterio.open(path) as src:
                for band in bands:
                    data = src.read(self.band_names.index(band) + 1, window=window, masked=True)
                    block[band][:, t] = data.astype(np.float64).filled(np.nan).ravel()

        if mask is not None:
            outside = ~block_mask(mask, window)
            for values in block.values():
                values[outside] = np.nan

        return block


def block_mask(mask: np.ndarray, window: Window) -> np.ndarray:
    """Flattened slice of a full-grid mask for a row-block window."""
    rows = slice(int(window.row_off), int(window.row_off + window.height))
    cols = slice(int(window.col_off), int(window.col_off + window.width))
    return mask[rows, cols].ravel()


def map_pixel_batches(
    func: Callable[..., Dict[str, np.ndarray]],
    arrays: Sequence[np.ndarray],
    batch_size: int,
    executor: Optional[Executor] = None,
    **kwargs
) -> Dict[str, np.ndarray]:
    """
    Apply a per-pixel batch function over row batches and concatenate.

    func receives one row-slice of every array (plus kwargs) and returns a
    dict of arrays whose first axis is the batch's pixel count. Batches are
    independent, so they are dispatched to the executor when one is given.

    Args:
        func: Picklable batch function
        arrays: Arrays sharing their first (pixel) axis
        batch_size: Pixels per batch
        executor: Optional worker pool

    Returns:
        Dict of concatenated outputs in input pixel order
    """
    n_pixels = len(arrays[0])
    if n_pixels == 0:
        return func(*arrays, **kwargs)

    starts = range(0, n_pixels, max(int(batch_size), 1))
    batches = [[a[s:s + batch_size] for a in arrays] for s in starts]

    if executor is None:
        results = [func(*batch, **kwargs) for batch in batches]
    else:
        futures = [executor.submit(func, *batch, **kwargs) for batch in batches]
        results = [future.result() for future in futures]

    return {key: np.concatenate([r[key] for r in results]) for key in results[0]}


class WindowedRasterWriter:
    """
    Windowed writer for a set of rasters on one grid, committed together.

    Outputs are keyed by any hashable (usually the year). Every file is
    written to a temporary sibling and only moved into place when the whole
    grid has been written without error.
    """

    def __init__(
        self,
        output_paths: Dict[Hashable, Union[str, Path]],
        band_names: Sequence[str],
        template_profile: Dict,
        nodata: float = DEFAULT_NODATA,
        dtype: str = 'float32',
        geotiff_options: Optional[Dict] = None
    ):
        self.output_paths = {key: Path(path) for key, path in output_paths.items()}
        self.band_names = list(band_names)
        self.nodata = nodata
        self.dtype = dtype
        self.profile = output_profile(template_profile, len(self.band_names), dtype, nodata, geotiff_options)
        self._datasets: Dict[Hashable, rasterio.io.DatasetWriter] = {}

    @contextmanager
    def open(self):
        with ExitStack() as stack:
            for key, path in self.output_paths.items():
                tmp_path = stack.enter_context(atomic_output_path(path))
                dataset = stack.enter_context(rasterio.open(tmp_path, 'w', **self.profile))
                for index, name in enumerate(self.band_names, start=1):
                    dataset.set_band_description(index, name)
                self._datasets[key] = dataset
            try:
                yield self
            finally:
                self._datasets.clear()

    def write(self, key: Hashable, bands: Dict[str, np.ndarray], window: Window) -> None:
        """Write one window of every band of an output; arrays are flat or (rows, cols)."""
        dataset = self._datasets[key]
        shape = (int(window.height), int(window.width))
        for index, name in enumerate(self.band_names, start=1):
            array = np.asarray(bands[name]).reshape(shape)
            if np.issubdtype(array.dtype, np.floating):
                array = np.where(np.isfinite(array), array, self.nodata)
            dataset.write(array.astype(self.dtype), index, window=window)
