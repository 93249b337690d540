"""
Raster I/O for the productivity gap pipeline.

Reading of the per-year covariate archive as named-band stacks, study-area
masking, flattening of grids to tabular rows and back, alignment checks and
atomic multi-band GeoTIFF output. Every method writes its per-year results
through write_band_stack so all outputs share one contract.
"""

import hashlib
import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import rasterio
import rasterio.features
import xarray as xr
import geopandas as gpd
from rasterio.errors import RasterioIOError
from rasterio.windows import Window

from shared_utils import get_logger, validate_file_exists, atomic_output_path

DEFAULT_NODATA = -9999.0

# Band layout shared by the quantile model and every benchmark method
METHOD_OUTPUT_BANDS = ('observed', 'potential', 'mean_estimate', 'index')


def read_band_names(path: Union[str, Path]) -> List[str]:
    """
    Read band names from GeoTIFF band descriptions.
    
    Bands without a description are named band_<n> (1-based).
    """
    with rasterio.open(path) as src:
        return [desc if desc else f"band_{i}" for i, desc in enumerate(src.descriptions, start=1)]


def read_band_stack(
    path: Union[str, Path],
    bands: Optional[Sequence[str]] = None,
    window: Optional[Window] = None
) -> Tuple[xr.DataArray, Dict]:
    """
    Read named bands of a raster as a float32 stack with NaN for no-data.
    
    Args:
        path: Raster file path
        bands: Band names to read (all bands if None)
        window: Optional window for partial reading
        
    Returns:
        Tuple of (DataArray with dims band/y/x, rasterio profile)
        
    Raises:
        KeyError: If a requested band is not present in the file
    """
    path = validate_file_exists(path, "Raster file")
    names = read_band_names(path)
    
    if bands is None:
        bands = names
    missing = [b for b in bands if b not in names]
    if missing:
        raise KeyError(f"Bands {missing} not found in {path.name} (available: {names})")
    
    indexes = [names.index(b) + 1 for b in bands]
    
    with rasterio.open(path) as src:
        data = src.read(indexes, window=window).astype(np.float32)
        profile = src.profile.copy()
        if window is not None:
            profile.update(
                height=data.shape[1],
                width=data.shape[2],
                transform=src.window_transform(window)
            )
        if src.nodata is not None and not np.isnan(src.nodata):
            data[data == src.nodata] = np.nan
    
    stack = xr.DataArray(
        data,
        dims=('band', 'y', 'x'),
        coords={'band': list(bands)},
        attrs={'transform': profile['transform'], 'crs': profile.get('crs')}
    )
    return stack, profile


def read_single_band(path: Union[str, Path], band: str, window: Optional[Window] = None) -> np.ndarray:
    """Read one named band as a float32 array with NaN for no-data."""
    stack, _ = read_band_stack(path, [band], window=window)
    return stack.sel(band=band).values


def grid_signature(profile: Dict) -> Tuple:
    """Return the (crs, transform, shape) triple that defines a grid."""
    return (str(profile.get('crs')), tuple(profile['transform'])[:6], (profile['height'], profile['width']))


def read_raster_metadata(path: Union[str, Path]) -> Tuple[Dict, Dict[str, str]]:
    """Return (profile, dataset tags) without reading pixel data."""
    with rasterio.open(validate_file_exists(path, "Raster file")) as src:
        return src.profile.copy(), src.tags()


def mask_digest(mask: np.ndarray) -> str:
    """Short digest identifying a boolean cell mask and its shape."""
    mask = np.asarray(mask, dtype=bool)
    digest = hashlib.sha1(str(mask.shape).encode())
    digest.update(np.packbits(mask).tobytes())
    return digest.hexdigest()[:16]


def check_raster_alignment(raster_files: Sequence[Union[str, Path]]) -> None:
    """
    Check that rasters share CRS, transform and shape.
    
    Raises:
        ValueError: If any raster is misaligned with the first one
    """
    if len(raster_files) < 2:
        return
    
    with rasterio.open(raster_files[0]) as ref:
        reference = grid_signature(ref.profile)
    
    issues = []
    for raster_file in raster_files[1:]:
        with rasterio.open(raster_file) as src:
            signature = grid_signature(src.profile)
        if signature[0] != reference[0]:
            issues.append(f"{Path(raster_file).name}: CRS mismatch ({signature[0]} vs {reference[0]})")
        if signature[1] != reference[1]:
            issues.append(f"{Path(raster_file).name}: transform mismatch")
        if signature[2] != reference[2]:
            issues.append(f"{Path(raster_file).name}: shape mismatch ({signature[2]} vs {reference[2]})")
    
    if issues:
        raise ValueError("Raster alignment issues: " + "; ".join(issues))


class CovariateArchive:
    """
    Multi-year covariate archive: one multi-band GeoTIFF per year.
    
    Files are discovered with a filename pattern containing a {year}
    placeholder, e.g. 'covariates_{year}.tif'.
    """
    
    def __init__(self, directory: Union[str, Path], pattern: str = 'covariates_{year}.tif'):
        self.directory = Path(directory)
        self.pattern = pattern
        self.logger = get_logger('raster_io')
        
        if '{year}' not in pattern:
            raise ValueError(f"Covariate file pattern must contain '{{year}}': {pattern}")
        
        self.year_files = self._discover()
        self.logger.info(f"Found covariate rasters for years: {self.years}")
    
    def _discover(self) -> Dict[int, Path]:
        prefix, suffix = self.pattern.split('{year}')
        year_regex = re.compile('^' + re.escape(prefix) + r'(\d{4})' + re.escape(suffix) + '$')
        
        year_files = {}
        if not self.directory.exists():
            self.logger.warning(f"Covariate directory does not exist: {self.directory}")
            return year_files
        
        for path in self.directory.iterdir():
            match = year_regex.match(path.name)
            if match:
                year_files[int(match.group(1))] = path
        
        return dict(sorted(year_files.items()))
    
    @property
    def years(self) -> List[int]:
        return list(self.year_files.keys())
    
    def path_for(self, year: int) -> Path:
        if year not in self.year_files:
            raise FileNotFoundError(f"No covariate raster for year {year} in {self.directory}")
        return self.year_files[year]
    
    def band_names(self) -> List[str]:
        if not self.year_files:
            return []
        return read_band_names(next(iter(self.year_files.values())))
    
    def profile(self) -> Dict:
        with rasterio.open(self.path_for(self.years[0])) as src:
            return src.profile.copy()
    
    def read_year(self, year: int, bands: Optional[Sequence[str]] = None, window: Optional[Window] = None) -> Tuple[xr.DataArray, Dict]:
        return read_band_stack(self.path_for(year), bands, window=window)
    
    def check_alignment(self) -> None:
        check_raster_alignment(list(self.year_files.values()))


def load_study_area(path: Union[str, Path], crs) -> gpd.GeoDataFrame:
    """
    Load a vector study-area boundary reprojected to the raster CRS.
    
    Args:
        path: Vector file readable by geopandas
        crs: Target CRS of the raster grid
        
    Returns:
        GeoDataFrame with the study-area geometries
    """
    boundary = gpd.read_file(validate_file_exists(path, "Study area boundary"))
    if boundary.crs is not None and crs is not None:
        boundary = boundary.to_crs(crs)
    return boundary


def study_area_mask(
    geometries: Optional[Union[gpd.GeoDataFrame, gpd.GeoSeries]],
    transform,
    shape: Tuple[int, int]
) -> np.ndarray:
    """
    Rasterise a study-area boundary to a boolean grid (True inside).
    
    A missing boundary keeps the whole grid.
    """
    if geometries is None:
        return np.ones(shape, dtype=bool)
    
    if isinstance(geometries, gpd.GeoDataFrame):
        geometries = geometries.geometry
    
    return rasterio.features.geometry_mask(
        list(geometries),
        out_shape=shape,
        transform=transform,
        invert=True
    )


def flatten_to_rows(stack: xr.DataArray, mask: Optional[np.ndarray] = None) -> pd.DataFrame:
    """
    Flatten a band stack to one row per masked-in cell.
    
    Args:
        stack: DataArray with dims band/y/x
        mask: Boolean grid of cells to keep (all cells if None)
        
    Returns:
        DataFrame with one column per band plus 'row' and 'col' grid indices
    """
    _, height, width = stack.shape
    if mask is None:
        mask = np.ones((height, width), dtype=bool)
    
    rows, cols = np.nonzero(mask)
    values = stack.values[:, rows, cols]
    
    table = pd.DataFrame(values.T, columns=[str(b) for b in stack.coords['band'].values])
    table['row'] = rows
    table['col'] = cols
    return table


def rows_to_grid(
    values: np.ndarray,
    rows: np.ndarray,
    cols: np.ndarray,
    shape: Tuple[int, int],
    fill_value: float = np.nan,
    dtype=np.float32
) -> np.ndarray:
    """
    Scatter per-row values back onto a grid; unset cells hold fill_value.
    """
    grid = np.full(shape, fill_value, dtype=dtype)
    grid[np.asarray(rows), np.asarray(cols)] = values
    return grid


def output_profile(
    template_profile: Dict,
    count: int,
    dtype: str,
    nodata: float,
    geotiff_options: Optional[Dict] = None
) -> Dict:
    """Profile for a new GeoTIFF on the grid of template_profile."""
    profile = {
        'driver': 'GTiff',
        'height': template_profile['height'],
        'width': template_profile['width'],
        'crs': template_profile.get('crs'),
        'transform': template_profile['transform'],
        'count': count,
        'dtype': dtype,
        'nodata': nodata
    }
    
    options = dict(geotiff_options or {})
    options.pop('nodata_value', None)
    options.pop('driver', None)
    
    # Internal tiling needs the raster to span at least one block
    if options.get('tiled'):
        block = options.get('blockxsize', 256)
        if profile['width'] < block or profile['height'] < block:
            options.pop('tiled')
            options.pop('blockxsize', None)
            options.pop('blockysize', None)
    
    profile.update(options)
    return profile


def write_band_stack(
    output_path: Union[str, Path],
    bands: Dict[str, np.ndarray],
    template_profile: Dict,
    nodata: float = DEFAULT_NODATA,
    dtype: str = 'float32',
    geotiff_options: Optional[Dict] = None,
    tags: Optional[Dict[str, str]] = None
) -> Path:
    """
    Write named 2D arrays as a multi-band GeoTIFF, atomically.
    
    Non-finite values are written as the no-data sentinel. The file only
    appears at output_path once every band has been written.
    
    Args:
        output_path: Destination GeoTIFF
        bands: Ordered mapping of band name to 2D array
        template_profile: Profile supplying the grid (crs, transform, shape)
        nodata: No-data sentinel
        dtype: Output data type
        geotiff_options: Creation options (compress, tiled, ...)
        tags: Optional dataset metadata stored as GeoTIFF tags
        
    Returns:
        Path: The written file
    """
    output_path = Path(output_path)
    profile = output_profile(template_profile, len(bands), dtype, nodata, geotiff_options)
    
    with atomic_output_path(output_path) as tmp_path:
        with rasterio.open(tmp_path, 'w', **profile) as dst:
            for index, (name, array) in enumerate(bands.items(), start=1):
                array = np.asarray(array)
                if np.issubdtype(array.dtype, np.floating):
                    array = np.where(np.isfinite(array), array, nodata)
                dst.write(array.astype(dtype), index)
                dst.set_band_description(index, name)
            if tags:
                dst.update_tags(**{key: str(value) for key, value in tags.items()})
    
    return output_path


def output_is_complete(path: Union[str, Path], expected_bands: Sequence[str]) -> bool:
    """Check that an output raster exists, opens and carries the expected bands."""
    path = Path(path)
    if not path.exists():
        return False
    try:
        return read_band_names(path) == list(expected_bands)
    except RasterioIOError:
        return False


def iter_row_windows(height: int, width: int, block_rows: int):
    """Yield full-width row-block windows covering a grid."""
    for row_start in range(0, height, block_rows):
        yield Window(0, row_start, width, min(block_rows, height - row_start))


def method_output_path(output_dir: Union[str, Path], method: str, year: int) -> Path:
    """Path of a method's per-year output raster."""
    return Path(output_dir) / f"{method}_{year}.tif"


def find_method_outputs(output_dir: Union[str, Path], method: str) -> Dict[int, Path]:
    """Map year -> per-year output raster of a method, sorted by year."""
    year_regex = re.compile('^' + re.escape(method) + r'_(\d{4})\.tif$')
    output_dir = Path(output_dir)
    outputs = {}
    if output_dir.exists():
        for path in output_dir.iterdir():
            match = year_regex.match(path.name)
            if match:
                outputs[int(match.group(1))] = path
    return dict(sorted(outputs.items()))
