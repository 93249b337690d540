"""
Multi-year mean covariates.

Streams the covariate archive one year at a time, accumulating a running
sum and count per cell, and writes the per-cell means as a named-band
GeoTIFF tagged with the years it covers. The result is the auxiliary input for anomaly features and for
LGS clustering; it is computed once, before any year loop starts.
"""

import gc
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

import numpy as np

from shared_utils import get_logger
from .raster_io import (
    CovariateArchive, grid_signature, output_is_complete, read_raster_metadata, write_band_stack
)

YEARS_TAG = 'covariate_years'


def format_years(years: Sequence[int]) -> str:
    return ",".join(str(int(year)) for year in sorted(years))


def compute_covariate_means(
    archive: CovariateArchive,
    bands: Sequence[str],
    output_path: Union[str, Path],
    years: Optional[Sequence[int]] = None,
    geotiff_options: Optional[Dict] = None
) -> Path:
    """
    Compute per-cell multi-year means of covariate bands.
    
    Cells missing in some years average over their valid years; cells
    never valid are written as no-data.
    
    Args:
        archive: Covariate archive
        bands: Band names to average
        output_path: Destination GeoTIFF (bands keep their names)
        years: Years to include (all archive years if None)
        geotiff_options: GeoTIFF creation options
        
    Returns:
        Path: The written means raster
    """
    logger = get_logger('covariate_means')
    
    years = list(years) if years is not None else archive.years
    if not years:
        raise ValueError("No years available to compute covariate means")
    
    archive.check_alignment()
    profile = archive.profile()
    shape = (len(bands), profile['height'], profile['width'])
    
    sums = np.zeros(shape, dtype=np.float64)
    counts = np.zeros(shape, dtype=np.int32)
    
    for year in years:
        stack, _ = archive.read_year(year, bands)
        values = stack.values
        valid = np.isfinite(values)
        sums += np.where(valid, values, 0.0)
        counts += valid
        del stack, values, valid
        gc.collect()
        logger.debug(f"Accumulated covariates for {year}")
    
    with np.errstate(divide='ignore', invalid='ignore'):
        means = np.where(counts > 0, sums / np.maximum(counts, 1), np.nan)
    
    output_path = write_band_stack(
        output_path,
        {band: means[i] for i, band in enumerate(bands)},
        profile,
        geotiff_options=geotiff_options,
        tags={YEARS_TAG: format_years(years)}
    )
    logger.info(f"Wrote multi-year means of {list(bands)} over {len(years)} years to {output_path}")
    return output_path


def covariate_means_match(
    path: Union[str, Path],
    bands: Sequence[str],
    years: Sequence[int],
    profile: Dict
) -> bool:
    """
    Whether a stored means raster can be reused.

    It must hold every band, lie on the grid of profile and have been
    averaged over exactly the given years.
    """
    if not output_is_complete(path, bands):
        return False
    stored_profile, tags = read_raster_metadata(path)
    return (grid_signature(stored_profile) == grid_signature(profile)
            and tags.get(YEARS_TAG) == format_years(years))
