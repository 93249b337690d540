"""
Rain-use efficiency (RUE) benchmark.

Potential productivity is the pixel's pooled rain-use efficiency, the sum
of GPP over the sum of precipitation across valid years, times that year's
precipitation. The annual ratio GPP / precipitation is the index series
passed on to trend estimation. No per-pixel model is fitted.
"""

from typing import Dict, List, Tuple

import numpy as np

from shared_utils.central_data_paths_constants import RUE_OUTPUT_DIR

from .benchmark_base import SeriesBenchmarkPipeline


def rain_use_efficiency(gpp: np.ndarray, precipitation: np.ndarray) -> Dict[str, np.ndarray]:
    """
    RUE outputs for a batch of pixel series.

    Args:
        gpp: Observed productivity, (n_pixels, n_years), NaN when missing
        precipitation: Annual precipitation, same shape

    Returns:
        Dict with 'observed', 'potential', 'mean_estimate', 'index' of shape
        (n_pixels, n_years) and 'pooled_ratio' of shape (n_pixels,)
    """
    gpp = np.asarray(gpp, dtype=np.float64)
    precipitation = np.asarray(precipitation, dtype=np.float64)

    rain_ok = np.isfinite(precipitation) & (precipitation > 0)
    valid = rain_ok & np.isfinite(gpp)

    gpp_sum = np.where(valid, gpp, 0.0).sum(axis=1)
    rain_sum = np.where(valid, precipitation, 0.0).sum(axis=1)

    pooled_ratio = np.full(gpp.shape[0], np.nan)
    has_rain = rain_sum > 0
    pooled_ratio[has_rain] = gpp_sum[has_rain] / rain_sum[has_rain]

    with np.errstate(divide='ignore', invalid='ignore'):
        potential = np.where(rain_ok, pooled_ratio[:, None] * precipitation, np.nan)
        index = np.where(valid, gpp / precipitation, np.nan)

    return {
        'observed': np.where(rain_ok, gpp, np.nan),
        'potential': potential,
        'mean_estimate': potential.copy(),
        'index': index,
        'pooled_ratio': pooled_ratio
    }


class RUEBenchmarkPipeline(SeriesBenchmarkPipeline):
    """RUE benchmark over the covariate archive."""

    method_key = 'rue'
    default_output_dir = RUE_OUTPUT_DIR

    def input_bands(self) -> List[str]:
        return [self.observed_band, self.method_config.get('precipitation_band', 'precipitation')]

    def compute_block(self, block: Dict[str, np.ndarray], executor) -> Tuple[Dict[str, np.ndarray], Dict[str, np.ndarray]]:
        gpp_band, rain_band = self.input_bands()
        outputs = rain_use_efficiency(block[gpp_band], block[rain_band])
        pooled_ratio = outputs.pop('pooled_ratio')
        return outputs, {'pooled_ratio': pooled_ratio}

    def extra_output(self, output_dir):
        return output_dir / f"{self.method_name}_pooled_ratio.tif", ['pooled_ratio']
