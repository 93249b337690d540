"""
Core benchmark modules.

- TimeSeriesArena: row-block reader of per-pixel series
- RUEBenchmarkPipeline, RESTRENDBenchmarkPipeline, LGSBenchmarkPipeline
- Vectorized per-pixel kernels usable without the pipelines
"""

from .time_series_arena import TimeSeriesArena, WindowedRasterWriter, map_pixel_batches, block_mask
from .benchmark_base import BenchmarkPipeline, SeriesBenchmarkPipeline
from .rue import RUEBenchmarkPipeline, rain_use_efficiency
from .restrend import RESTRENDBenchmarkPipeline, fit_restrend_batch, unfit_mask_from_diagnostics
from .lgs import LGSBenchmarkPipeline, fit_environmental_clusters, cluster_reference_values

BENCHMARK_PIPELINES = {
    'rue': RUEBenchmarkPipeline,
    'restrend': RESTRENDBenchmarkPipeline,
    'lgs': LGSBenchmarkPipeline
}

__all__ = [
    'TimeSeriesArena',
    'WindowedRasterWriter',
    'map_pixel_batches',
    'block_mask',
    'BenchmarkPipeline',
    'SeriesBenchmarkPipeline',
    'RUEBenchmarkPipeline',
    'rain_use_efficiency',
    'RESTRENDBenchmarkPipeline',
    'fit_restrend_batch',
    'unfit_mask_from_diagnostics',
    'LGSBenchmarkPipeline',
    'fit_environmental_clusters',
    'cluster_reference_values',
    'BENCHMARK_PIPELINES'
]
