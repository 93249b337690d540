"""
Benchmark Methods Component

Alternative potential productivity estimators sharing the per-year
(observed, potential, mean_estimate, index) raster contract:

- RUE: pooled rain-use efficiency
- RESTREND: per-pixel OLS on climate, residual series
- LGS: within-cluster percentile over environmental clusters

Components:
    core/: Core processing modules
    scripts/: Executable entry points
    config.yaml: Component configuration
"""

from .core.rue import RUEBenchmarkPipeline
from .core.restrend import RESTRENDBenchmarkPipeline
from .core.lgs import LGSBenchmarkPipeline

__version__ = "1.0.0"
__component__ = "benchmark_methods"

__all__ = [
    "RUEBenchmarkPipeline",
    "RESTRENDBenchmarkPipeline",
    "LGSBenchmarkPipeline"
]
