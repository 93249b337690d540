"""
Trend Analysis Component

Robust and non-parametric per-pixel trend statistics (Theil-Sen slope,
Mann-Kendall tau) over any method's per-year series.

Components:
    core/: Core processing modules
    scripts/: Executable entry points
    config.yaml: Component configuration
"""

from .core.trend_estimation import TrendAnalysisPipeline, TrendResult, estimate_trend, trend_batch

__version__ = "1.0.0"
__component__ = "trend_analysis"

__all__ = [
    "TrendAnalysisPipeline",
    "TrendResult",
    "estimate_trend",
    "trend_batch"
]
