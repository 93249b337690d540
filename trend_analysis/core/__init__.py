"""
Core trend analysis modules.

- estimate_trend / trend_batch: per-pixel Theil-Sen and Mann-Kendall statistics
- TrendAnalysisPipeline: trend rasters for per-year method outputs
"""

from .trend_estimation import TrendAnalysisPipeline, TrendResult, TREND_BANDS, estimate_trend, trend_batch

__all__ = [
    'TrendAnalysisPipeline',
    'TrendResult',
    'TREND_BANDS',
    'estimate_trend',
    'trend_batch'
]
