"""
Executable scripts for the trend analysis component.

Scripts:
    run_trend_analysis.py: Trend rasters for method outputs
"""
