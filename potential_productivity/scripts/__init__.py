"""
Executable scripts for the potential productivity component.

Scripts:
    run_training.py: Quantile model training
    run_covariate_means.py: Multi-year covariate means raster
    run_prediction.py: Streaming raster prediction
"""
