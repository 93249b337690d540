"""
Central Data Paths - Constants

Centralized default paths for the productivity gap pipeline. Components read
their defaults from here; every path can be overridden per call.

Usage:
    from shared_utils.central_data_paths_constants import COVARIATES_DIR, MODEL_FILE

    covariate_files = sorted(COVARIATES_DIR.glob("covariates_*.tif"))
"""

from pathlib import Path

# Root directories
DATA_ROOT = Path("data")

RAW_DIR = DATA_ROOT / "raw"
PROCESSED_DIR = DATA_ROOT / "processed"
RESULTS_DIR = DATA_ROOT / "results"
MODELS_DIR = DATA_ROOT / "models"

# Inputs produced upstream
COVARIATES_DIR = RAW_DIR / "covariates"
STUDY_AREA_FILE = RAW_DIR / "study_area" / "study_area.gpkg"
SAMPLE_POINTS_FILE = RAW_DIR / "samples" / "sample_points.csv"

# Auxiliary multi-year inputs
COVARIATE_MEANS_FILE = PROCESSED_DIR / "covariate_means" / "covariate_means.tif"

# Potential productivity model
MODEL_FILE = MODELS_DIR / "potential_productivity_model.pkl"
TRAINING_LOG_DIR = MODELS_DIR / "training_logs"

# Per-method, per-year outputs
METHOD_OUTPUTS_DIR = PROCESSED_DIR / "method_outputs"
RPI_OUTPUT_DIR = METHOD_OUTPUTS_DIR / "rpi"
RUE_OUTPUT_DIR = METHOD_OUTPUTS_DIR / "rue"
RESTREND_OUTPUT_DIR = METHOD_OUTPUTS_DIR / "restrend"
LGS_OUTPUT_DIR = METHOD_OUTPUTS_DIR / "lgs"

RESTREND_DIAGNOSTICS_FILE = RESTREND_OUTPUT_DIR / "restrend_fit_diagnostics.tif"

# Results
TRENDS_DIR = RESULTS_DIR / "trends"
SKILL_DIR = RESULTS_DIR / "skill"
