"""
Core potential productivity modules.

- QuantileModelTrainingPipeline: feature selection, tuning and final fit
- StreamingRasterPredictionPipeline: year-by-year raster prediction
- TrainedModel: persisted model artifact
- Raster IO, sample preparation and spatiotemporal CV utilities
"""

from .model_training import QuantileModelTrainingPipeline, CustomEarlyStopping, build_booster
from .model_prediction import StreamingRasterPredictionPipeline, productivity_index, year_buffers
from .trained_model import TrainedModel
from .spatiotemporal_cv import SpatiotemporalFold, create_spatiotemporal_folds
from .sample_dataset import prepare_sample_records, load_sample_table, reshape_wide_samples
from .covariate_means import compute_covariate_means, covariate_means_match
from .raster_io import (
    CovariateArchive,
    METHOD_OUTPUT_BANDS,
    DEFAULT_NODATA,
    read_band_stack,
    read_single_band,
    write_band_stack,
    output_is_complete,
    method_output_path,
    find_method_outputs,
    iter_row_windows,
    study_area_mask,
    load_study_area
)

__all__ = [
    'QuantileModelTrainingPipeline',
    'CustomEarlyStopping',
    'build_booster',
    'StreamingRasterPredictionPipeline',
    'productivity_index',
    'year_buffers',
    'TrainedModel',
    'SpatiotemporalFold',
    'create_spatiotemporal_folds',
    'prepare_sample_records',
    'load_sample_table',
    'reshape_wide_samples',
    'compute_covariate_means',
    'covariate_means_match',
    'CovariateArchive',
    'METHOD_OUTPUT_BANDS',
    'DEFAULT_NODATA',
    'read_band_stack',
    'read_single_band',
    'write_band_stack',
    'output_is_complete',
    'method_output_path',
    'find_method_outputs',
    'iter_row_windows',
    'study_area_mask',
    'load_study_area'
]
