"""
Streaming raster prediction of potential productivity.

Applies a trained quantile model to the full covariate archive one year at
a time: mask to the study area, flatten valid cells to rows, drop rows
missing required features, derive anomaly features, predict, reassemble
(observed, potential, mean_estimate, index) onto the grid and write the
year's raster before anything from the next year is loaded. Peak memory is
bounded by one year's grid regardless of the archive length.
"""

import gc
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from shared_utils import (
    setup_logging, resolve_config, ensure_directory,
    log_pipeline_start, log_pipeline_end, log_year_progress
)
from shared_utils.central_data_paths_constants import (
    COVARIATES_DIR, COVARIATE_MEANS_FILE, MODEL_FILE, RPI_OUTPUT_DIR, STUDY_AREA_FILE
)

from .covariate_means import compute_covariate_means, covariate_means_match
from .raster_io import (
    METHOD_OUTPUT_BANDS, DEFAULT_NODATA, CovariateArchive, flatten_to_rows, grid_signature,
    load_study_area, method_output_path, output_is_complete, read_band_stack, rows_to_grid,
    study_area_mask, write_band_stack
)
from .sample_dataset import MEAN_SUFFIX, add_anomaly_features, apply_feature_scaling
from .trained_model import TrainedModel


def productivity_index(observed: np.ndarray, potential: np.ndarray) -> np.ndarray:
    """
    Relative productivity index observed / potential.
    
    Undefined (NaN) where either input is missing or potential is not
    positive. Equal finite inputs give exactly 1.0.
    """
    observed = np.asarray(observed, dtype=np.float32)
    potential = np.asarray(potential, dtype=np.float32)
    valid = np.isfinite(observed) & np.isfinite(potential) & (potential > 0)
    index = np.full(observed.shape, np.nan, dtype=np.float32)
    index[valid] = observed[valid] / potential[valid]
    return index


@contextmanager
def year_buffers():
    """
    Scope for one year's intermediate buffers.
    
    Everything placed in the yielded dict is released when the scope
    exits, whether the year succeeded or failed.
    """
    buffers: Dict[str, object] = {}
    try:
        yield buffers
    finally:
        buffers.clear()
        gc.collect()


class StreamingRasterPredictionPipeline:
    """
    Year-by-year application of the potential productivity model.
    
    Writes one 4-band raster per year (observed, potential, mean_estimate,
    index). Years whose complete output already exists are skipped, so a
    rerun after an interruption resumes where it stopped.
    """
    
    def __init__(self, config: Optional[Union[str, Path, Dict]] = None, model: Optional[TrainedModel] = None):
        """
        Initialize the prediction pipeline.
        
        Args:
            config: Configuration dictionary or path to config file
            model: Trained model (loaded from the artifact path when None)
        """
        self.config = resolve_config(config, "potential_productivity", ['prediction'])
        
        self.logger = setup_logging(
            level=self.config['logging']['level'],
            component_name='raster_prediction',
            log_file=self.config['logging'].get('log_file')
        )
        
        self.pred_config = self.config['prediction']
        self.geotiff_options = self.config.get('output', {}).get('geotiff', {})
        self.nodata = float(self.geotiff_options.get('nodata_value', DEFAULT_NODATA))
        self.num_workers = int(self.config.get('compute', {}).get('num_workers', 1))
        self.chunk_rows = int(self.pred_config.get('chunk_rows', 500_000))
        self.method_name = self.pred_config.get('method_name', 'rpi')
        
        self.model = model
        
        self.logger.info("Initialized StreamingRasterPredictionPipeline")
    
    # ==================== PER-YEAR STEPS ====================
    
    def _predict_rows(self, table: pd.DataFrame) -> Dict[str, np.ndarray]:
        """Predict in row chunks, optionally on a thread pool; output order is preserved."""
        if len(table) <= self.chunk_rows or self.num_workers <= 1:
            chunks = [table.iloc[i:i + self.chunk_rows] for i in range(0, max(len(table), 1), self.chunk_rows)]
            results = [self.model.predict(chunk) for chunk in chunks]
        else:
            chunks = [table.iloc[i:i + self.chunk_rows] for i in range(0, len(table), self.chunk_rows)]
            with ThreadPoolExecutor(max_workers=self.num_workers) as executor:
                results = list(executor.map(self.model.predict, chunks))
        
        return {
            key: np.concatenate([r[key] for r in results]) if results else np.empty(0, dtype=np.float32)
            for key in ('quantile_estimate', 'mean_estimate')
        }
    
    def build_feature_table(
        self,
        stack,
        mask: np.ndarray,
        mean_table: Optional[pd.DataFrame],
        observed_band: str
    ) -> pd.DataFrame:
        """
        Flatten a year's stack to rows and compute model features.
        
        Rows missing any raw covariate or multi-year mean are dropped;
        observed productivity may be missing (the cell still gets a
        potential).
        """
        table = flatten_to_rows(stack, mask)
        
        anomaly_vars = self.model.anomaly_inputs()
        if anomaly_vars:
            for variable in anomaly_vars:
                table[variable + MEAN_SUFFIX] = mean_table[variable].to_numpy()
        
        required = self.model.raw_covariates() + [v + MEAN_SUFFIX for v in anomaly_vars]
        table = table.dropna(subset=required)
        
        if anomaly_vars:
            table = add_anomaly_features(table, anomaly_vars)
            table = table.dropna(subset=[f for f in self.model.features if f in table.columns])
        
        return apply_feature_scaling(table, self.model.feature_scaling)
    
    def predict_year(
        self,
        year: int,
        archive: CovariateArchive,
        mask: np.ndarray,
        reference_grid: tuple,
        mean_table: Optional[pd.DataFrame],
        output_path: Path
    ) -> None:
        """
        Predict and persist one year.
        
        Raises:
            ValueError: If the year's raster is not on the reference grid
        """
        observed_band = self.pred_config.get('observed_band', self.model.label_column)
        bands = self.model.raw_covariates()
        if observed_band not in bands:
            bands = bands + [observed_band]
        
        with year_buffers() as buffers:
            stack, profile = archive.read_year(year, bands)
            if grid_signature(profile) != reference_grid:
                raise ValueError(f"Covariate raster for {year} is not aligned with the archive grid")
            buffers['stack'] = stack
            
            table = self.build_feature_table(stack, mask, mean_table, observed_band)
            buffers['table'] = table
            
            predictions = self._predict_rows(table)
            buffers['predictions'] = predictions
            
            shape = (profile['height'], profile['width'])
            rows, cols = table['row'].to_numpy(), table['col'].to_numpy()
            
            # Cells lacking any model input are no-data in every band
            observed = stack.sel(band=observed_band).values[rows, cols]
            observed_grid = rows_to_grid(observed, rows, cols, shape)
            potential_grid = rows_to_grid(predictions['quantile_estimate'], rows, cols, shape)
            mean_grid = rows_to_grid(predictions['mean_estimate'], rows, cols, shape)
            index_grid = productivity_index(observed_grid, potential_grid)
            
            outputs = dict(zip(METHOD_OUTPUT_BANDS, (observed_grid, potential_grid, mean_grid, index_grid)))
            buffers['outputs'] = outputs
            
            write_band_stack(output_path, outputs, profile, nodata=self.nodata, geotiff_options=self.geotiff_options)
            
            self.logger.info(f"Year {year}: predicted {len(table):,} cells "
                             f"({int(mask.sum()) - len(table):,} masked-in cells lacked inputs)")
    
    # ==================== ORCHESTRATION ====================
    
    def _load_means_table(self, means_path: Path, mask: np.ndarray, reference_grid: tuple) -> Optional[pd.DataFrame]:
        anomaly_vars = self.model.anomaly_inputs()
        if not anomaly_vars:
            return None
        
        means_stack, means_profile = read_band_stack(means_path, anomaly_vars)
        if grid_signature(means_profile) != reference_grid:
            raise ValueError(f"Covariate means raster {means_path} is not aligned with the archive grid")
        return flatten_to_rows(means_stack, mask)
    
    def run_prediction(
        self,
        covariate_dir: Union[str, Path],
        output_dir: Union[str, Path],
        means_path: Optional[Union[str, Path]] = None,
        study_area=None,
        years: Optional[Sequence[int]] = None,
        overwrite: bool = False
    ) -> Dict[int, str]:
        """
        Predict every requested year in chronological order.
        
        Args:
            covariate_dir: Directory of per-year covariate rasters
            output_dir: Directory for per-year output rasters
            means_path: Multi-year means raster (computed if missing and needed)
            study_area: GeoDataFrame/GeoSeries boundary or vector file path (None: whole grid)
            years: Years to process (all archive years if None)
            overwrite: Recompute years whose output already exists
            
        Returns:
            Dict mapping year to 'written', 'skipped' or 'failed'
        """
        if self.model is None:
            raise ValueError("No trained model available for prediction")
        
        archive = CovariateArchive(covariate_dir, self.pred_config.get('covariate_pattern', 'covariates_{year}.tif'))
        years = sorted(years) if years is not None else archive.years
        if not years:
            raise FileNotFoundError(f"No covariate rasters found in {covariate_dir}")
        
        output_dir = ensure_directory(output_dir)
        profile = archive.profile()
        reference_grid = grid_signature(profile)
        shape = (profile['height'], profile['width'])
        
        if isinstance(study_area, (str, Path)):
            study_area = load_study_area(study_area, profile.get('crs'))
        mask = study_area_mask(study_area, profile['transform'], shape)
        self.logger.info(f"Study area covers {int(mask.sum()):,} of {mask.size:,} cells")
        
        # Auxiliary multi-year inputs are fixed before the year loop
        mean_table = None
        if self.model.anomaly_inputs():
            means_path = Path(means_path or COVARIATE_MEANS_FILE)
            if not covariate_means_match(means_path, self.model.anomaly_inputs(), archive.years, profile):
                compute_covariate_means(archive, self.model.anomaly_inputs(), means_path,
                                        geotiff_options=self.geotiff_options)
            mean_table = self._load_means_table(means_path, mask, reference_grid)
        
        status: Dict[int, str] = {}
        start_time = time.time()
        
        for i, year in enumerate(years):
            output_path = method_output_path(output_dir, self.method_name, year)
            
            if not overwrite and output_is_complete(output_path, METHOD_OUTPUT_BANDS):
                self.logger.info(f"Year {year}: output exists, skipping")
                status[year] = 'skipped'
                continue
            
            try:
                self.predict_year(year, archive, mask, reference_grid, mean_table, output_path)
                status[year] = 'written'
            except Exception as e:
                self.logger.error(f"Year {year} failed, previous years are unaffected: {e}")
                status[year] = 'failed'
            
            log_year_progress(self.logger, i + 1, len(years), time.time() - start_time)
        
        return status
    
    def run_full_pipeline(
        self,
        model_path: Optional[Union[str, Path]] = None,
        covariate_dir: Optional[Union[str, Path]] = None,
        output_dir: Optional[Union[str, Path]] = None,
        study_area_path: Optional[Union[str, Path]] = None,
        years: Optional[List[int]] = None
    ) -> bool:
        """
        Load the model and run the streaming prediction with default paths.
        
        Returns:
            bool: True if no year failed
        """
        start_time = time.time()
        log_pipeline_start(self.logger, "Streaming raster prediction", self.pred_config)
        
        try:
            if self.model is None:
                self.model = TrainedModel.load(model_path or MODEL_FILE)
            
            study_area_path = Path(study_area_path or STUDY_AREA_FILE)
            study_area = study_area_path if study_area_path.exists() else None
            if study_area is None:
                self.logger.warning(f"Study area not found ({study_area_path}), using the full grid")
            
            status = self.run_prediction(
                covariate_dir or COVARIATES_DIR,
                output_dir or RPI_OUTPUT_DIR,
                study_area=study_area,
                years=years or self.pred_config.get('years'),
                overwrite=bool(self.pred_config.get('overwrite', False))
            )
        except Exception as e:
            self.logger.error(f"Streaming raster prediction failed: {e}")
            log_pipeline_end(self.logger, "Streaming raster prediction", False, time.time() - start_time)
            return False
        
        failed = [year for year, state in status.items() if state == 'failed']
        if failed:
            self.logger.warning(f"Failed years (rerun to resume): {failed}")
        
        log_pipeline_end(self.logger, "Streaming raster prediction", not failed, time.time() - start_time)
        return not failed
