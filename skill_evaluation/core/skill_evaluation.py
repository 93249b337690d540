"""
Per-pixel skill comparison of potential productivity methods.

For every method, per-pixel sums are accumulated year by year (count, sum
and sum of squares of observed values, residual sum of squares against the
method's mean estimate, quantile-weighted absolute error against its
potential), so the archive is never held in memory. From these come the
explained variance R² = 1 - RSS/TSS and the quantile-weighted MAE, and a
categorical raster of the best method per pixel.
"""

import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from tqdm import tqdm

from shared_utils import setup_logging, resolve_config, ensure_directory, log_pipeline_start, log_pipeline_end, log_section
from shared_utils.central_data_paths_constants import COVARIATES_DIR, METHOD_OUTPUTS_DIR, SKILL_DIR
from potential_productivity.core.model_prediction import year_buffers
from potential_productivity.core.raster_io import (
    DEFAULT_NODATA, CovariateArchive, check_raster_alignment, find_method_outputs,
    read_band_stack, write_band_stack
)

SKILL_BANDS = ('tss', 'rss', 'r2', 'weighted_mae', 'negative_r2')
BEST_METHOD_NODATA = 0
CRITERIA = ('r2', 'weighted_mae')


def quantile_weights(quantile: float) -> Tuple[float, float]:
    """
    Residual weights for a quantile-Q potential.

    Residuals above the potential get w_pos, the rest w_neg, with
    w_pos * (1 - Q) = w_neg * Q and w_pos * (1 - Q) + w_neg * Q = 1, so a
    calibrated quantile model has an expected weight of 1 per residual.
    For Q = 0.9 this gives (5, 5/9).
    """
    if not 0.0 < quantile < 1.0:
        raise ValueError(f"Quantile must lie in (0, 1), got {quantile}")
    return 1.0 / (2.0 * (1.0 - quantile)), 1.0 / (2.0 * quantile)


def weighted_absolute_error(observed: np.ndarray, potential: np.ndarray, quantile: float) -> np.ndarray:
    """Elementwise quantile-weighted absolute residual; NaN where either input is missing."""
    w_pos, w_neg = quantile_weights(quantile)
    observed = np.asarray(observed, dtype=np.float64)
    potential = np.asarray(potential, dtype=np.float64)
    residual = observed - potential
    weights = np.where(residual > 0, w_pos, w_neg)
    return np.where(np.isfinite(residual), weights * np.abs(residual), np.nan)


def weighted_mae(observed: np.ndarray, potential: np.ndarray, quantile: float) -> float:
    """Quantile-weighted mean absolute error over all valid pairs."""
    errors = weighted_absolute_error(observed, potential, quantile)
    valid = np.isfinite(errors)
    return float(errors[valid].mean()) if valid.any() else float('nan')


class SkillAccumulator:
    """
    Running per-pixel statistics for one method.

    update() is called once per year with that year's grids; metrics()
    turns them into TSS, RSS, R², weighted MAE and the negative-R² flag.
    """

    def __init__(self, shape: Tuple[int, ...], quantile: float):
        self.quantile = quantile
        self.w_pos, self.w_neg = quantile_weights(quantile)
        self.count = np.zeros(shape, dtype=np.int32)
        self.mean_y = np.zeros(shape, dtype=np.float64)
        self.m2_y = np.zeros(shape, dtype=np.float64)
        self.rss = np.zeros(shape, dtype=np.float64)
        self.error_count = np.zeros(shape, dtype=np.int32)
        self.error_sum = np.zeros(shape, dtype=np.float64)

    def update(self, observed: np.ndarray, mean_estimate: np.ndarray, potential: np.ndarray) -> None:
        observed = np.asarray(observed, dtype=np.float64)
        mean_estimate = np.asarray(mean_estimate, dtype=np.float64)

        valid = np.isfinite(observed) & np.isfinite(mean_estimate)
        y = np.where(valid, observed, 0.0)
        self.count += valid
        # Welford update: a constant series keeps m2 at exactly zero
        delta = np.where(valid, y - self.mean_y, 0.0)
        self.mean_y += delta / np.maximum(self.count, 1)
        self.m2_y += np.where(valid, delta * (y - self.mean_y), 0.0)
        self.rss += np.where(valid, (observed - mean_estimate) ** 2, 0.0)

        errors = weighted_absolute_error(observed, potential, self.quantile)
        has_error = np.isfinite(errors)
        self.error_count += has_error
        self.error_sum += np.where(has_error, errors, 0.0)

    def metrics(self) -> Dict[str, np.ndarray]:
        """Per-pixel skill metrics keyed by SKILL_BANDS; NaN where undefined."""
        with np.errstate(divide='ignore', invalid='ignore'):
            tss = np.where(self.count > 0, np.maximum(self.m2_y, 0.0), np.nan)
            rss = np.where(self.count > 0, self.rss, np.nan)
            r2 = np.where((self.count >= 2) & (tss > 0), 1.0 - rss / tss, np.nan)
            mae = np.where(self.error_count > 0, self.error_sum / self.error_count, np.nan)

        negative = np.where(np.isfinite(r2), (r2 < 0).astype(np.float64), np.nan)
        return {'tss': tss, 'rss': rss, 'r2': r2, 'weighted_mae': mae, 'negative_r2': negative}


def select_best_method(scores: np.ndarray, criterion: str = 'r2') -> np.ndarray:
    """
    Per-pixel best method from stacked scores.

    Args:
        scores: Array (n_methods, ...) of R² or weighted MAE, NaN when undefined
        criterion: 'r2' (highest wins) or 'weighted_mae' (lowest wins)

    Returns:
        uint8 array of codes 1..n_methods in stacking order,
        BEST_METHOD_NODATA where no method has a score
    """
    if criterion not in CRITERIA:
        raise ValueError(f"Unknown skill criterion '{criterion}', expected one of {CRITERIA}")

    scores = np.asarray(scores, dtype=np.float64)
    defined = np.isfinite(scores).any(axis=0)
    fill = -np.inf if criterion == 'r2' else np.inf
    filled = np.where(np.isfinite(scores), scores, fill)

    best = filled.argmax(axis=0) if criterion == 'r2' else filled.argmin(axis=0)
    return np.where(defined, best + 1, BEST_METHOD_NODATA).astype(np.uint8)


def summarize_skill(method_metrics: Dict[str, Dict[str, np.ndarray]], best: np.ndarray) -> pd.DataFrame:
    """Per-method summary: median R², share of negative R², share of pixels won."""
    n_assigned = int((best != BEST_METHOD_NODATA).sum())
    rows = []
    for code, (method, metrics) in enumerate(method_metrics.items(), start=1):
        r2 = metrics['r2'][np.isfinite(metrics['r2'])]
        mae = metrics['weighted_mae'][np.isfinite(metrics['weighted_mae'])]
        rows.append({
            'code': code,
            'method': method,
            'n_pixels': int(r2.size),
            'median_r2': float(np.median(r2)) if r2.size else np.nan,
            'share_negative_r2': float((r2 < 0).mean()) if r2.size else np.nan,
            'median_weighted_mae': float(np.median(mae)) if mae.size else np.nan,
            'share_won': float((best == code).sum() / n_assigned) if n_assigned else np.nan
        })
    return pd.DataFrame(rows)


class SkillEvaluationPipeline:
    """
    Skill metrics and best-method selection over all methods.

    Observed productivity comes from the covariate archive; each method
    supplies per-year rasters with potential and mean_estimate bands.
    Only years present for the observed archive and every method are used.
    """

    def __init__(self, config: Optional[Union[str, Path, Dict]] = None):
        """
        Initialize the skill pipeline.

        Args:
            config: Configuration dictionary or path to config file
        """
        self.config = resolve_config(config, "skill_evaluation", ['skill'])

        self.logger = setup_logging(
            level=self.config['logging']['level'],
            component_name='skill_evaluation',
            log_file=self.config['logging'].get('log_file')
        )

        self.skill_config = self.config['skill']
        self.quantile = float(self.skill_config.get('quantile', 0.9))
        self.criterion = self.skill_config.get('criterion', 'r2')
        if self.criterion not in CRITERIA:
            raise ValueError(f"Unknown skill criterion '{self.criterion}', expected one of {CRITERIA}")

        self.geotiff_options = self.config.get('output', {}).get('geotiff', {})
        self.nodata = float(self.geotiff_options.get('nodata_value', DEFAULT_NODATA))

        self.logger.info("Initialized SkillEvaluationPipeline")

    def common_years(self, observed_years: Sequence[int], method_outputs: Dict[str, Dict[int, Path]]) -> List[int]:
        years = set(observed_years)
        for method, outputs in method_outputs.items():
            missing = sorted(years - set(outputs))
            if missing:
                self.logger.warning(f"Method '{method}' lacks years {missing}; they are excluded")
            years &= set(outputs)
        return sorted(years)

    def accumulate(
        self,
        archive: CovariateArchive,
        method_outputs: Dict[str, Dict[int, Path]],
        years: Sequence[int],
        observed_band: str
    ) -> Tuple[Dict[str, SkillAccumulator], Dict]:
        """Stream the archive year by year into one accumulator per method."""
        profile = archive.profile()
        shape = (profile['height'], profile['width'])
        accumulators = {method: SkillAccumulator(shape, self.quantile) for method in method_outputs}

        for year in tqdm(years, desc="Accumulating skill"):
            check_raster_alignment([archive.path_for(year)] + [outputs[year] for outputs in method_outputs.values()])

            with year_buffers() as buffers:
                observed_stack, _ = archive.read_year(year, [observed_band])
                buffers['observed'] = observed_stack.values[0]

                for method, outputs in method_outputs.items():
                    stack, _ = read_band_stack(outputs[year], ['potential', 'mean_estimate'])
                    accumulators[method].update(
                        buffers['observed'],
                        stack.sel(band='mean_estimate').values,
                        stack.sel(band='potential').values
                    )
                    del stack

        return accumulators, profile

    def evaluate(
        self,
        covariate_dir: Union[str, Path],
        method_dirs: Dict[str, Union[str, Path]],
        output_dir: Union[str, Path]
    ) -> pd.DataFrame:
        """
        Compute and write every skill output.

        Args:
            covariate_dir: Directory of per-year covariate rasters (observed band)
            method_dirs: Ordered mapping of method name to its per-year output directory
            output_dir: Directory for skill rasters and tables

        Returns:
            Per-method summary table
        """
        output_dir = ensure_directory(output_dir)
        observed_band = self.skill_config.get('observed_band', 'GPP')
        archive = CovariateArchive(covariate_dir, self.skill_config.get('covariate_pattern', 'covariates_{year}.tif'))

        method_outputs = {method: find_method_outputs(directory, method) for method, directory in method_dirs.items()}
        years = self.common_years(archive.years, method_outputs)
        if not years:
            raise ValueError("No year is shared by the observed archive and every method")
        self.logger.info(f"Evaluating {len(method_outputs)} methods over {len(years)} years ({years[0]}-{years[-1]})")

        accumulators, profile = self.accumulate(archive, method_outputs, years, observed_band)

        log_section(self.logger, "Skill metrics")
        method_metrics = {}
        for method, accumulator in accumulators.items():
            metrics = accumulator.metrics()
            method_metrics[method] = metrics
            write_band_stack(output_dir / f"{method}_skill.tif", {b: metrics[b] for b in SKILL_BANDS},
                             profile, nodata=self.nodata, geotiff_options=self.geotiff_options)
            n_negative = int(np.nansum(metrics['negative_r2']))
            self.logger.info(f"{method}: median R² {np.nanmedian(metrics['r2']):.3f}, "
                             f"{n_negative:,} pixels with negative R²")

        score_key = 'r2' if self.criterion == 'r2' else 'weighted_mae'
        best = select_best_method(np.stack([m[score_key] for m in method_metrics.values()]), self.criterion)
        write_band_stack(output_dir / "best_method.tif", {'best_method': best}, profile,
                         nodata=BEST_METHOD_NODATA, dtype='uint8', geotiff_options=self.geotiff_options)

        codes = pd.DataFrame({'code': range(1, len(method_metrics) + 1), 'method': list(method_metrics)})
        codes.to_csv(output_dir / "best_method_codes.csv", index=False)

        summary = summarize_skill(method_metrics, best)
        summary.to_csv(output_dir / "skill_summary.csv", index=False)
        return summary

    def run_full_pipeline(
        self,
        covariate_dir: Optional[Union[str, Path]] = None,
        method_dirs: Optional[Dict[str, Union[str, Path]]] = None,
        output_dir: Optional[Union[str, Path]] = None
    ) -> bool:
        """
        Run skill evaluation with default paths.

        Returns:
            bool: True if evaluation completed successfully
        """
        start_time = time.time()
        log_pipeline_start(self.logger, "Skill evaluation", self.skill_config)

        if method_dirs is None:
            configured = self.skill_config.get('method_dirs') or {}
            method_dirs = {m: configured.get(m, METHOD_OUTPUTS_DIR / m) for m in self.skill_config['methods']}

        try:
            summary = self.evaluate(covariate_dir or COVARIATES_DIR, method_dirs, output_dir or SKILL_DIR)
            for _, row in summary.iterrows():
                self.logger.info(f"  {row['method']}: won {row['share_won']:.1%} of pixels")
        except Exception as e:
            self.logger.error(f"Skill evaluation failed: {e}")
            log_pipeline_end(self.logger, "Skill evaluation", False, time.time() - start_time)
            return False

        log_pipeline_end(self.logger, "Skill evaluation", True, time.time() - start_time)
        return True
