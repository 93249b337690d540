"""
Residual trend (RESTREND) benchmark.

Each pixel gets its own ordinary least-squares fit of observed productivity
on climate covariates over its own years. Fitted values are the pixel's
potential and mean estimate; the residual series is the index handed to
trend estimation. Pixels with too few valid years or a singular design are
unfit and written as no-data throughout.
"""

from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import numpy as np

from shared_utils.central_data_paths_constants import RESTREND_OUTPUT_DIR

from .benchmark_base import SeriesBenchmarkPipeline
from .time_series_arena import map_pixel_batches

FIT_FLAG_UNFIT = 0.0
FIT_FLAG_FIT = 1.0


def fit_restrend_batch(
    gpp: np.ndarray,
    covariates: np.ndarray,
    min_years: int = 3,
    condition_limit: float = 1e10
) -> Dict[str, np.ndarray]:
    """
    Per-pixel OLS fits for a batch of pixel series.

    The fits are solved together as weighted normal equations in which
    years missing the response or any covariate carry zero weight.

    Args:
        gpp: Observed productivity (n_pixels, n_years), NaN when missing
        covariates: Climate covariates (n_pixels, n_years, n_covariates)
        min_years: Minimum number of valid years for a fit
        condition_limit: Largest acceptable condition number of X'X

    Returns:
        Dict of per-year arrays 'observed', 'potential', 'mean_estimate',
        'index' (residual) and per-pixel 'coefficients' (intercept first),
        'r2', 'n_years', 'fit_flag'
    """
    gpp = np.asarray(gpp, dtype=np.float64)
    covariates = np.asarray(covariates, dtype=np.float64)
    n_pixels, n_years, n_covariates = covariates.shape

    design = np.concatenate([np.ones((n_pixels, n_years, 1)), covariates], axis=2)
    design_ok = np.isfinite(design).all(axis=2)
    weights = design_ok & np.isfinite(gpp)
    valid_years = weights.sum(axis=1)

    design_w = np.where(weights[..., None], design, 0.0)
    gpp_w = np.where(weights, gpp, 0.0)
    xtx = np.einsum('ntp,ntq->npq', design_w, design_w)
    xty = np.einsum('ntp,nt->np', design_w, gpp_w)

    enough = valid_years >= max(int(min_years), n_covariates + 1)
    condition = np.full(n_pixels, np.inf)
    if enough.any():
        condition[enough] = np.linalg.cond(xtx[enough])
    fit = enough & np.isfinite(condition) & (condition < condition_limit)

    coefficients = np.full((n_pixels, n_covariates + 1), np.nan)
    if fit.any():
        coefficients[fit] = np.linalg.solve(xtx[fit], xty[fit][..., None])[..., 0]

    fitted = np.einsum('ntp,np->nt', np.where(design_ok[..., None], design, 0.0), coefficients)
    fitted[~design_ok] = np.nan
    fitted[~fit] = np.nan

    observed = np.where(fit[:, None], gpp, np.nan)
    residual = observed - fitted

    r2 = np.full(n_pixels, np.nan)
    if fit.any():
        y = np.where(weights, gpp, np.nan)[fit]
        ss_res = np.nansum(np.where(weights[fit], residual[fit], np.nan) ** 2, axis=1)
        ss_tot = np.nansum((y - np.nanmean(y, axis=1, keepdims=True)) ** 2, axis=1)
        with np.errstate(divide='ignore', invalid='ignore'):
            r2[fit] = np.where(ss_tot > 0, 1.0 - ss_res / ss_tot, np.nan)

    fit_flag = np.where(fit, FIT_FLAG_FIT, FIT_FLAG_UNFIT)
    # Pixels with no data at all (e.g. outside the study area) stay no-data
    fit_flag[valid_years == 0] = np.nan

    return {
        'observed': observed,
        'potential': fitted,
        'mean_estimate': fitted.copy(),
        'index': residual,
        'coefficients': coefficients,
        'r2': r2,
        'n_years': valid_years.astype(np.float64),
        'fit_flag': fit_flag
    }


class RESTRENDBenchmarkPipeline(SeriesBenchmarkPipeline):
    """RESTREND benchmark over the covariate archive, with a fit diagnostics raster."""

    method_key = 'restrend'
    default_output_dir = RESTREND_OUTPUT_DIR

    @property
    def covariates(self) -> List[str]:
        return list(self.method_config.get('covariates', ['precipitation', 'meanT']))

    def input_bands(self) -> List[str]:
        return [self.observed_band] + self.covariates

    def diagnostic_bands(self) -> List[str]:
        return ['intercept'] + [f'slope_{c}' for c in self.covariates] + ['r2', 'n_years', 'fit_flag']

    def compute_block(self, block: Dict[str, np.ndarray], executor) -> Tuple[Dict[str, np.ndarray], Dict[str, np.ndarray]]:
        covariates = np.stack([block[c] for c in self.covariates], axis=2)

        result = map_pixel_batches(
            fit_restrend_batch,
            [block[self.observed_band], covariates],
            self.batch_size,
            executor,
            min_years=int(self.method_config.get('min_years', 3)),
            condition_limit=float(self.method_config.get('condition_limit', 1e10))
        )

        n_fit = int(np.sum(result['fit_flag'] == FIT_FLAG_FIT))
        n_unfit = int(np.sum(result['fit_flag'] == FIT_FLAG_UNFIT))
        self.logger.debug(f"Row block: {n_fit} pixels fitted, {n_unfit} unfit")

        outputs = {band: result[band] for band in ('observed', 'potential', 'mean_estimate', 'index')}
        coefficients = result['coefficients']
        diagnostics = {name: coefficients[:, i] for i, name in enumerate(self.diagnostic_bands()[:coefficients.shape[1]])}
        diagnostics.update({'r2': result['r2'], 'n_years': result['n_years'], 'fit_flag': result['fit_flag']})
        return outputs, diagnostics

    def extra_output(self, output_dir: Path) -> Tuple[Path, List[str]]:
        return Path(output_dir) / f"{self.method_name}_fit_diagnostics.tif", self.diagnostic_bands()


def unfit_mask_from_diagnostics(diagnostics: np.ndarray) -> np.ndarray:
    """Boolean grid of unfit pixels from a diagnostics fit_flag band."""
    return np.asarray(diagnostics) == FIT_FLAG_UNFIT
