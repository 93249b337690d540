"""
Local GPP scaling (LGS) benchmark.

Pixels are clustered once by their standardised multi-year-mean
environmental covariates. Each year, a pixel's potential productivity is
the within-cluster percentile (default 90th) of that year's observed GPP
and its mean estimate the within-cluster mean. The cluster count trades
precision of the percentile (more members) against spatial granularity.
"""

import time
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from sklearn.cluster import KMeans
from sklearn.preprocessing import StandardScaler
from tqdm import tqdm

from shared_utils import ensure_directory, log_year_progress
from shared_utils.central_data_paths_constants import LGS_OUTPUT_DIR
from potential_productivity.core.covariate_means import (
    YEARS_TAG, compute_covariate_means, covariate_means_match, format_years
)
from potential_productivity.core.model_prediction import productivity_index, year_buffers
from potential_productivity.core.raster_io import (
    METHOD_OUTPUT_BANDS, flatten_to_rows, grid_signature, mask_digest, output_is_complete,
    read_band_stack, read_raster_metadata, read_single_band, rows_to_grid, write_band_stack
)

from .benchmark_base import BenchmarkPipeline

CLUSTER_NODATA = -1
MASK_TAG = 'study_mask'


def fit_environmental_clusters(
    covariate_means: pd.DataFrame,
    n_clusters: int,
    sample_size: Optional[int] = None,
    random_seed: int = 42
) -> Tuple[np.ndarray, KMeans, StandardScaler]:
    """
    Cluster pixels in standardised multi-year-mean covariate space.

    KMeans is fitted on a seeded random sample of pixels and then applied
    to every pixel.

    Args:
        covariate_means: One row per pixel, one column per covariate, no NaN
        n_clusters: Number of clusters k
        sample_size: Pixels used for fitting (all if None or larger)
        random_seed: Seed for sampling and KMeans initialisation

    Returns:
        Tuple of (cluster label per row, fitted KMeans, fitted scaler)
    """
    values = covariate_means.to_numpy(dtype=np.float64)
    if len(values) < n_clusters:
        raise ValueError(f"Cannot form {n_clusters} clusters from {len(values)} pixels")

    rng = np.random.default_rng(random_seed)
    if sample_size is not None and sample_size < len(values):
        sample = values[rng.choice(len(values), size=int(max(sample_size, n_clusters)), replace=False)]
    else:
        sample = values

    scaler = StandardScaler().fit(sample)
    kmeans = KMeans(n_clusters=n_clusters, random_state=random_seed, n_init=10)
    kmeans.fit(scaler.transform(sample))

    return kmeans.predict(scaler.transform(values)), kmeans, scaler


def cluster_reference_values(
    observed: np.ndarray,
    labels: np.ndarray,
    percentile: float = 90.0,
    min_cluster_size: int = 1
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Within-cluster percentile and mean of one year's observed values.

    Args:
        observed: Observed productivity per pixel, NaN when missing
        labels: Cluster label per pixel
        percentile: Percentile defining potential productivity
        min_cluster_size: Clusters with fewer valid members get NaN

    Returns:
        Tuple of (potential, mean_estimate) per pixel
    """
    frame = pd.DataFrame({'cluster': labels, 'observed': observed})
    valid = frame.dropna(subset=['observed'])

    grouped = valid.groupby('cluster')['observed']
    stats = pd.DataFrame({
        'potential': grouped.quantile(percentile / 100.0),
        'mean_estimate': grouped.mean(),
        'count': grouped.size()
    })
    stats.loc[stats['count'] < min_cluster_size, ['potential', 'mean_estimate']] = np.nan

    potential = frame['cluster'].map(stats['potential']).to_numpy(dtype=np.float64)
    mean_estimate = frame['cluster'].map(stats['mean_estimate']).to_numpy(dtype=np.float64)
    return potential, mean_estimate


class LGSBenchmarkPipeline(BenchmarkPipeline):
    """
    LGS benchmark over the covariate archive.

    Cluster assignment is fixed once from multi-year means and persisted as
    a raster; the reference percentile is recomputed every year.
    """

    method_key = 'lgs'
    default_output_dir = LGS_OUTPUT_DIR

    def _clusters_reusable(
        self,
        clusters_path: Path,
        years: Sequence[int],
        mask: np.ndarray,
        profile: Dict
    ) -> bool:
        if self.method_config.get('recluster', False) or not output_is_complete(clusters_path, ['cluster']):
            return False
        stored_profile, tags = read_raster_metadata(clusters_path)
        return (grid_signature(stored_profile) == grid_signature(profile)
                and tags.get(YEARS_TAG) == format_years(years)
                and tags.get(MASK_TAG) == mask_digest(mask))

    def assign_clusters(
        self,
        archive,
        years: Sequence[int],
        mask: np.ndarray,
        output_dir: Path
    ) -> np.ndarray:
        """
        Build (or reload) the cluster grid; CLUSTER_NODATA outside valid cells.

        A stored cluster raster is reused only when it lies on the archive
        grid and was fitted over the same years and study mask. Otherwise,
        or when ``recluster`` is set, the multi-year means are recomputed
        unless the stored ones cover exactly the requested years.
        """
        covariates = list(self.method_config['covariates'])
        clusters_path = output_dir / f"{self.method_name}_clusters.tif"
        means_path = output_dir / f"{self.method_name}_covariate_means.tif"
        archive_profile = archive.profile()

        if self._clusters_reusable(clusters_path, years, mask, archive_profile):
            self.logger.info(f"Reusing cluster assignment: {clusters_path}")
            stored = read_single_band(clusters_path, 'cluster')
            return np.where(np.isfinite(stored), stored, CLUSTER_NODATA).astype(np.int32)

        if not covariate_means_match(means_path, covariates, years, archive_profile):
            compute_covariate_means(archive, covariates, means_path, years=years,
                                    geotiff_options=self.geotiff_options)

        means_stack, profile = read_band_stack(means_path, covariates)
        table = flatten_to_rows(means_stack, mask).dropna(subset=covariates)

        labels, kmeans, _ = fit_environmental_clusters(
            table[covariates],
            n_clusters=int(self.method_config['n_clusters']),
            sample_size=self.method_config.get('sample_size'),
            random_seed=int(self.method_config.get('random_seed', 42))
        )
        self.logger.info(f"Assigned {len(table):,} pixels to {kmeans.n_clusters} environmental clusters "
                         f"(inertia {kmeans.inertia_:.2f})")

        grid = rows_to_grid(labels, table['row'].to_numpy(), table['col'].to_numpy(),
                            (profile['height'], profile['width']), fill_value=CLUSTER_NODATA, dtype=np.int32)
        write_band_stack(clusters_path, {'cluster': grid}, profile, nodata=CLUSTER_NODATA,
                         dtype='int32', geotiff_options=self.geotiff_options,
                         tags={YEARS_TAG: format_years(years), MASK_TAG: mask_digest(mask)})
        return grid

    def predict_year(self, archive, year: int, clusters: np.ndarray, output_path: Path) -> None:
        percentile = float(self.method_config.get('percentile', 90.0))
        min_cluster_size = int(self.method_config.get('min_cluster_size', 1))

        with year_buffers() as buffers:
            stack, profile = archive.read_year(year, [self.observed_band])
            observed = np.where(clusters != CLUSTER_NODATA, stack.values[0], np.nan)
            buffers['observed'] = observed

            rows, cols = np.nonzero(clusters != CLUSTER_NODATA)
            potential, mean_estimate = cluster_reference_values(
                observed[rows, cols], clusters[rows, cols], percentile, min_cluster_size
            )

            shape = clusters.shape
            potential_grid = rows_to_grid(potential, rows, cols, shape)
            mean_grid = rows_to_grid(mean_estimate, rows, cols, shape)

            outputs = dict(zip(METHOD_OUTPUT_BANDS, (
                observed.astype(np.float32), potential_grid, mean_grid,
                productivity_index(observed, potential_grid)
            )))
            buffers['outputs'] = outputs

            write_band_stack(output_path, outputs, profile, nodata=self.nodata,
                             geotiff_options=self.geotiff_options)

    def run(
        self,
        covariate_dir: Union[str, Path],
        output_dir: Union[str, Path],
        study_area=None,
        years: Optional[Sequence[int]] = None,
        overwrite: bool = False
    ) -> Dict[int, str]:
        """
        Cluster once, then write one raster per year.

        Returns:
            Dict mapping year to 'written', 'skipped' or 'failed'
        """
        archive = self.open_archive(covariate_dir)
        years = sorted(years) if years else archive.years
        output_dir = ensure_directory(output_dir)
        paths = self.output_paths(output_dir, years)

        pending = self.pending_years(paths, overwrite)
        status = {year: 'skipped' for year in years if year not in pending}
        if not pending:
            self.logger.info(f"All {len(years)} {self.method_name} outputs exist, skipping")
            return status

        profile = archive.profile()
        mask = self.build_mask(profile, study_area)
        clusters = self.assign_clusters(archive, years, mask, output_dir)

        start_time = time.time()
        for i, year in enumerate(tqdm(pending, desc="LGS years")):
            try:
                self.predict_year(archive, year, clusters, paths[year])
                status[year] = 'written'
            except Exception as e:
                self.logger.error(f"Year {year} failed, previous years are unaffected: {e}")
                status[year] = 'failed'
            log_year_progress(self.logger, i + 1, len(pending), time.time() - start_time)

        self.logger.info(f"LGS wrote {sum(s == 'written' for s in status.values())} years "
                         f"in {(time.time() - start_time) / 60:.1f} min")
        return dict(sorted(status.items()))
