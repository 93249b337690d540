"""Shared fixtures: synthetic covariate archives and per-component configs."""

import sys
from pathlib import Path

import numpy as np
import pytest
import rasterio
from rasterio.transform import from_origin

# Ensure project root is importable
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

CRS = 'EPSG:3035'
TRANSFORM = from_origin(3000000.0, 2000000.0, 1000.0, 1000.0)
NODATA = -9999.0
YEARS = [2001, 2002, 2003, 2004, 2005]


def write_raster(path, bands, nodata=NODATA, transform=TRANSFORM, crs=CRS, dtype='float32'):
    """Write named 2D arrays as a multi-band GeoTIFF; NaN becomes nodata."""
    arrays = [np.asarray(a, dtype=np.float64) for a in bands.values()]
    height, width = arrays[0].shape
    with rasterio.open(
        path, 'w', driver='GTiff', height=height, width=width, count=len(arrays),
        dtype=dtype, crs=crs, transform=transform, nodata=nodata
    ) as dst:
        for index, (name, array) in enumerate(zip(bands, arrays), start=1):
            dst.write(np.where(np.isfinite(array), array, nodata).astype(dtype), index)
            dst.set_band_description(index, name)
    return Path(path)


def read_band(path, name):
    with rasterio.open(path) as src:
        index = list(src.descriptions).index(name) + 1
        data = src.read(index).astype(np.float64)
        if src.nodata is not None:
            data[data == src.nodata] = np.nan
    return data


def make_covariates(shape=(3, 3), years=YEARS, seed=0):
    """
    Per-year covariate grids with GPP tied to precipitation and temperature.

    Returns a dict year -> {band: 2D array}.
    """
    rng = np.random.default_rng(seed)
    base_rain = rng.uniform(300.0, 900.0, size=shape)
    base_temp = rng.uniform(80.0, 180.0, size=shape)
    sand = rng.uniform(10.0, 80.0, size=shape)

    archive = {}
    for t, year in enumerate(years):
        rain = base_rain * (1.0 + 0.1 * np.sin(t + 1)) + rng.normal(0.0, 10.0, size=shape)
        temp = base_temp + 2.0 * t + rng.normal(0.0, 1.0, size=shape)
        gpp = 0.5 + 0.002 * rain + 0.004 * temp + rng.normal(0.0, 0.02, size=shape)
        archive[year] = {'GPP': gpp, 'precipitation': rain, 'meanT': temp, 'sand': sand}
    return archive


def write_archive(directory, covariates):
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    for year, bands in covariates.items():
        write_raster(directory / f"covariates_{year}.tif", bands)
    return directory


@pytest.fixture
def covariates():
    return make_covariates()


@pytest.fixture
def covariate_dir(tmp_path, covariates):
    return write_archive(tmp_path / "covariates", covariates)


def _base_config(**sections):
    config = {
        'logging': {'level': 'WARNING', 'log_file': None},
        'compute': {'num_workers': 1, 'batch_size': 4, 'block_rows': 2},
        'output': {'geotiff': {'nodata_value': NODATA}}
    }
    config.update(sections)
    return config


@pytest.fixture
def prediction_config():
    return _base_config(prediction={
        'method_name': 'rpi',
        'observed_band': 'GPP',
        'covariate_pattern': 'covariates_{year}.tif',
        'chunk_rows': 4
    })


@pytest.fixture
def benchmark_config():
    return _base_config(
        inputs={'covariate_pattern': 'covariates_{year}.tif', 'observed_band': 'GPP'},
        rue={'method_name': 'rue', 'precipitation_band': 'precipitation'},
        restrend={'method_name': 'restrend', 'covariates': ['precipitation', 'meanT'], 'min_years': 3},
        lgs={'method_name': 'lgs', 'covariates': ['precipitation', 'meanT', 'sand'], 'n_clusters': 2,
             'percentile': 90.0, 'sample_size': None, 'min_cluster_size': 1, 'random_seed': 0}
    )


@pytest.fixture
def trend_config():
    return _base_config(trend={'band': 'index', 'methods': ['rpi'], 'overwrite': False})


@pytest.fixture
def skill_config():
    return _base_config(skill={
        'quantile': 0.9,
        'criterion': 'r2',
        'methods': ['good', 'bad'],
        'observed_band': 'GPP',
        'covariate_pattern': 'covariates_{year}.tif'
    })


@pytest.fixture
def training_config():
    return _base_config(
        samples={
            'id_column': 'id',
            'label_column': 'GPP',
            'dynamic_variables': ['GPP', 'precipitation', 'meanT'],
            'anomaly_variables': ['precipitation'],
            'feature_scaling': {'precipitation': 2000.0, 'meanT': 250.0, 'sand': 100.0},
            'n_space_blocks': 4
        },
        training={
            'quantile': 0.9,
            'random_seed': 7,
            'n_folds': 3,
            'candidate_features': ['precipitation', 'meanT', 'precipitation_anomaly', 'sand'],
            'feature_selection': {'min_features': 1, 'max_features': 3, 'patience': 1},
            'base_hyperparameters': {'n_estimators': 15, 'learning_rate': 0.2, 'max_depth': 2, 'n_jobs': 1},
            'hyperparameter_search': {
                'n_trials': 3,
                'patience': 5,
                'min_trials': 2,
                'search_space': {'n_estimators': [10, 20], 'learning_rate': [0.05, 0.3]}
            }
        }
    )
