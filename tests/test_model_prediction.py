"""Streaming year-by-year raster prediction."""

import numpy as np
import pytest
from rasterio.transform import from_origin
from shapely.geometry import box
import geopandas as gpd

from potential_productivity.core.model_prediction import (
    StreamingRasterPredictionPipeline, productivity_index, year_buffers
)
from potential_productivity.core.model_training import build_booster
from potential_productivity.core.raster_io import METHOD_OUTPUT_BANDS, read_band_names
from potential_productivity.core.trained_model import TrainedModel

from conftest import CRS, YEARS, read_band, write_archive, write_raster


class EchoRegressor:
    """Returns its first feature, so predictions are known exactly."""

    def predict(self, X):
        return np.asarray(X)[:, 0]


def echo_model(features, anomaly_variables=()):
    return TrainedModel(
        quantile=0.9,
        features=list(features),
        hyperparameters={},
        cv_score={},
        quantile_model=EchoRegressor(),
        mean_model=EchoRegressor(),
        anomaly_variables=list(anomaly_variables)
    )


def xgboost_model():
    rng = np.random.default_rng(1)
    X = rng.uniform([300.0, 80.0], [900.0, 180.0], size=(200, 2)).astype(np.float32)
    y = 0.5 + 0.002 * X[:, 0] + 0.004 * X[:, 1] + rng.normal(0.0, 0.05, 200)
    params = {'n_estimators': 10, 'max_depth': 2, 'learning_rate': 0.3, 'n_jobs': 1, 'random_state': 0}
    return TrainedModel(
        quantile=0.9,
        features=['precipitation', 'meanT'],
        hyperparameters=params,
        cv_score={},
        quantile_model=build_booster(params, 0.9).fit(X, y),
        mean_model=build_booster(params).fit(X, y)
    )


class TestProductivityIndex:
    def test_ratio_and_undefined_cells(self):
        observed = np.array([2.0, 1.5, np.nan, 1.0, 3.0])
        potential = np.array([4.0, 1.5, 2.0, 0.0, np.nan])

        index = productivity_index(observed, potential)

        assert index[0] == pytest.approx(0.5)
        assert index[1] == 1.0
        assert np.isnan(index[2:]).all()

    def test_year_buffers_released(self):
        with year_buffers() as buffers:
            buffers['stack'] = np.zeros(10)
        assert buffers == {}

        with pytest.raises(RuntimeError):
            with year_buffers() as buffers:
                buffers['stack'] = np.zeros(10)
                raise RuntimeError("year failed")
        assert buffers == {}


class TestStreamingPrediction:
    def test_writes_one_raster_per_year(self, prediction_config, covariate_dir, covariates, tmp_path):
        pipeline = StreamingRasterPredictionPipeline(prediction_config, model=echo_model(['GPP']))
        output_dir = tmp_path / "rpi"

        status = pipeline.run_prediction(covariate_dir, output_dir)

        assert status == {year: 'written' for year in YEARS}
        for year in YEARS:
            path = output_dir / f"rpi_{year}.tif"
            assert read_band_names(path) == list(METHOD_OUTPUT_BANDS)
            np.testing.assert_allclose(read_band(path, 'observed'), covariates[year]['GPP'], rtol=1e-6)
            # Echoing the observed band makes potential equal observed
            np.testing.assert_array_equal(read_band(path, 'index'), 1.0)

    def test_missing_observation_is_nodata_in_that_year_only(self, prediction_config, covariates, tmp_path):
        covariates[2003]['GPP'][1, 1] = np.nan
        covariate_dir = write_archive(tmp_path / "covariates", covariates)
        pipeline = StreamingRasterPredictionPipeline(prediction_config, model=echo_model(['GPP']))

        status = pipeline.run_prediction(covariate_dir, tmp_path / "rpi")

        assert all(state == 'written' for state in status.values())
        for band in METHOD_OUTPUT_BANDS:
            assert np.isnan(read_band(tmp_path / "rpi" / "rpi_2003.tif", band)[1, 1])
        index_2003 = read_band(tmp_path / "rpi" / "rpi_2003.tif", 'index')
        assert np.isfinite(index_2003).sum() == 8
        assert np.isfinite(read_band(tmp_path / "rpi" / "rpi_2004.tif", 'index')).all()

    def test_missing_covariate_blanks_every_band(self, prediction_config, covariates, tmp_path):
        covariates[2002]['precipitation'][0, 2] = np.nan
        covariate_dir = write_archive(tmp_path / "covariates", covariates)
        pipeline = StreamingRasterPredictionPipeline(prediction_config, model=echo_model(['precipitation']))

        pipeline.run_prediction(covariate_dir, tmp_path / "rpi", years=[2002])

        path = tmp_path / "rpi" / "rpi_2002.tif"
        for band in METHOD_OUTPUT_BANDS:
            assert np.isnan(read_band(path, band)[0, 2])
        assert np.isfinite(read_band(path, 'observed')[0, 1])

    def test_rerun_skips_existing_years(self, prediction_config, covariate_dir, tmp_path):
        pipeline = StreamingRasterPredictionPipeline(prediction_config, model=echo_model(['GPP']))
        pipeline.run_prediction(covariate_dir, tmp_path / "rpi", years=[2001, 2002])

        status = pipeline.run_prediction(covariate_dir, tmp_path / "rpi")

        assert status[2001] == status[2002] == 'skipped'
        assert status[2003] == 'written'
        assert pipeline.run_prediction(covariate_dir, tmp_path / "rpi", years=[2001], overwrite=True) == {2001: 'written'}

    def test_rerun_is_bit_identical(self, prediction_config, covariate_dir, tmp_path):
        pipeline = StreamingRasterPredictionPipeline(prediction_config, model=xgboost_model())
        pipeline.run_prediction(covariate_dir, tmp_path / "first")
        pipeline.run_prediction(covariate_dir, tmp_path / "second")

        for year in YEARS:
            for band in METHOD_OUTPUT_BANDS:
                np.testing.assert_array_equal(
                    read_band(tmp_path / "first" / f"rpi_{year}.tif", band),
                    read_band(tmp_path / "second" / f"rpi_{year}.tif", band)
                )

    def test_chunked_threaded_prediction_matches(self, prediction_config, covariate_dir, tmp_path):
        model = xgboost_model()
        StreamingRasterPredictionPipeline(prediction_config, model=model).run_prediction(
            covariate_dir, tmp_path / "single", years=[2001]
        )

        prediction_config['compute']['num_workers'] = 3
        prediction_config['prediction']['chunk_rows'] = 2
        StreamingRasterPredictionPipeline(prediction_config, model=model).run_prediction(
            covariate_dir, tmp_path / "threaded", years=[2001]
        )

        np.testing.assert_array_equal(
            read_band(tmp_path / "single" / "rpi_2001.tif", 'potential'),
            read_band(tmp_path / "threaded" / "rpi_2001.tif", 'potential')
        )

    def test_anomaly_features_use_multi_year_means(self, prediction_config, covariate_dir, covariates, tmp_path):
        model = echo_model(['precipitation_anomaly'], anomaly_variables=['precipitation'])
        means_path = tmp_path / "means" / "covariate_means.tif"
        pipeline = StreamingRasterPredictionPipeline(prediction_config, model=model)

        pipeline.run_prediction(covariate_dir, tmp_path / "rpi", means_path=means_path, years=[2004])

        assert means_path.exists()
        rain = np.stack([covariates[y]['precipitation'] for y in YEARS])
        expected = covariates[2004]['precipitation'] / rain.mean(axis=0)
        np.testing.assert_allclose(read_band(tmp_path / "rpi" / "rpi_2004.tif", 'potential'), expected, rtol=1e-4)

    def test_corrupt_year_fails_alone(self, prediction_config, covariate_dir, tmp_path):
        (covariate_dir / "covariates_2003.tif").write_bytes(b"not a geotiff")
        pipeline = StreamingRasterPredictionPipeline(prediction_config, model=echo_model(['GPP']))
        output_dir = tmp_path / "rpi"

        status = pipeline.run_prediction(covariate_dir, output_dir)

        assert status[2003] == 'failed'
        assert all(status[y] == 'written' for y in YEARS if y != 2003)
        assert sorted(p.name for p in output_dir.iterdir()) == [
            f"rpi_{y}.tif" for y in YEARS if y != 2003
        ]

    def test_misaligned_year_fails(self, prediction_config, covariate_dir, covariates, tmp_path):
        shifted = from_origin(3005000.0, 2000000.0, 1000.0, 1000.0)
        write_raster(covariate_dir / "covariates_2006.tif", covariates[2001], transform=shifted)
        pipeline = StreamingRasterPredictionPipeline(prediction_config, model=echo_model(['GPP']))

        status = pipeline.run_prediction(covariate_dir, tmp_path / "rpi")

        assert status[2006] == 'failed'
        assert not (tmp_path / "rpi" / "rpi_2006.tif").exists()

    def test_study_area_masks_cells(self, prediction_config, covariate_dir, tmp_path):
        boundary = gpd.GeoDataFrame(geometry=[box(3000000.0, 1997000.0, 3002000.0, 2000000.0)], crs=CRS)
        pipeline = StreamingRasterPredictionPipeline(prediction_config, model=echo_model(['GPP']))

        pipeline.run_prediction(covariate_dir, tmp_path / "rpi", study_area=boundary, years=[2001])

        observed = read_band(tmp_path / "rpi" / "rpi_2001.tif", 'observed')
        assert np.isfinite(observed[:, :2]).all()
        assert np.isnan(observed[:, 2]).all()

    def test_without_model_raises(self, prediction_config, covariate_dir, tmp_path):
        with pytest.raises(ValueError):
            StreamingRasterPredictionPipeline(prediction_config).run_prediction(covariate_dir, tmp_path / "rpi")

    def test_run_full_pipeline_from_saved_model(self, prediction_config, covariate_dir, tmp_path):
        model_path = xgboost_model().save(tmp_path / "model.pkl")
        pipeline = StreamingRasterPredictionPipeline(prediction_config)

        assert pipeline.run_full_pipeline(
            model_path, covariate_dir, tmp_path / "rpi", study_area_path=tmp_path / "none.gpkg", years=[2001, 2002]
        )
        assert sorted(p.name for p in (tmp_path / "rpi").iterdir()) == ["rpi_2001.tif", "rpi_2002.tif"]
