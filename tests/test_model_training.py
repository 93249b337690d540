"""Sample preparation, spatiotemporal CV and quantile model training."""

import numpy as np
import pandas as pd
import pytest

from potential_productivity.core.model_training import (
    CustomEarlyStopping, QuantileModelTrainingPipeline, build_booster
)
from potential_productivity.core.sample_dataset import (
    add_anomaly_features, prepare_sample_records, reshape_wide_samples
)
from potential_productivity.core.spatiotemporal_cv import create_spatiotemporal_folds
from potential_productivity.core.trained_model import TrainedModel

SAMPLE_YEARS = list(range(2001, 2009))


def make_wide_samples(n_locations=24, years=SAMPLE_YEARS, seed=3):
    rng = np.random.default_rng(seed)
    table = pd.DataFrame({
        'id': np.arange(n_locations),
        'x': rng.uniform(0.0, 100.0, n_locations),
        'y': rng.uniform(0.0, 100.0, n_locations),
        'sand': rng.uniform(10.0, 80.0, n_locations)
    })
    base_rain = rng.uniform(300.0, 900.0, n_locations)
    for t, year in enumerate(years):
        rain = base_rain * rng.uniform(0.7, 1.3, n_locations)
        temp = rng.uniform(80.0, 180.0, n_locations)
        table[f'precipitation_{year}'] = rain
        table[f'meanT_{year}'] = temp
        table[f'GPP_{year}'] = 0.2 + 0.003 * rain + 0.001 * temp + rng.normal(0.0, 0.1, n_locations)
    return table


class TestSampleDataset:
    def test_reshape_wide_to_long(self):
        wide = pd.DataFrame({
            'id': [1, 2],
            'sand': [20.0, 40.0],
            'GPP_2001': [1.0, 2.0],
            'GPP_2002': [1.5, 2.5],
            'precipitation_2001': [500.0, 600.0],
            'precipitation_2002': [550.0, 650.0]
        })
        long = reshape_wide_samples(wide, ['GPP', 'precipitation'], id_column='id')

        assert len(long) == 4
        assert set(long.columns) >= {'id', 'year', 'GPP', 'precipitation', 'sand'}
        row = long[(long['id'] == 2) & (long['year'] == 2002)].iloc[0]
        assert row['GPP'] == 2.5
        assert row['precipitation'] == 650.0
        assert row['sand'] == 40.0

    def test_reshape_without_year_columns_raises(self):
        with pytest.raises(ValueError):
            reshape_wide_samples(pd.DataFrame({'id': [1], 'sand': [1.0]}), ['GPP'])

    def test_anomaly_is_ratio_to_mean(self):
        table = pd.DataFrame({'precipitation': [300.0, 600.0, 5.0], 'precipitation_mean': [600.0, 600.0, 0.0]})
        result = add_anomaly_features(table, ['precipitation'])
        np.testing.assert_allclose(result['precipitation_anomaly'].to_numpy()[:2], [0.5, 1.0])
        assert np.isnan(result['precipitation_anomaly'].iloc[2])

    def test_prepare_records_drops_missing_and_nonpositive(self, training_config):
        wide = make_wide_samples(n_locations=6)
        wide.loc[0, 'GPP_2003'] = -1.0
        wide.loc[1, 'precipitation_2004'] = np.nan

        records = prepare_sample_records(
            wide, training_config['training']['candidate_features'], training_config['samples'], seed=0
        )

        assert len(records) == 6 * len(SAMPLE_YEARS) - 2
        assert (records['label'] > 0).all()
        assert not records[training_config['training']['candidate_features']].isna().any().any()
        assert {'location_id', 'year', 'label', 'space_index', 'time_index'} <= set(records.columns)

    def test_prepare_records_scales_covariates(self, training_config):
        wide = make_wide_samples(n_locations=4)
        records = prepare_sample_records(
            wide, training_config['training']['candidate_features'], training_config['samples'], seed=0
        )
        raw = wide.loc[wide['id'] == 0, f'precipitation_{SAMPLE_YEARS[0]}'].iloc[0]
        scaled = records.loc[(records['location_id'] == 0) & (records['year'] == SAMPLE_YEARS[0]), 'precipitation']
        assert scaled.iloc[0] == pytest.approx(raw / 2000.0)


class TestSpatiotemporalFolds:
    def test_no_shared_location_or_year(self):
        rng = np.random.default_rng(0)
        locations = np.repeat(np.arange(12), 6)
        years = np.tile(np.arange(2001, 2007), 12)
        order = rng.permutation(len(locations))
        locations, years = locations[order], years[order]

        folds = create_spatiotemporal_folds(locations, years, n_folds=3, seed=1)

        assert folds
        for fold in folds:
            assert len(fold.validation_indices) > 0 and len(fold.train_indices) > 0
            assert not set(locations[fold.train_indices]) & set(locations[fold.validation_indices])
            assert not set(years[fold.train_indices]) & set(years[fold.validation_indices])

    def test_deterministic_for_seed(self):
        locations = np.repeat(np.arange(8), 4)
        years = np.tile(np.arange(4), 8)
        first = create_spatiotemporal_folds(locations, years, n_folds=2, seed=5)
        second = create_spatiotemporal_folds(locations, years, n_folds=2, seed=5)
        for a, b in zip(first, second):
            np.testing.assert_array_equal(a.validation_indices, b.validation_indices)

    def test_single_year_raises(self):
        with pytest.raises(ValueError):
            create_spatiotemporal_folds(np.arange(10), np.full(10, 2001), n_folds=3, seed=0)


class TestTrainingComponents:
    def test_invalid_quantile_rejected(self, training_config):
        training_config['training']['quantile'] = 1.5
        with pytest.raises(ValueError):
            QuantileModelTrainingPipeline(training_config)

    def test_booster_objective(self):
        assert build_booster({'n_estimators': 5}, 0.9).get_params()['objective'] == 'reg:quantileerror'
        assert build_booster({'n_estimators': 5}).get_params()['objective'] == 'reg:squarederror'

    def test_callback_counts_stagnation(self):
        callback = CustomEarlyStopping(patience=2, min_trials=1)
        assert callback.stagnation_counter == 0 and not callback.should_stop


class TestQuantileModelTraining:
    @pytest.fixture
    def records(self, training_config):
        return prepare_sample_records(
            make_wide_samples(), training_config['training']['candidate_features'],
            training_config['samples'], seed=7
        )

    def test_train_selects_features_and_logs(self, training_config, records):
        pipeline = QuantileModelTrainingPipeline(training_config)
        model, logs = pipeline.train(records)

        candidates = training_config['training']['candidate_features']
        assert 1 <= len(model.features) <= 3
        assert set(model.features) <= set(candidates)
        assert model.quantile == 0.9
        assert model.feature_scaling['precipitation'] == 2000.0

        selection = logs['feature_selection']
        assert {'step', 'feature', 'cv_mae', 'added'} <= set(selection.columns)
        assert selection['added'].sum() >= len(model.features)

        tuning = logs['hyperparameter_search']
        assert 1 <= len(tuning) <= 3
        # The base configuration is evaluated first
        assert tuning.iloc[0]['n_estimators'] == 15

        predictions = model.predict(records)
        assert predictions['quantile_estimate'].shape == (len(records),)
        assert predictions['mean_estimate'].shape == (len(records),)

    def test_training_is_deterministic(self, training_config, records):
        first, _ = QuantileModelTrainingPipeline(training_config).train(records)
        second, _ = QuantileModelTrainingPipeline(training_config).train(records)
        assert first.features == second.features
        np.testing.assert_array_equal(
            first.predict(records)['quantile_estimate'], second.predict(records)['quantile_estimate']
        )

    def test_model_save_load(self, training_config, records, tmp_path):
        model, _ = QuantileModelTrainingPipeline(training_config).train(records)
        path = model.save(tmp_path / "model.pkl")

        loaded = TrainedModel.load(path)
        assert loaded.features == model.features
        assert loaded.hyperparameters == model.hyperparameters
        np.testing.assert_array_equal(
            loaded.predict(records)['quantile_estimate'], model.predict(records)['quantile_estimate']
        )

    def test_run_full_pipeline_writes_artifacts(self, training_config, tmp_path):
        sample_path = tmp_path / "samples.csv"
        make_wide_samples().to_csv(sample_path, index=False)

        pipeline = QuantileModelTrainingPipeline(training_config)
        assert pipeline.run_full_pipeline(sample_path, tmp_path / "model.pkl", tmp_path / "logs")

        assert (tmp_path / "model.pkl").exists()
        assert (tmp_path / "logs" / "feature_selection_log.csv").exists()
        assert (tmp_path / "logs" / "hyperparameter_search_log.csv").exists()
        assert (tmp_path / "logs" / "training_config.yaml").exists()

    def test_run_full_pipeline_missing_samples_fails(self, training_config, tmp_path):
        pipeline = QuantileModelTrainingPipeline(training_config)
        assert not pipeline.run_full_pipeline(tmp_path / "missing.csv", tmp_path / "m.pkl", tmp_path / "logs")
