"""Skill metrics, quantile-weighted MAE and best-method selection."""

import numpy as np
import pandas as pd
import pytest

from skill_evaluation.core.skill_evaluation import (
    BEST_METHOD_NODATA, SKILL_BANDS, SkillAccumulator, SkillEvaluationPipeline,
    quantile_weights, select_best_method, weighted_mae
)
from potential_productivity.core.raster_io import method_output_path, read_band_names

from conftest import YEARS, read_band, write_raster


def write_method(directory, method, covariates, mean_offset, potential_scale=1.1, years=YEARS):
    """Per-year method rasters derived from the observed GPP grids."""
    directory.mkdir(parents=True, exist_ok=True)
    for t, year in enumerate(years):
        gpp = covariates[year]['GPP']
        mean_estimate = gpp + mean_offset * (-1) ** t
        write_raster(method_output_path(directory, method, year), {
            'observed': gpp,
            'potential': gpp * potential_scale,
            'mean_estimate': mean_estimate,
            'index': gpp / (gpp * potential_scale)
        })
    return directory


class TestWeightedError:
    def test_weights_for_upper_decile(self):
        w_pos, w_neg = quantile_weights(0.9)
        assert w_pos == pytest.approx(5.0)
        assert w_neg == pytest.approx(5.0 / 9.0)

    def test_invalid_quantile(self):
        with pytest.raises(ValueError):
            quantile_weights(1.0)

    def test_calibrated_quantile_has_unit_error(self):
        # 10% of observations exceed the potential by 1, 90% fall 1 below it
        potential = np.zeros(100)
        observed = np.where(np.arange(100) < 10, 1.0, -1.0)
        assert weighted_mae(observed, potential, 0.9) == pytest.approx(1.0)

    def test_missing_pairs_ignored(self):
        observed = np.array([1.0, np.nan, 0.0])
        potential = np.array([0.0, 1.0, np.nan])
        assert weighted_mae(observed, potential, 0.9) == pytest.approx(5.0)
        assert np.isnan(weighted_mae(np.array([np.nan]), np.array([1.0]), 0.9))


class TestSkillAccumulator:
    def test_negative_r2_when_worse_than_mean(self):
        observed = [1.0, 2.0, 3.0, 4.0]
        offset = np.sqrt(2.5)
        good = SkillAccumulator((1,), 0.9)
        bad = SkillAccumulator((1,), 0.9)
        for t, y in enumerate(observed):
            good.update(np.array([y]), np.array([y]), np.array([y]))
            bad.update(np.array([y]), np.array([y + offset * (-1) ** t]), np.array([y]))

        good_metrics, bad_metrics = good.metrics(), bad.metrics()

        assert good_metrics['r2'][0] == pytest.approx(1.0)
        assert bad_metrics['tss'][0] == pytest.approx(5.0)
        assert bad_metrics['rss'][0] == pytest.approx(10.0)
        assert bad_metrics['r2'][0] == pytest.approx(-1.0)
        assert bad_metrics['negative_r2'][0] == 1.0 and good_metrics['negative_r2'][0] == 0.0

        best = select_best_method(np.stack([good_metrics['r2'], bad_metrics['r2']]))
        assert best[0] == 1

    def test_undefined_r2(self):
        single = SkillAccumulator((2,), 0.9)
        single.update(np.array([1.0, 2.0]), np.array([1.0, np.nan]), np.array([1.0, 1.0]))
        single.update(np.array([1.0, np.nan]), np.array([1.5, 2.0]), np.array([1.0, 1.0]))

        metrics = single.metrics()

        # Constant series: TSS is zero; second pixel has no valid pair
        assert metrics['tss'][0] == 0.0 and np.isnan(metrics['r2'][0])
        assert np.isnan(metrics['r2'][1]) and np.isnan(metrics['negative_r2'][1])
        assert metrics['weighted_mae'][1] == pytest.approx(5.0)

    def test_constant_non_representable_series_has_zero_tss(self):
        rng = np.random.default_rng(3)
        observed = np.concatenate([[1234.5678], rng.uniform(0.0, 5000.0, 499)]).astype(np.float32)
        accumulator = SkillAccumulator(observed.shape, 0.9)
        for _ in range(7):
            accumulator.update(observed, observed.astype(np.float64) + 1.0, observed)

        metrics = accumulator.metrics()

        np.testing.assert_array_equal(metrics['tss'], 0.0)
        assert np.isnan(metrics['r2']).all()
        assert np.isnan(metrics['negative_r2']).all()


class TestBestMethod:
    def test_highest_r2_wins(self):
        scores = np.array([[0.2, np.nan, np.nan], [0.5, 0.1, np.nan], [-0.3, np.nan, np.nan]])
        best = select_best_method(scores, 'r2')
        np.testing.assert_array_equal(best, [2, 2, BEST_METHOD_NODATA])
        assert best.dtype == np.uint8

    def test_lowest_weighted_mae_wins(self):
        scores = np.array([[0.4, 0.9], [0.6, 0.3]])
        np.testing.assert_array_equal(select_best_method(scores, 'weighted_mae'), [1, 2])

    def test_unknown_criterion(self):
        with pytest.raises(ValueError):
            select_best_method(np.zeros((2, 2)), 'rmse')


class TestSkillEvaluationPipeline:
    def test_evaluate_writes_outputs(self, skill_config, covariate_dir, covariates, tmp_path):
        method_dirs = {
            'good': write_method(tmp_path / "good", 'good', covariates, mean_offset=0.0),
            'bad': write_method(tmp_path / "bad", 'bad', covariates, mean_offset=1.0)
        }
        output_dir = tmp_path / "skill"

        summary = SkillEvaluationPipeline(skill_config).evaluate(covariate_dir, method_dirs, output_dir)

        assert read_band_names(output_dir / "good_skill.tif") == list(SKILL_BANDS)
        np.testing.assert_allclose(read_band(output_dir / "good_skill.tif", 'r2'), 1.0, rtol=1e-5)
        assert (read_band(output_dir / "bad_skill.tif", 'negative_r2') == 1.0).all()
        np.testing.assert_array_equal(read_band(output_dir / "best_method.tif", 'best_method'), 1.0)

        codes = pd.read_csv(output_dir / "best_method_codes.csv")
        assert codes.to_dict('list') == {'code': [1, 2], 'method': ['good', 'bad']}

        assert list(summary['method']) == ['good', 'bad']
        assert summary.loc[0, 'share_won'] == 1.0
        assert summary.loc[1, 'share_negative_r2'] == 1.0
        assert (output_dir / "skill_summary.csv").exists()

    def test_only_shared_years_used(self, skill_config, covariate_dir, covariates, tmp_path):
        method_dirs = {
            'good': write_method(tmp_path / "good", 'good', covariates, 0.0, years=[2001, 2002, 2003]),
            'bad': write_method(tmp_path / "bad", 'bad', covariates, 1.0)
        }
        pipeline = SkillEvaluationPipeline(skill_config)
        outputs = {m: {y: method_output_path(d, m, y) for y in YEARS if method_output_path(d, m, y).exists()}
                   for m, d in method_dirs.items()}

        assert pipeline.common_years(YEARS, outputs) == [2001, 2002, 2003]

    def test_weighted_mae_criterion(self, skill_config, covariate_dir, covariates, tmp_path):
        skill_config['skill']['criterion'] = 'weighted_mae'
        method_dirs = {
            'good': write_method(tmp_path / "good", 'good', covariates, 0.0, potential_scale=2.0),
            'bad': write_method(tmp_path / "bad", 'bad', covariates, 0.0, potential_scale=1.05)
        }

        SkillEvaluationPipeline(skill_config).evaluate(covariate_dir, method_dirs, tmp_path / "skill")

        # A potential closer to observed has the smaller weighted error
        np.testing.assert_array_equal(read_band(tmp_path / "skill" / "best_method.tif", 'best_method'), 2.0)

    def test_no_shared_years_fails(self, skill_config, covariate_dir, covariates, tmp_path):
        method_dirs = {'good': write_method(tmp_path / "good", 'good', covariates, 0.0, years=[2001])}
        (tmp_path / "bad").mkdir()
        method_dirs['bad'] = tmp_path / "bad"

        pipeline = SkillEvaluationPipeline(skill_config)
        with pytest.raises(ValueError):
            pipeline.evaluate(covariate_dir, method_dirs, tmp_path / "skill")
        assert not pipeline.run_full_pipeline(covariate_dir, method_dirs, tmp_path / "skill")

    def test_unknown_criterion_rejected(self, skill_config):
        skill_config['skill']['criterion'] = 'rmse'
        with pytest.raises(ValueError):
            SkillEvaluationPipeline(skill_config)
