"""Configuration, logging and atomic output helpers."""

import logging

import pytest
import yaml

from shared_utils import (
    atomic_output_path, format_duration, get_config_value, get_logger, load_config, resolve_config,
    save_config, setup_logging, validate_config
)


class TestConfigUtils:
    def test_load_explicit_path(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text("training:\n  quantile: 0.8\n")

        config = load_config(path)

        assert config['training']['quantile'] == 0.8
        assert config['_meta']['config_file'] == str(path.absolute())

    def test_component_default_config_found(self):
        config = load_config(component_name="trend_analysis")
        assert 'trend' in config

    def test_missing_file_raises(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv('PRODUCTIVITY_GAP_CONFIG', raising=False)
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            load_config(path)

    def test_get_config_value(self):
        config = {'compute': {'num_workers': 4}}
        assert get_config_value(config, 'compute.num_workers') == 4
        assert get_config_value(config, 'compute.batch_size', 100) == 100
        assert get_config_value(config, 'compute.num_workers.value', 'x') == 'x'

    def test_validate_config_nested_keys(self):
        config = {'training': {'quantile': 0.9}, 'logging': {'level': 'INFO'}}
        assert validate_config(config, ['training.quantile', 'logging'])
        with pytest.raises(ValueError, match="training.candidate_features"):
            validate_config(config, ['training.candidate_features'])

    def test_resolve_config_requires_logging_level(self):
        with pytest.raises(ValueError):
            resolve_config({'trend': {}}, "trend_analysis", ['trend'])
        config = {'logging': {'level': 'INFO'}, 'trend': {}}
        assert resolve_config(config, "trend_analysis", ['trend']) is config

    def test_resolve_config_loads_component_default(self):
        config = resolve_config(None, "skill_evaluation", ['skill.quantile'])
        assert config['_meta']['component_name'] == "skill_evaluation"

    def test_save_config_drops_metadata(self, tmp_path):
        path = tmp_path / "out" / "config.yaml"
        save_config({'skill': {'quantile': 0.9}, '_meta': {'config_file': 'x'}}, path)

        with open(path) as f:
            saved = yaml.safe_load(f)
        assert saved == {'skill': {'quantile': 0.9}}


class TestLogging:
    def test_component_logger_names(self):
        logger = setup_logging('WARNING', 'skill_evaluation')
        assert logger.name == 'productivity_gap.skill_evaluation'
        assert get_logger('lgs').name == 'productivity_gap.lgs'
        assert logging.getLogger().level == logging.WARNING

    def test_log_file_written(self, tmp_path):
        log_file = tmp_path / "logs" / "run.log"
        logger = setup_logging('INFO', 'trend_analysis', log_file=log_file)
        logger.info("trend stage started")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "trend stage started" in log_file.read_text()

    def test_format_duration(self):
        assert format_duration(0) == "00:00:00"
        assert format_duration(3725.9) == "01:02:05"


class TestAtomicOutput:
    def test_replaces_on_success(self, tmp_path):
        target = tmp_path / "result.txt"
        with atomic_output_path(target) as tmp:
            assert tmp != target
            tmp.write_text("done")
            assert not target.exists()

        assert target.read_text() == "done"
        assert [p.name for p in tmp_path.iterdir()] == ["result.txt"]

    def test_cleans_up_on_error(self, tmp_path):
        target = tmp_path / "result.txt"
        target.write_text("previous")

        with pytest.raises(RuntimeError):
            with atomic_output_path(target) as tmp:
                tmp.write_text("partial")
                raise RuntimeError("interrupted")

        assert target.read_text() == "previous"
        assert [p.name for p in tmp_path.iterdir()] == ["result.txt"]
