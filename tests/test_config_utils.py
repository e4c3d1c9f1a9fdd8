"""
Unit tests for engine configuration.
"""
import json
import logging

import pytest

from config_utils import EngineConfig, config_from_dict, load_engine_config, save_engine_config
from errors import InvalidInputError


class TestEngineConfig:
    """Test defaults and validation"""

    def test_defaults(self):
        config = EngineConfig()
        assert config.tax_year == 2024
        assert config.settlement_month == 12
        assert config.convergence_tolerance == 1.0
        assert config.max_iterations == 50
        assert config.capital_gains_ratio == 0.30
        assert config.default_horizon_years == 30
        assert config.projection_max_age == 100
        assert config.mc_sample_path_percentiles == (5, 10, 50, 90, 95)

    @pytest.mark.parametrize("overrides", [
        {'settlement_month': 13},
        {'settlement_month': 0},
        {'convergence_tolerance': 0},
        {'max_iterations': 0},
        {'capital_gains_ratio': 1.1},
        {'mc_chunk_size': 0},
    ])
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(InvalidInputError):
            EngineConfig(**overrides)

    def test_unknown_keys_ignored_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            config = config_from_dict({'max_iterations': 10, 'colour': 'blue'})
        assert config.max_iterations == 10
        assert 'colour' in caplog.text


class TestConfigPersistence:
    """Test config save/load functionality"""

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_engine_config(str(tmp_path / 'absent.json')) == EngineConfig()

    def test_save_and_load(self, tmp_path):
        path = str(tmp_path / 'engine.json')
        original = EngineConfig(tax_year=2024, mc_max_workers=4, mc_sample_path_percentiles=[10, 50, 90])
        save_engine_config(original, path)

        with open(path) as f:
            assert json.load(f)['mc_sample_path_percentiles'] == [10, 50, 90]
        assert load_engine_config(path) == original

    def test_malformed_json(self, tmp_path):
        path = tmp_path / 'engine.json'
        path.write_text('{"tax_year": ')
        with pytest.raises(InvalidInputError, match="Malformed"):
            load_engine_config(str(path))

    def test_non_object_rejected(self, tmp_path):
        path = tmp_path / 'engine.json'
        path.write_text('[1, 2]')
        with pytest.raises(InvalidInputError):
            load_engine_config(str(path))
