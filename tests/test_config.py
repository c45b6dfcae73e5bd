"""Tests for protocol configuration."""

import pydantic
import pytest

import beliefmesh.config as config_module
from beliefmesh.config import ProtocolConfig, get_config
from beliefmesh.constants import EPSILON_PROBABILITY, QUALITY_THRESHOLD


class TestDefaults:
    def test_defaults_match_constants(self):
        config = ProtocolConfig()
        assert config.epsilon == EPSILON_PROBABILITY
        assert config.quality_threshold == QUALITY_THRESHOLD
        assert config.min_participants == 2
        assert config.information_percentile == 90.0
        assert config.fallback_to_weighted_average is True

    def test_quality_weights_must_sum_to_one(self):
        with pytest.raises(pydantic.ValidationError, match="sum to 1.0"):
            ProtocolConfig(quality_weight_matrix_health=0.5)

    def test_quality_weights_rebalanced(self):
        config = ProtocolConfig(quality_weight_matrix_health=0.5, quality_weight_prediction_accuracy=0.5)
        assert config.quality_weight_matrix_health == 0.5

    @pytest.mark.parametrize(
        "field,value",
        [
            ("epsilon", 0.0),
            ("min_participants", 1),
            ("boundary_threshold", 0.5),
            ("max_condition_number", 1.0),
            ("information_percentile", 0.0),
            ("submission_min", 0.6),
        ],
    )
    def test_out_of_range(self, field, value):
        with pytest.raises(pydantic.ValidationError):
            ProtocolConfig(**{field: value})


class TestFromEnv:
    def test_empty_environment(self):
        assert ProtocolConfig.from_env({}) == ProtocolConfig()

    def test_overrides(self):
        config = ProtocolConfig.from_env(
            {
                "BELIEFMESH_QUALITY_THRESHOLD": "0.4",
                "BELIEFMESH_MIN_PARTICIPANTS": "3",
                "BELIEFMESH_FALLBACK_TO_WEIGHTED_AVERAGE": "false",
                "UNRELATED": "1",
            }
        )
        assert config.quality_threshold == 0.4
        assert config.min_participants == 3
        assert config.fallback_to_weighted_average is False

    def test_invalid_override(self):
        with pytest.raises(pydantic.ValidationError):
            ProtocolConfig.from_env({"BELIEFMESH_QUALITY_THRESHOLD": "high"})

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("BELIEFMESH_RIDGE", "0.001")
        assert ProtocolConfig.from_env().ridge == 0.001


class TestGetConfig:
    def test_cached(self, monkeypatch):
        monkeypatch.setattr(config_module, "_default_config", None)
        first = get_config()
        assert get_config() is first

    def test_built_from_environment(self, monkeypatch):
        monkeypatch.setattr(config_module, "_default_config", None)
        monkeypatch.setenv("BELIEFMESH_QUALITY_THRESHOLD", "0.5")
        assert get_config().quality_threshold == 0.5
