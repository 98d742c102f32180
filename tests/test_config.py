"""
IXP Configuration Tests
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from ixp.core.config import IXPConfig, LogLevel, UnknownParameterPolicy, get_config, set_config


class TestConfig:
    """Environment, file and validation behavior."""

    def test_defaults(self):
        config = IXPConfig()
        assert config.pipeline.request_timeout_seconds == 30.0
        assert config.pipeline.unknown_parameters == UnknownParameterPolicy.STRIP
        assert config.pipeline.coerce_parameters is False
        assert config.metrics.enabled is True
        assert config.plugins == []

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("IXP_DEBUG", "true")
        monkeypatch.setenv("IXP_PIPELINE__UNKNOWN_PARAMETERS", "strict")
        monkeypatch.setenv("IXP_LOGGING__LEVEL", "DEBUG")

        config = IXPConfig()
        assert config.debug is True
        assert config.pipeline.unknown_parameters == UnknownParameterPolicy.STRICT
        assert config.logging.level == LogLevel.DEBUG

    def test_intents_path_conversion(self):
        assert IXPConfig(intents_path="intents.json").intents_path == Path("intents.json")
        assert IXPConfig(intents_path="").intents_path is None

    def test_negative_timeout_rejected(self):
        with pytest.raises(ValidationError):
            IXPConfig(pipeline={"request_timeout_seconds": -1})

    def test_file_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "ixp.json"
        IXPConfig(service_name="catalog", plugins=["health"]).to_file(path)

        loaded = IXPConfig.from_file(path)
        assert loaded.service_name == "catalog"
        assert loaded.plugins == ["health"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            IXPConfig.from_file(tmp_path / "missing.json")

    def test_global_instance(self):
        config = IXPConfig(service_name="global")
        set_config(config)
        assert get_config() is config
