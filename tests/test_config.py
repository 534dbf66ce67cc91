"""Tests for core/config.py and core/duration.py."""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from core.config import AppConfig, PipelineConfig, load_config
from core.duration import parse_duration, parse_seconds


class TestDuration:

    @pytest.mark.parametrize("raw, expected", [
        ("250ms", timedelta(milliseconds=250)),
        ("10s", timedelta(seconds=10)),
        ("5m", timedelta(minutes=5)),
        ("1h", timedelta(hours=1)),
        ("1d", timedelta(days=1)),
        ("30", timedelta(seconds=30)),
        (45, timedelta(seconds=45)),
        ("0s", timedelta(0)),
    ])
    def test_parse(self, raw, expected):
        assert parse_duration(raw) == expected

    @pytest.mark.parametrize("raw", ["soon", "10 parsecs", "", "-5s"])
    def test_rejects_garbage(self, raw):
        with pytest.raises(ValueError):
            parse_duration(raw)

    def test_seconds(self):
        assert parse_seconds("2m") == 120.0


class TestPipelineConfig:

    def test_defaults(self):
        cfg = PipelineConfig()
        assert cfg.batch_size == 20
        assert cfg.sync_interval == 60
        assert cfg.retention_days == 90
        assert cfg.privacy_mode == "enhanced"
        assert cfg.max_retries == 3
        assert cfg.api_endpoint is None
        assert cfg.max_batch_age_delta is None

    def test_camel_case_keys(self):
        cfg = PipelineConfig(**{"batchSize": 5, "apiEndpoint": "https://c.example", "maxBatchAge": "5m"})
        assert cfg.batch_size == 5
        assert cfg.api_endpoint == "https://c.example"
        assert cfg.max_batch_age_delta == timedelta(minutes=5)

    @pytest.mark.parametrize("options", [
        {"batch_size": 0},
        {"max_retries": 0},
        {"privacy_mode": "off"},
        {"retry_backoff": "whenever"},
        {"max_batch_age": "soonish"},
    ])
    def test_invalid_values_rejected(self, options):
        with pytest.raises(ValidationError):
            PipelineConfig(**options)


class TestLoadConfig:

    def test_yaml_with_env_references(self, tmp_path, monkeypatch):
        monkeypatch.setenv("BEACON_HOME", str(tmp_path / "home"))
        monkeypatch.setenv("COLLECTOR_KEY", "secret-key")
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "server:\n"
            "  port: 9000\n"
            "pipeline:\n"
            "  apiEndpoint: https://collector.example.com/v1/batches\n"
            "  batchSize: 50\n"
            "  privacy_mode: standard\n"
            "  headers:\n"
            "    X-Api-Key: ${COLLECTOR_KEY}\n"
            "logging:\n"
            "  level: DEBUG\n"
        )

        config = load_config(config_path=config_file, env_path=tmp_path / "missing.env")

        assert config.server.port == 9000
        assert config.pipeline.batch_size == 50
        assert config.pipeline.privacy_mode == "standard"
        assert config.pipeline.headers == {"X-Api-Key": "secret-key"}
        assert config.logging.level == "DEBUG"
        assert config.home_path == tmp_path / "home"
        assert config.home_path.is_dir()

    def test_dotenv_is_loaded(self, tmp_path, monkeypatch):
        monkeypatch.setenv("BEACON_HOME", str(tmp_path))
        monkeypatch.delenv("BEACON_TEST_ENDPOINT", raising=False)
        (tmp_path / ".env").write_text("BEACON_TEST_ENDPOINT=https://from-dotenv.example\n")
        (tmp_path / "config.yaml").write_text("pipeline:\n  api_endpoint: ${BEACON_TEST_ENDPOINT}\n")

        config = load_config()
        monkeypatch.delenv("BEACON_TEST_ENDPOINT", raising=False)

        assert config.pipeline.api_endpoint == "https://from-dotenv.example"

    def test_missing_file_gives_defaults(self, tmp_path, monkeypatch):
        monkeypatch.setenv("BEACON_HOME", str(tmp_path))

        config = load_config()

        assert config.pipeline == PipelineConfig()
        assert config.server.port == AppConfig().server.port
