"""Tests for configuration loading."""

import logging

import pytest

from humwitness.config import HumWitnessConfig, LoggingConfig, configure_logging, load_config
from humwitness.types import TransportProtocol

ENV_VARS = (
    "HUMWITNESS_CONFIG",
    "HUMWITNESS_MIN_PEERS",
    "HUMWITNESS_OUTLIER_THRESHOLD",
    "HUMWITNESS_REQUEST_TIMEOUT",
    "HUMWITNESS_MIN_DURATION",
    "HUMWITNESS_TRANSPORTS",
    "HUMWITNESS_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    def test_defaults(self):
        config = load_config()
        assert config.fingerprint.fft_window_size == 4096
        assert config.fingerprint.hop_size == 2048
        assert config.fingerprint.min_duration == 5.0
        assert config.aggregation.min_peers == 3
        assert config.aggregation.outlier_threshold == 2.0
        assert config.mesh.enabled_transports == [TransportProtocol.WEBRTC, TransportProtocol.BLUETOOTH]
        assert config.logging.level == "INFO"

    def test_sections_are_independent(self):
        a, b = HumWitnessConfig(), HumWitnessConfig()
        a.mesh.enabled_transports.append(TransportProtocol.WIFI_DIRECT)
        assert TransportProtocol.WIFI_DIRECT not in b.mesh.enabled_transports


class TestYaml:
    def test_load_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "fingerprint:\n"
            "  target_frequency: 50\n"
            "mesh:\n"
            "  enabled_transports: [wifi_direct, webrtc]\n"
            "  request_timeout: 5\n"
            "aggregation:\n"
            "  min_peers: 5\n"
            "  unknown_key: ignored\n"
        )
        config = load_config(str(path))
        assert config.fingerprint.target_frequency == 50
        assert config.mesh.enabled_transports == [TransportProtocol.WIFI_DIRECT, TransportProtocol.WEBRTC]
        assert config.mesh.request_timeout == 5
        assert config.aggregation.min_peers == 5
        assert not hasattr(config.aggregation, "unknown_key")

    def test_config_from_env_path(self, tmp_path, monkeypatch):
        path = tmp_path / "other.yaml"
        path.write_text("logging:\n  level: DEBUG\n")
        monkeypatch.setenv("HUMWITNESS_CONFIG", str(path))
        assert load_config().logging.level == "DEBUG"

    def test_home_config(self, tmp_path):
        path = tmp_path / "home" / ".config" / "humwitness" / "config.yaml"
        path.parent.mkdir(parents=True)
        path.write_text("aggregation:\n  outlier_threshold: 3.5\n")
        assert load_config().aggregation.outlier_threshold == 3.5

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path)).aggregation.min_peers == 3

    def test_missing_file_falls_back(self, tmp_path):
        assert load_config(str(tmp_path / "missing.yaml")).aggregation.min_peers == 3


class TestEnvOverrides:
    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("aggregation:\n  min_peers: 5\n")
        monkeypatch.setenv("HUMWITNESS_MIN_PEERS", "7")
        assert load_config(str(path)).aggregation.min_peers == 7

    def test_all_overrides(self, monkeypatch):
        monkeypatch.setenv("HUMWITNESS_OUTLIER_THRESHOLD", "1.5")
        monkeypatch.setenv("HUMWITNESS_REQUEST_TIMEOUT", "2.5")
        monkeypatch.setenv("HUMWITNESS_MIN_DURATION", "3")
        monkeypatch.setenv("HUMWITNESS_TRANSPORTS", "bluetooth, wifi_direct")
        monkeypatch.setenv("HUMWITNESS_LOG_LEVEL", "WARNING")

        config = load_config()
        assert config.aggregation.outlier_threshold == 1.5
        assert config.mesh.request_timeout == 2.5
        assert config.fingerprint.min_duration == 3.0
        assert config.mesh.enabled_transports == [TransportProtocol.BLUETOOTH, TransportProtocol.WIFI_DIRECT]
        assert config.logging.level == "WARNING"

    def test_unknown_transport_rejected(self, monkeypatch):
        monkeypatch.setenv("HUMWITNESS_TRANSPORTS", "carrier_pigeon")
        with pytest.raises(ValueError):
            load_config()


class TestLogging:
    def test_configure_logging_sets_level(self, monkeypatch):
        calls = []
        monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
        configure_logging(LoggingConfig(level="debug"))
        assert calls[0]["level"] == logging.DEBUG
        assert "%(name)s" in calls[0]["format"]
