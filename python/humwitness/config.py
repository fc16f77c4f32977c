"""
humwitness Configuration Management

Loads configuration from YAML or environment variables.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .types import TransportProtocol


@dataclass
class FingerprintConfig:
    """Mains-hum extraction parameters."""
    sample_rate: int = 44100
    fft_window_size: int = 4096
    hop_size: int = 2048
    low_cutoff: float = 45.0     # Hz
    high_cutoff: float = 65.0    # Hz
    target_frequency: int = 60   # Hz (50 in most of Europe/Asia)
    frequency_tolerance: float = 2.0  # Hz
    min_duration: float = 5.0    # seconds
    filter_order: int = 4
    detection_seconds: float = 4.0  # audio used for mains detection


@dataclass
class MeshConfig:
    """Mesh transport configuration."""
    service_name: str = "mesh-media-sync"
    peer_name: str = "Anonymous Peer"
    enabled_transports: List[TransportProtocol] = field(
        default_factory=lambda: [TransportProtocol.WEBRTC, TransportProtocol.BLUETOOTH]
    )
    auto_accept_connections: bool = True
    max_connections: int = 10
    connection_timeout: float = 30.0  # handshake deadline, seconds
    request_timeout: float = 30.0     # per-peer comparison deadline, seconds
    discovery_interval: float = 1.0
    peer_stale_after: float = 300.0


@dataclass
class AggregationConfig:
    """Confidence aggregation defaults."""
    outlier_threshold: float = 2.0
    min_peers: int = 3
    verify_signatures: bool = True
    min_outlier_population: int = 3
    deviation_floor: float = 0.05


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class HumWitnessConfig:
    """Main configuration."""
    fingerprint: FingerprintConfig = field(default_factory=FingerprintConfig)
    mesh: MeshConfig = field(default_factory=MeshConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Install a root handler; only entry points should call this."""
    config = config or LoggingConfig()
    logging.basicConfig(
        level=getattr(logging, config.level.upper(), logging.INFO),
        format=config.format,
    )


def _parse_transports(value) -> List[TransportProtocol]:
    if isinstance(value, str):
        value = [v.strip() for v in value.split(",") if v.strip()]
    return [TransportProtocol(v) for v in value]


def load_config(config_path: Optional[str] = None) -> HumWitnessConfig:
    """
    Load configuration from file or environment.

    Priority:
        1. Environment variables (HUMWITNESS_*)
        2. Config file (custom path, $HUMWITNESS_CONFIG, or
           ~/.config/humwitness/config.yaml)
        3. Default values

    Args:
        config_path: Optional path to config file

    Returns:
        HumWitnessConfig instance
    """
    config = HumWitnessConfig()

    config_paths = [
        config_path,
        os.environ.get("HUMWITNESS_CONFIG"),
        str(Path.home() / ".config/humwitness/config.yaml"),
    ]

    for path in config_paths:
        if path and os.path.exists(path):
            with open(path, "r") as f:
                data = yaml.safe_load(f)
                if data:
                    _apply_config_data(config, data)
            break

    _apply_env_overrides(config)
    return config


def _apply_section(target, data: Dict) -> None:
    for key, value in data.items():
        if hasattr(target, key):
            setattr(target, key, value)


def _apply_config_data(config: HumWitnessConfig, data: Dict) -> None:
    """Apply configuration data from dict to config object."""
    if "fingerprint" in data:
        _apply_section(config.fingerprint, data["fingerprint"])
    if "mesh" in data:
        mesh = dict(data["mesh"])
        if "enabled_transports" in mesh:
            mesh["enabled_transports"] = _parse_transports(mesh["enabled_transports"])
        _apply_section(config.mesh, mesh)
    if "aggregation" in data:
        _apply_section(config.aggregation, data["aggregation"])
    if "logging" in data:
        _apply_section(config.logging, data["logging"])


def _apply_env_overrides(config: HumWitnessConfig) -> None:
    """Apply environment variable overrides."""
    if os.environ.get("HUMWITNESS_MIN_PEERS"):
        config.aggregation.min_peers = int(os.environ["HUMWITNESS_MIN_PEERS"])
    if os.environ.get("HUMWITNESS_OUTLIER_THRESHOLD"):
        config.aggregation.outlier_threshold = float(os.environ["HUMWITNESS_OUTLIER_THRESHOLD"])
    if os.environ.get("HUMWITNESS_REQUEST_TIMEOUT"):
        config.mesh.request_timeout = float(os.environ["HUMWITNESS_REQUEST_TIMEOUT"])
    if os.environ.get("HUMWITNESS_MIN_DURATION"):
        config.fingerprint.min_duration = float(os.environ["HUMWITNESS_MIN_DURATION"])
    if os.environ.get("HUMWITNESS_TRANSPORTS"):
        config.mesh.enabled_transports = _parse_transports(os.environ["HUMWITNESS_TRANSPORTS"])
    if os.environ.get("HUMWITNESS_LOG_LEVEL"):
        config.logging.level = os.environ["HUMWITNESS_LOG_LEVEL"]
