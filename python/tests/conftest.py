"""Shared pytest fixtures for humwitness tests."""

import asyncio
import io
import wave

import numpy as np
import pytest

from humwitness import CryptoUtils, Ed25519Crypto, EphemeralIdentity, FingerprintExtractor
from humwitness.config import MeshConfig
from humwitness.messages import build_signed_report
from humwitness.transport import LoopbackMedium, MeshTransport
from humwitness.types import ProximityLevel, TransportProtocol

SAMPLE_RATE = 44100


# ---------------------------------------------------------------------------
# Synthetic mains hum
# ---------------------------------------------------------------------------


def hum_samples(
    modulation_seed: int = 7,
    duration: float = 8.0,
    start: float = 0.0,
    mains: float = 60.0,
    noise_seed=None,
    noise: float = 0.01,
    sr: int = SAMPLE_RATE,
) -> np.ndarray:
    """Mains hum whose amplitude follows a seeded random envelope.

    Recordings sharing ``modulation_seed`` hear the same grid, so their
    envelopes match on the absolute timeline; ``start`` shifts where the
    recording begins on that timeline (max 60 s).
    """
    step = 0.1
    knots = np.random.default_rng(modulation_seed).uniform(-1.0, 1.0, 601)
    t = start + np.arange(int(sr * duration)) / sr
    envelope = 1.0 + 0.3 * np.interp(t, np.arange(len(knots)) * step, knots)
    hum = 0.1 * envelope * np.sin(2 * np.pi * mains * t)
    rng = np.random.default_rng(noise_seed)
    return (hum + noise * rng.standard_normal(len(t))).astype(np.float32)


def make_wav(samples: np.ndarray, sr: int = SAMPLE_RATE) -> bytes:
    """Encode float mono samples to 16-bit PCM WAV."""
    pcm = (np.clip(samples, -1, 1) * 32767).astype(np.int16)
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sr)
        wf.writeframes(pcm.tobytes())
    return buf.getvalue()


@pytest.fixture()
def hum():
    """Factory for synthetic hum recordings (see ``hum_samples``)."""
    return hum_samples


@pytest.fixture()
def wav():
    """Factory turning samples into WAV bytes."""
    return make_wav


@pytest.fixture(scope="session")
def extractor():
    return FingerprintExtractor()


@pytest.fixture(scope="session")
def event_fingerprint(extractor):
    """Fingerprint of the shared recording used across comparison tests."""
    return extractor.extract(hum_samples(modulation_seed=7, noise_seed=1))


# ---------------------------------------------------------------------------
# Crypto fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def crypto():
    return Ed25519Crypto()


@pytest.fixture()
def identity(crypto):
    """Fresh ephemeral identity."""
    return EphemeralIdentity.generate(crypto)


@pytest.fixture()
def make_report(crypto):
    """Factory for signed reports, each from a fresh ephemeral peer."""
    def _make(score, media_item_id="urn:uuid:media-1", proximity=ProximityLevel.NEAR):
        peer = EphemeralIdentity.generate(crypto)
        return build_signed_report(peer, crypto, media_item_id, score, proximity_level=proximity)
    return _make


@pytest.fixture()
def media_item_id():
    return CryptoUtils.generate_uuid()


# ---------------------------------------------------------------------------
# Loopback mesh
# ---------------------------------------------------------------------------


class LoopbackMesh:
    """A set of transports sharing one in-process medium."""

    def __init__(self, crypto):
        self.crypto = crypto
        self.medium = LoopbackMedium()
        self.transports = []

    def config(self, **overrides) -> MeshConfig:
        config = MeshConfig(
            enabled_transports=[TransportProtocol.WEBRTC],
            discovery_interval=0.01,
            connection_timeout=1.0,
            request_timeout=1.0,
        )
        for key, value in overrides.items():
            setattr(config, key, value)
        return config

    def add(self, **overrides) -> MeshTransport:
        config = self.config(**overrides)
        transport = MeshTransport(
            self.crypto, self.medium.backends(config.enabled_transports), config
        )
        self.transports.append(transport)
        return transport

    async def start_all(self):
        for transport in self.transports:
            await transport.start_discovery()

    async def stop_all(self):
        for transport in self.transports:
            await transport.stop_discovery()

    @staticmethod
    async def wait_for_peers(transport, count, timeout=2.0):
        """Wait until ``transport`` sees at least ``count`` live peers."""
        async def _poll():
            while len(transport.get_live_peers()) < count:
                await asyncio.sleep(0.01)
        await asyncio.wait_for(_poll(), timeout)


@pytest.fixture()
def mesh(crypto):
    return LoopbackMesh(crypto)
