"""Tests for HumWitness end-to-end verification over the loopback mesh."""

from contextlib import AsyncExitStack

import pytest

from humwitness import HumWitness
from humwitness.config import HumWitnessConfig
from humwitness.errors import AudioTooShortError
from humwitness.types import (
    ConfidenceAggregation,
    ConfidenceLevel,
    RiskLevel,
    TamperAnalysis,
    VerificationStatus,
)


@pytest.fixture()
def make_node(mesh, crypto):
    """Factory for HumWitness nodes sharing the test mesh."""
    def _make():
        config = HumWitnessConfig(mesh=mesh.config())
        return HumWitness(config=config, crypto=crypto,
                          backends=mesh.medium.backends(config.mesh.enabled_transports))
    return _make


async def _start(stack, nodes):
    for node in nodes:
        await stack.enter_async_context(node)


class TestVerifyRecording:
    @pytest.mark.asyncio
    async def test_colocated_witnesses_verify(self, mesh, make_node, hum, media_item_id):
        requester = make_node()
        witnesses = [make_node() for _ in range(4)]
        for seed, witness in enumerate(witnesses, start=2):
            witness.register_recording(media_item_id, hum(noise_seed=seed), 44100)

        async with AsyncExitStack() as stack:
            await _start(stack, [requester, *witnesses])
            await mesh.wait_for_peers(requester.transport, 4)
            result = await requester.verify_recording(hum(noise_seed=1), 44100, media_item_id)

        assert result.status == VerificationStatus.VERIFIED
        assert result.media_item_id == media_item_id
        assert len(result.reports) == 4
        assert result.aggregation.aggregated_score >= 0.85
        assert result.aggregation.consensus_level == ConfidenceLevel.HIGH
        assert result.tamper_analysis.risk_level == RiskLevel.LOW
        assert result.warnings == []
        assert result.errors == []
        assert requester.store.load_fingerprint(media_item_id) is result.fingerprint

    @pytest.mark.asyncio
    async def test_single_witness_insufficient(self, mesh, make_node, hum, media_item_id):
        requester, witness = make_node(), make_node()
        witness.register_recording(media_item_id, hum(noise_seed=2), 44100)

        async with AsyncExitStack() as stack:
            await _start(stack, [requester, witness])
            await mesh.wait_for_peers(requester.transport, 1)
            result = await requester.verify_recording(hum(noise_seed=1), 44100, media_item_id)

        assert result.status == VerificationStatus.INSUFFICIENT_PEERS
        assert result.errors == ["Insufficient peer reports: 1 < 3"]
        assert result.aggregation is None
        assert len(result.reports) == 1

    @pytest.mark.asyncio
    async def test_no_peers(self, make_node, hum):
        async with make_node() as requester:
            result = await requester.verify_recording(hum(noise_seed=1), 44100)

        assert result.status == VerificationStatus.INSUFFICIENT_PEERS
        assert result.reports == []
        assert result.media_item_id == result.fingerprint.hash

    @pytest.mark.asyncio
    async def test_unwitnessed_recording_tampered(self, mesh, make_node, hum, media_item_id):
        requester = make_node()
        witnesses = [make_node() for _ in range(3)]
        for seed, witness in enumerate(witnesses, start=2):
            witness.register_recording("urn:uuid:some-other-event", hum(noise_seed=seed), 44100)

        async with AsyncExitStack() as stack:
            await _start(stack, [requester, *witnesses])
            await mesh.wait_for_peers(requester.transport, 3)
            result = await requester.verify_recording(hum(noise_seed=1), 44100, media_item_id)

        assert result.status == VerificationStatus.TAMPERED
        assert result.aggregation.aggregated_score == 0.0
        assert result.tamper_analysis.tampering_likely
        assert "Very low confidence score" in result.warnings
        assert "Low peer consensus" in result.warnings

    @pytest.mark.asyncio
    async def test_verify_wav(self, mesh, make_node, hum, wav, media_item_id):
        requester = make_node()
        witnesses = [make_node() for _ in range(3)]
        for seed, witness in enumerate(witnesses, start=2):
            witness.register_recording(media_item_id, hum(noise_seed=seed), 44100)

        async with AsyncExitStack() as stack:
            await _start(stack, [requester, *witnesses])
            await mesh.wait_for_peers(requester.transport, 3)
            result = await requester.verify_wav(wav(hum(noise_seed=1)), media_item_id)

        assert result.status == VerificationStatus.VERIFIED
        assert result.fingerprint.mains_frequency == 60

    @pytest.mark.asyncio
    async def test_short_recording_raises(self, make_node, hum):
        node = make_node()
        with pytest.raises(AudioTooShortError):
            await node.verify_recording(hum(duration=2.0), 44100)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager_starts_and_stops(self, make_node):
        node = make_node()
        async with node:
            assert node.transport.active_discovery_protocols
        assert node.transport.active_discovery_protocols == []

    def test_peer_id_is_ephemeral(self, make_node):
        assert make_node().peer_id != make_node().peer_id

    def test_register_recording(self, make_node, hum, media_item_id):
        node = make_node()
        fingerprint = node.register_recording(media_item_id, hum(noise_seed=1), 44100)
        assert node.store.load_fingerprint(media_item_id) is fingerprint


class TestDetermineStatus:
    def _aggregation(self, consensus):
        return ConfidenceAggregation(
            aggregated_score=0.8,
            report_count=3,
            outlier_count=0,
            standard_deviation=0.1,
            consensus_level=consensus,
        )

    def test_low_risk_high_consensus_verified(self):
        status = HumWitness._determine_status(
            self._aggregation(ConfidenceLevel.HIGH), TamperAnalysis(risk_level=RiskLevel.LOW)
        )
        assert status == VerificationStatus.VERIFIED

    def test_medium_consensus_unverified(self):
        status = HumWitness._determine_status(
            self._aggregation(ConfidenceLevel.MEDIUM), TamperAnalysis(risk_level=RiskLevel.LOW)
        )
        assert status == VerificationStatus.UNVERIFIED

    def test_medium_risk_unverified(self):
        status = HumWitness._determine_status(
            self._aggregation(ConfidenceLevel.HIGH),
            TamperAnalysis(risk_level=RiskLevel.MEDIUM, indicators=["x"]),
        )
        assert status == VerificationStatus.UNVERIFIED

    def test_tampering_wins(self):
        status = HumWitness._determine_status(
            self._aggregation(ConfidenceLevel.HIGH),
            TamperAnalysis(risk_level=RiskLevel.MEDIUM, indicators=["x", "y"], tampering_likely=True),
        )
        assert status == VerificationStatus.TAMPERED
