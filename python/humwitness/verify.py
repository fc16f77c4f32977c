"""Main humwitness implementation.

Peer-verified recording authenticity: a device fingerprints the mains hum
in its recording, asks nearby peers to compare it with what they recorded,
and aggregates their signed reports into one confidence score.
"""
import logging
from typing import Iterable, Optional

from .audio import FingerprintExtractor
from .confidence import ConfidenceAggregator, TamperAnalyzer
from .config import HumWitnessConfig, load_config
from .coordinator import ComparisonCoordinator
from .crypto import CryptoProvider, Ed25519Crypto
from .errors import InsufficientReportsError
from .storage import MemoryStore, PersistenceProvider
from .transport import DiscoveryBackend, MeshTransport
from .types import (
    ConfidenceAggregation,
    ConfidenceLevel,
    Fingerprint,
    RiskLevel,
    TamperAnalysis,
    VerificationStatus,
    WitnessResult,
)

logger = logging.getLogger(__name__)


class HumWitness:
    """Main class for peer verification of recordings."""

    def __init__(
        self,
        config: Optional[HumWitnessConfig] = None,
        crypto: Optional[CryptoProvider] = None,
        backends: Iterable[DiscoveryBackend] = (),
        store: Optional[PersistenceProvider] = None,
        transport: Optional[MeshTransport] = None,
    ):
        """Initialize HumWitness instance.

        Args:
            config: Configuration (defaults to built-in values)
            crypto: Crypto capability (defaults to Ed25519/X25519)
            backends: Discovery backends, one per transport protocol
            store: Persistence capability (defaults to in-memory)
            transport: Pre-built transport; ``backends`` is ignored if given
        """
        self.config = config or HumWitnessConfig()
        self.crypto = crypto or Ed25519Crypto()
        self.store = store or MemoryStore()
        self.extractor = FingerprintExtractor(self.config.fingerprint)
        self.transport = transport or MeshTransport(self.crypto, backends, self.config.mesh)
        self.coordinator = ComparisonCoordinator(
            self.transport,
            store=self.store,
            request_timeout=self.config.mesh.request_timeout,
        )
        self.aggregator = ConfidenceAggregator(self.crypto, self.config.aggregation)
        self.analyzer = TamperAnalyzer()

    @classmethod
    def from_config(cls, config_path: Optional[str] = None, **kwargs) -> "HumWitness":
        return cls(config=load_config(config_path), **kwargs)

    @property
    def peer_id(self) -> str:
        return self.transport.peer_id

    async def start(self) -> None:
        await self.transport.start_discovery()

    async def stop(self) -> None:
        await self.transport.stop_discovery()

    async def __aenter__(self) -> "HumWitness":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def register_recording(self, media_item_id: str, samples,
                           sample_rate: Optional[int] = None) -> Fingerprint:
        """Fingerprint a local recording so this device can answer peers about it."""
        fingerprint = self.extractor.extract(samples, sample_rate)
        self.store.save_fingerprint(media_item_id, fingerprint)
        return fingerprint

    async def verify_recording(
        self,
        samples,
        sample_rate: Optional[int] = None,
        media_item_id: Optional[str] = None,
    ) -> WitnessResult:
        """Fingerprint a recording and have nearby peers vouch for it.

        Args:
            samples: Mono audio samples
            sample_rate: Sample rate in Hz
            media_item_id: Shared id of the recorded event (defaults to the
                fingerprint hash)

        Returns:
            WitnessResult with status and details

        Raises:
            AudioTooShortError: Recording too short to fingerprint
        """
        fingerprint = self.extractor.extract(samples, sample_rate)
        media_item_id = media_item_id or fingerprint.hash
        self.store.save_fingerprint(media_item_id, fingerprint)
        return await self.verify_fingerprint(fingerprint, media_item_id)

    async def verify_wav(self, audio_bytes: bytes,
                         media_item_id: Optional[str] = None) -> WitnessResult:
        fingerprint = self.extractor.extract_wav(audio_bytes)
        media_item_id = media_item_id or fingerprint.hash
        self.store.save_fingerprint(media_item_id, fingerprint)
        return await self.verify_fingerprint(fingerprint, media_item_id)

    async def verify_fingerprint(self, fingerprint: Fingerprint,
                                 media_item_id: str) -> WitnessResult:
        """Collect peer reports for an existing fingerprint and judge them."""
        reports = await self.coordinator.request_comparisons(fingerprint, media_item_id)

        try:
            aggregation = self.aggregator.aggregate(reports)
        except InsufficientReportsError as e:
            logger.warning(f"Verification of {media_item_id} incomplete: {e}")
            return WitnessResult(
                status=VerificationStatus.INSUFFICIENT_PEERS,
                media_item_id=media_item_id,
                fingerprint=fingerprint,
                reports=reports,
                errors=[str(e)],
            )

        if not aggregation.peer_scores:
            return WitnessResult(
                status=VerificationStatus.INSUFFICIENT_PEERS,
                media_item_id=media_item_id,
                fingerprint=fingerprint,
                reports=reports,
                aggregation=aggregation,
                errors=["No peer reports with valid signatures"],
            )

        analysis = self.analyzer.analyze_tampering(aggregation)
        warnings = list(analysis.indicators)
        dropped = len(reports) - len(aggregation.peer_scores)
        if dropped:
            warnings.append(f"{dropped} report(s) dropped for invalid signatures")

        status = self._determine_status(aggregation, analysis)
        logger.info(
            f"Verification of {media_item_id}: {status.value} "
            f"(score {aggregation.aggregated_score:.3f}, risk {analysis.risk_level.value})"
        )
        return WitnessResult(
            status=status,
            media_item_id=media_item_id,
            fingerprint=fingerprint,
            reports=reports,
            aggregation=aggregation,
            tamper_analysis=analysis,
            warnings=warnings,
        )

    @staticmethod
    def _determine_status(aggregation: ConfidenceAggregation,
                          analysis: TamperAnalysis) -> VerificationStatus:
        if analysis.tampering_likely:
            return VerificationStatus.TAMPERED
        if analysis.risk_level == RiskLevel.LOW and aggregation.consensus_level == ConfidenceLevel.HIGH:
            return VerificationStatus.VERIFIED
        return VerificationStatus.UNVERIFIED
