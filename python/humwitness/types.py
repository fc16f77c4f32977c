"""Type definitions for humwitness."""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Any, Optional

import numpy as np

from .crypto import CryptoUtils


def fingerprint_digest(fingerprint_or_vector) -> str:
    """SHA3-256 of a fingerprint vector as little-endian float32."""
    vector = getattr(fingerprint_or_vector, "vector", fingerprint_or_vector)
    return CryptoUtils.hash_content(np.asarray(vector, dtype="<f4").tobytes())


class ConfidenceLevel(Enum):
    """Coarse confidence / consensus bucket."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ProximityEstimate(Enum):
    """Geographic proximity inferred from a fingerprint comparison."""
    SAME_LOCATION = "same_location"
    NEARBY = "nearby"
    DISTANT = "distant"
    UNKNOWN = "unknown"


class ProximityLevel(Enum):
    """Proximity claimed in a peer report."""
    NEAR = "near"
    MEDIUM = "medium"
    FAR = "far"


class RiskLevel(Enum):
    """Tamper risk rating."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TransportProtocol(Enum):
    """Mesh transport protocols a peer can be reached over."""
    WIFI_DIRECT = "wifi_direct"
    WEBRTC = "webrtc"
    BLUETOOTH = "bluetooth"


class ConnectionState(Enum):
    """Per-peer connection state."""
    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class MessageType(Enum):
    """Wire envelope message types."""
    FINGERPRINT_REQUEST = "fingerprint_request"
    FINGERPRINT_RESPONSE = "fingerprint_response"
    KEY_EXCHANGE = "key_exchange"
    REPORT = "report"


class VerificationStatus(Enum):
    """Outcome of a full peer verification run."""
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    TAMPERED = "tampered"
    INSUFFICIENT_PEERS = "insufficient_peers"


@dataclass(frozen=True, eq=False)
class Fingerprint:
    """Mains-hum fingerprint of one recording.

    ``vector`` is the per-frame magnitude at the mains bin, min-max
    normalised to [0, 1]. Instances are immutable; the vector is stored
    read-only.
    """
    vector: np.ndarray
    hash: str
    mains_frequency: int
    extraction_quality: float
    duration: float
    sample_rate: int
    extracted_at: str
    hop_size: int = 2048

    def __post_init__(self):
        vector = np.array(self.vector, dtype=np.float32)
        if vector.ndim != 1 or len(vector) == 0:
            raise ValueError("Fingerprint vector must be a non-empty 1-D sequence")
        vector.flags.writeable = False
        object.__setattr__(self, "vector", vector)

    @property
    def frame_duration(self) -> float:
        """Seconds between consecutive vector entries."""
        return self.hop_size / self.sample_rate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vector": [float(v) for v in self.vector],
            "hash": self.hash,
            "mainsFrequency": self.mains_frequency,
            "extractionQuality": self.extraction_quality,
            "duration": self.duration,
            "sampleRate": self.sample_rate,
            "extractedAt": self.extracted_at,
            "hopSize": self.hop_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Fingerprint":
        return cls(
            vector=np.asarray(data["vector"], dtype=np.float32),
            hash=data["hash"],
            mains_frequency=int(data["mainsFrequency"]),
            extraction_quality=float(data["extractionQuality"]),
            duration=float(data["duration"]),
            sample_rate=int(data["sampleRate"]),
            extracted_at=data["extractedAt"],
            hop_size=int(data.get("hopSize", 2048)),
        )


@dataclass
class FingerprintComparison:
    """Result of comparing two fingerprints."""
    similarity: float
    correlation: float
    confidence: ConfidenceLevel
    time_offset: float
    proximity_estimate: ProximityEstimate
    frame_offset: int = 0


@dataclass(frozen=True)
class PeerCapabilities:
    """Features a peer advertises."""
    fingerprint_comparison: bool = True
    relay_support: bool = False
    storage_provider: bool = False


@dataclass(frozen=True)
class MeshPeer:
    """A discovered mesh peer.

    ``peer_id`` is ephemeral and session-scoped. Only ``last_seen`` and
    ``signal_strength`` change over a peer's lifetime (via replacement).
    """
    peer_id: str
    public_key: bytes
    address: str
    transport: TransportProtocol
    signal_strength: float = 0.0
    capabilities: PeerCapabilities = field(default_factory=PeerCapabilities)
    last_seen: str = ""
    name: str = ""  # human-readable label, not an identity


@dataclass
class PeerDiscoveryEvent:
    """Emitted on a transport's discovery channel for each new peer."""
    peer: MeshPeer
    transport: TransportProtocol
    timestamp: str


@dataclass(frozen=True)
class PeerReport:
    """A peer's signed similarity judgement for one media item."""
    id: str
    media_item_id: str
    peer_ephemeral_id: str
    confidence_score: float
    signature: bytes
    ephemeral_pub_key: bytes
    timestamp: str
    peer_address: str
    proximity_level: ProximityLevel

    def signing_payload(self) -> bytes:
        """Canonical bytes covered by ``signature``."""
        return CryptoUtils.canonical_json({
            "id": self.id,
            "mediaItemId": self.media_item_id,
            "peerEphemeralId": self.peer_ephemeral_id,
            "confidenceScore": self.confidence_score,
            "timestamp": self.timestamp,
        }).encode()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mediaItemId": self.media_item_id,
            "peerEphemeralId": self.peer_ephemeral_id,
            "confidenceScore": self.confidence_score,
            "signature": CryptoUtils.b64encode(self.signature),
            "ephemeralPubKey": CryptoUtils.b64encode(self.ephemeral_pub_key),
            "timestamp": self.timestamp,
            "peerAddress": self.peer_address,
            "proximityLevel": self.proximity_level.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PeerReport":
        return cls(
            id=data["id"],
            media_item_id=data["mediaItemId"],
            peer_ephemeral_id=data["peerEphemeralId"],
            confidence_score=float(data["confidenceScore"]),
            signature=CryptoUtils.b64decode(data["signature"]),
            ephemeral_pub_key=CryptoUtils.b64decode(data["ephemeralPubKey"]),
            timestamp=data["timestamp"],
            peer_address=data.get("peerAddress", "unknown"),
            proximity_level=ProximityLevel(data.get("proximityLevel", "far")),
        )


@dataclass
class PeerScore:
    """Audit entry: one surviving report and whether it counted."""
    peer_id: str
    score: float
    included: bool


@dataclass
class ConfidenceAggregation:
    """Aggregated view of a set of peer reports."""
    aggregated_score: float
    report_count: int
    outlier_count: int
    standard_deviation: float
    consensus_level: ConfidenceLevel
    peer_scores: List[PeerScore] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "aggregatedScore": self.aggregated_score,
            "reportCount": self.report_count,
            "outlierCount": self.outlier_count,
            "standardDeviation": self.standard_deviation,
            "consensusLevel": self.consensus_level.value,
            "peerScores": [
                {"peerId": ps.peer_id, "score": ps.score, "included": ps.included}
                for ps in self.peer_scores
            ],
        }


@dataclass
class TamperAnalysis:
    """Coarse tamper risk derived from an aggregation."""
    risk_level: RiskLevel
    indicators: List[str] = field(default_factory=list)
    tampering_likely: bool = False


@dataclass
class WitnessResult:
    """Complete result of a peer verification run."""
    status: VerificationStatus
    media_item_id: str
    fingerprint: Optional[Fingerprint] = None
    reports: List[PeerReport] = field(default_factory=list)
    aggregation: Optional[ConfidenceAggregation] = None
    tamper_analysis: Optional[TamperAnalysis] = None
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
