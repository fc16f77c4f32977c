"""
humwitness - Python Implementation

Mains-hum fingerprints, peer comparison over a local mesh and robust
aggregation of signed peer reports into a recording authenticity score.
"""

from .verify import HumWitness
from .types import (
    ConfidenceAggregation,
    ConfidenceLevel,
    Fingerprint,
    FingerprintComparison,
    MeshPeer,
    PeerReport,
    ProximityEstimate,
    ProximityLevel,
    RiskLevel,
    TamperAnalysis,
    TransportProtocol,
    VerificationStatus,
    WitnessResult,
)
from .errors import (
    AudioTooShortError,
    HumWitnessError,
    InsufficientReportsError,
    InvalidSignatureError,
    MalformedMessageError,
    PeerConnectionError,
    PeerTimeoutError,
)
from .crypto import CryptoProvider, CryptoUtils, Ed25519Crypto, EphemeralIdentity
from .config import HumWitnessConfig, load_config
from .audio import FingerprintExtractor
from .compare import FingerprintComparator
from .confidence import ConfidenceAggregator, PeerReportValidator, TamperAnalyzer
from .coordinator import ComparisonCoordinator
from .registry import PeerRegistry
from .storage import MemoryStore, PersistenceProvider
from .transport import LoopbackMedium, MeshTransport

__version__ = "0.1.0"
__all__ = [
    "HumWitness",
    "ConfidenceAggregation",
    "ConfidenceLevel",
    "Fingerprint",
    "FingerprintComparison",
    "MeshPeer",
    "PeerReport",
    "ProximityEstimate",
    "ProximityLevel",
    "RiskLevel",
    "TamperAnalysis",
    "TransportProtocol",
    "VerificationStatus",
    "WitnessResult",
    "AudioTooShortError",
    "HumWitnessError",
    "InsufficientReportsError",
    "InvalidSignatureError",
    "MalformedMessageError",
    "PeerConnectionError",
    "PeerTimeoutError",
    "CryptoProvider",
    "CryptoUtils",
    "Ed25519Crypto",
    "EphemeralIdentity",
    "HumWitnessConfig",
    "load_config",
    "FingerprintExtractor",
    "FingerprintComparator",
    "ConfidenceAggregator",
    "PeerReportValidator",
    "TamperAnalyzer",
    "ComparisonCoordinator",
    "PeerRegistry",
    "MemoryStore",
    "PersistenceProvider",
    "LoopbackMedium",
    "MeshTransport",
]
