"""Wire envelope, payload codecs and signed report construction.

Envelope on the wire (UTF-8 canonical JSON, bytes as base64)::

    {"payload": ..., "senderId": ..., "signature": ..., "timestamp": ..., "type": ...}

The signature covers the canonical JSON of every field except
``signature`` itself.
"""
import binascii
import json
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from .crypto import CryptoProvider, CryptoUtils, EphemeralIdentity
from .errors import InvalidSignatureError, MalformedMessageError
from .types import (
    Fingerprint,
    MessageType,
    PeerReport,
    ProximityEstimate,
    ProximityLevel,
)


@dataclass(frozen=True)
class PeerMessage:
    """Signed message envelope exchanged between peers."""
    type: MessageType
    payload: bytes
    sender_id: str
    signature: bytes
    timestamp: str

    @classmethod
    def create(cls, msg_type: MessageType, body: Dict[str, Any],
               identity: EphemeralIdentity, crypto: CryptoProvider) -> "PeerMessage":
        """Build and sign an envelope around a JSON body."""
        unsigned = cls(
            type=msg_type,
            payload=CryptoUtils.canonical_json(body).encode(),
            sender_id=identity.peer_id,
            signature=b"",
            timestamp=CryptoUtils.utc_now(),
        )
        return replace(unsigned, signature=identity.sign(crypto, unsigned.signing_bytes()))

    def signing_bytes(self) -> bytes:
        return CryptoUtils.canonical_json({
            "type": self.type.value,
            "payload": CryptoUtils.b64encode(self.payload),
            "senderId": self.sender_id,
            "timestamp": self.timestamp,
        }).encode()

    def verify(self, crypto: CryptoProvider, public_key: bytes) -> bool:
        if not self.signature:
            return False
        return crypto.verify(self.signing_bytes(), self.signature, public_key)

    def body(self) -> Dict[str, Any]:
        """Decode the JSON payload."""
        try:
            data = json.loads(self.payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedMessageError(f"Undecodable payload from {self.sender_id}: {e}")
        if not isinstance(data, dict):
            raise MalformedMessageError(f"Payload from {self.sender_id} is not an object")
        return data

    def to_bytes(self) -> bytes:
        return CryptoUtils.canonical_json({
            "type": self.type.value,
            "payload": CryptoUtils.b64encode(self.payload),
            "senderId": self.sender_id,
            "signature": CryptoUtils.b64encode(self.signature),
            "timestamp": self.timestamp,
        }).encode()

    @classmethod
    def from_bytes(cls, data: bytes) -> "PeerMessage":
        try:
            raw = json.loads(data.decode())
            return cls(
                type=MessageType(raw["type"]),
                payload=CryptoUtils.b64decode(raw["payload"]),
                sender_id=str(raw["senderId"]),
                signature=CryptoUtils.b64decode(raw.get("signature", "")),
                timestamp=str(raw["timestamp"]),
            )
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError,
                ValueError, binascii.Error) as e:
            raise MalformedMessageError(f"Malformed envelope: {e}")


@dataclass
class FingerprintRequest:
    """Comparison request sent to a peer."""
    request_id: str
    media_item_id: str
    fingerprint_hash: str
    ephemeral_public_key: bytes
    fingerprint: Optional[Fingerprint] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "mediaItemId": self.media_item_id,
            "fingerprintHash": self.fingerprint_hash,
            "ephemeralPublicKey": CryptoUtils.b64encode(self.ephemeral_public_key),
            "fingerprint": self.fingerprint.to_dict() if self.fingerprint else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FingerprintRequest":
        try:
            fingerprint = data.get("fingerprint")
            return cls(
                request_id=data["requestId"],
                media_item_id=data["mediaItemId"],
                fingerprint_hash=data["fingerprintHash"],
                ephemeral_public_key=CryptoUtils.b64decode(data["ephemeralPublicKey"]),
                fingerprint=Fingerprint.from_dict(fingerprint) if fingerprint else None,
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise MalformedMessageError(f"Malformed fingerprint request: {e}")


@dataclass
class FingerprintResponse:
    """A peer's answer to a comparison request."""
    request_id: str
    media_item_id: str
    confidence_score: float
    signed_report: PeerReport

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "mediaItemId": self.media_item_id,
            "confidenceScore": self.confidence_score,
            "signedReport": self.signed_report.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FingerprintResponse":
        try:
            return cls(
                request_id=data["requestId"],
                media_item_id=data["mediaItemId"],
                confidence_score=float(data["confidenceScore"]),
                signed_report=PeerReport.from_dict(data["signedReport"]),
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise MalformedMessageError(f"Malformed fingerprint response: {e}")


PROXIMITY_LEVELS = {
    ProximityEstimate.SAME_LOCATION: ProximityLevel.NEAR,
    ProximityEstimate.NEARBY: ProximityLevel.MEDIUM,
}


def proximity_level_for(estimate: ProximityEstimate) -> ProximityLevel:
    return PROXIMITY_LEVELS.get(estimate, ProximityLevel.FAR)


def build_signed_report(
    identity: EphemeralIdentity,
    crypto: CryptoProvider,
    media_item_id: str,
    confidence_score: float,
    proximity_level: ProximityLevel = ProximityLevel.FAR,
    peer_address: str = "unknown",
) -> PeerReport:
    """Create a ``PeerReport`` signed with the responder's ephemeral key.

    Args:
        identity: Responder's ephemeral identity
        crypto: Crypto capability used for signing
        media_item_id: Media item the score refers to
        confidence_score: Similarity in [0, 1]
        proximity_level: Claimed proximity to the requester
        peer_address: Anonymised responder address

    Returns:
        Signed PeerReport
    """
    score = min(1.0, max(0.0, float(confidence_score)))
    unsigned = PeerReport(
        id=CryptoUtils.generate_uuid(),
        media_item_id=media_item_id,
        peer_ephemeral_id=identity.peer_id,
        confidence_score=score,
        signature=b"",
        ephemeral_pub_key=identity.public_key,
        timestamp=CryptoUtils.utc_now(),
        peer_address=peer_address,
        proximity_level=proximity_level,
    )
    return replace(unsigned, signature=identity.sign(crypto, unsigned.signing_payload()))


def verify_report_signature(report: PeerReport, crypto: CryptoProvider) -> bool:
    """Check a report's signature against its own ephemeral public key."""
    if not report.signature or not report.ephemeral_pub_key:
        return False
    return crypto.verify(report.signing_payload(), report.signature, report.ephemeral_pub_key)


def check_report_signature(report: PeerReport, crypto: CryptoProvider) -> None:
    """Like ``verify_report_signature`` but raises on failure.

    Raises:
        InvalidSignatureError: Signature missing or not valid for the
            report's ephemeral public key
    """
    if not verify_report_signature(report, crypto):
        raise InvalidSignatureError(report.peer_ephemeral_id, "report")
