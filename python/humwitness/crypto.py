"""Cryptographic utilities for humwitness.

The core only relies on the narrow ``CryptoProvider`` contract
(sign / verify / hash / key exchange). ``Ed25519Crypto`` is the default
implementation: Ed25519 signatures, X25519 key agreement and HKDF-SHA256
session key derivation.
"""
import base64
import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.kdf.hkdf import HKDF


class CryptoUtils:
    """Utility class for hashing and canonical encoding."""

    @staticmethod
    def hash_content(content: bytes) -> str:
        """Generate SHA3-256 hash of content."""
        return hashlib.sha3_256(content).hexdigest()

    @staticmethod
    def hash_string(data: str) -> str:
        """Generate SHA3-256 hash of string."""
        return hashlib.sha3_256(data.encode()).hexdigest()

    @staticmethod
    def generate_uuid() -> str:
        """Generate UUID for report and media item IDs."""
        return f"urn:uuid:{uuid.uuid4()}"

    @staticmethod
    def canonical_json(data: dict) -> str:
        """Create canonical JSON representation for hashing and signing."""
        return json.dumps(data, sort_keys=True, separators=(',', ':'))

    @staticmethod
    def b64encode(data: bytes) -> str:
        return base64.b64encode(data).decode()

    @staticmethod
    def b64decode(data: str) -> bytes:
        return base64.b64decode(data.encode(), validate=True)

    @staticmethod
    def utc_now() -> str:
        """Current time as an ISO 8601 UTC timestamp."""
        return datetime.now(timezone.utc).isoformat()


class CryptoProvider:
    """Capability interface the core calls for all cryptography.

    Keys are raw bytes. Implementations must be deterministic in
    ``verify`` and ``hash`` and must never raise from ``verify``.
    """

    def sign(self, message: bytes, private_key: bytes) -> bytes:
        raise NotImplementedError

    def verify(self, message: bytes, signature: bytes, public_key: bytes) -> bool:
        raise NotImplementedError

    def hash(self, data: bytes) -> str:
        raise NotImplementedError

    def generate_signing_key_pair(self) -> Tuple[bytes, bytes]:
        """Return ``(public_key, private_key)`` for signing."""
        raise NotImplementedError

    def generate_exchange_key_pair(self) -> Tuple[bytes, bytes]:
        """Return ``(public_key, private_key)`` for key agreement."""
        raise NotImplementedError

    def derive_shared_key(self, private_key: bytes, peer_public_key: bytes,
                          info: bytes = b"") -> bytes:
        """Derive a 32-byte symmetric key from a key agreement."""
        raise NotImplementedError


class Ed25519Crypto(CryptoProvider):
    """Ed25519 / X25519 implementation backed by ``cryptography``."""

    SESSION_KEY_SIZE = 32

    def sign(self, message: bytes, private_key: bytes) -> bytes:
        key = Ed25519PrivateKey.from_private_bytes(private_key)
        return key.sign(message)

    def verify(self, message: bytes, signature: bytes, public_key: bytes) -> bool:
        """Verify signature with public key.

        Returns:
            True if signature is valid, False otherwise (including
            malformed keys or signatures).
        """
        try:
            key = Ed25519PublicKey.from_public_bytes(public_key)
            key.verify(signature, message)
            return True
        except (InvalidSignature, ValueError, TypeError):
            return False

    def hash(self, data: bytes) -> str:
        return CryptoUtils.hash_content(data)

    def generate_signing_key_pair(self) -> Tuple[bytes, bytes]:
        private_key = Ed25519PrivateKey.generate()
        return (
            private_key.public_key().public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            ),
            private_key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption(),
            ),
        )

    def generate_exchange_key_pair(self) -> Tuple[bytes, bytes]:
        private_key = X25519PrivateKey.generate()
        return (
            private_key.public_key().public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            ),
            private_key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption(),
            ),
        )

    def derive_shared_key(self, private_key: bytes, peer_public_key: bytes,
                          info: bytes = b"") -> bytes:
        shared = X25519PrivateKey.from_private_bytes(private_key).exchange(
            X25519PublicKey.from_public_bytes(peer_public_key)
        )
        return HKDF(
            algorithm=hashes.SHA256(),
            length=self.SESSION_KEY_SIZE,
            salt=None,
            info=b"humwitness-session" + info,
        ).derive(shared)

    @staticmethod
    def private_key_to_pem(private_key: bytes) -> str:
        """Serialize a raw Ed25519 private key as PKCS8 PEM."""
        return Ed25519PrivateKey.from_private_bytes(private_key).private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()

    @staticmethod
    def public_key_to_pem(public_key: bytes) -> str:
        """Serialize a raw Ed25519 public key as SubjectPublicKeyInfo PEM."""
        return Ed25519PublicKey.from_public_bytes(public_key).public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()

    @staticmethod
    def load_private_key_pem(private_key_pem: str) -> bytes:
        """Load a PEM Ed25519 private key and return its raw bytes."""
        key = serialization.load_pem_private_key(
            private_key_pem.encode(),
            password=None
        )
        if not isinstance(key, Ed25519PrivateKey):
            raise ValueError("Private key is not an Ed25519 key")
        return key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )


@dataclass(frozen=True)
class EphemeralIdentity:
    """Session-scoped signing identity of one device.

    The peer id is derived from the ephemeral public key, so it is not
    linkable to any stable device identity once the session ends.
    """
    peer_id: str
    public_key: bytes
    private_key: bytes
    created_at: str

    @classmethod
    def generate(cls, crypto: CryptoProvider) -> "EphemeralIdentity":
        public_key, private_key = crypto.generate_signing_key_pair()
        return cls(
            peer_id=f"peer-{crypto.hash(public_key)[:16]}",
            public_key=public_key,
            private_key=private_key,
            created_at=CryptoUtils.utc_now(),
        )

    def sign(self, crypto: CryptoProvider, message: bytes) -> bytes:
        return crypto.sign(message, self.private_key)
