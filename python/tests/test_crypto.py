"""Tests for CryptoUtils, Ed25519Crypto and EphemeralIdentity."""

import pytest

from humwitness.crypto import CryptoProvider, CryptoUtils, Ed25519Crypto, EphemeralIdentity


class TestHashing:
    def test_hash_content_deterministic(self):
        h1 = CryptoUtils.hash_content(b"hello")
        h2 = CryptoUtils.hash_content(b"hello")
        assert h1 == h2

    def test_hash_content_different_inputs(self):
        assert CryptoUtils.hash_content(b"hello") != CryptoUtils.hash_content(b"world")

    def test_hash_is_sha3_256(self):
        assert CryptoUtils.hash_content(b"") == (
            "a7ffc6f8bf1ed76651c14756a061d662f580ff4de43b49fa82d80a4b80f8434a"
        )

    def test_hash_string(self):
        assert CryptoUtils.hash_string("test") == CryptoUtils.hash_content(b"test")

    def test_provider_hash(self, crypto):
        assert crypto.hash(b"data") == CryptoUtils.hash_content(b"data")


class TestCanonicalJson:
    def test_sorted_keys(self):
        assert CryptoUtils.canonical_json({"b": 1, "a": 2}) == '{"a":2,"b":1}'

    def test_no_spaces(self):
        assert " " not in CryptoUtils.canonical_json({"key": [1, 2, 3]})


class TestEncoding:
    def test_b64_roundtrip(self):
        data = bytes(range(256))
        assert CryptoUtils.b64decode(CryptoUtils.b64encode(data)) == data

    def test_b64_rejects_garbage(self):
        with pytest.raises(ValueError):
            CryptoUtils.b64decode("not base64!!")

    def test_uuid_format(self):
        assert CryptoUtils.generate_uuid().startswith("urn:uuid:")
        assert CryptoUtils.generate_uuid() != CryptoUtils.generate_uuid()


class TestSigning:
    def test_sign_and_verify(self, crypto):
        public_key, private_key = crypto.generate_signing_key_pair()
        signature = crypto.sign(b"message", private_key)
        assert len(signature) == 64
        assert crypto.verify(b"message", signature, public_key)

    def test_verify_wrong_message(self, crypto):
        public_key, private_key = crypto.generate_signing_key_pair()
        signature = crypto.sign(b"message", private_key)
        assert not crypto.verify(b"other", signature, public_key)

    def test_verify_wrong_key(self, crypto):
        _, private_key = crypto.generate_signing_key_pair()
        other_public, _ = crypto.generate_signing_key_pair()
        signature = crypto.sign(b"message", private_key)
        assert not crypto.verify(b"message", signature, other_public)

    def test_verify_malformed_inputs_return_false(self, crypto):
        public_key, _ = crypto.generate_signing_key_pair()
        assert not crypto.verify(b"message", b"short", public_key)
        assert not crypto.verify(b"message", b"\x00" * 64, b"bad-key")

    def test_pem_roundtrip(self, crypto):
        public_key, private_key = crypto.generate_signing_key_pair()
        private_pem = Ed25519Crypto.private_key_to_pem(private_key)
        public_pem = Ed25519Crypto.public_key_to_pem(public_key)
        assert "BEGIN PRIVATE KEY" in private_pem
        assert "BEGIN PUBLIC KEY" in public_pem
        assert Ed25519Crypto.load_private_key_pem(private_pem) == private_key


class TestKeyExchange:
    def test_both_sides_derive_same_key(self, crypto):
        a_pub, a_priv = crypto.generate_exchange_key_pair()
        b_pub, b_priv = crypto.generate_exchange_key_pair()
        k1 = crypto.derive_shared_key(a_priv, b_pub, b"session")
        k2 = crypto.derive_shared_key(b_priv, a_pub, b"session")
        assert k1 == k2
        assert len(k1) == 32

    def test_info_separates_keys(self, crypto):
        a_pub, a_priv = crypto.generate_exchange_key_pair()
        b_pub, _ = crypto.generate_exchange_key_pair()
        assert crypto.derive_shared_key(a_priv, b_pub, b"one") != crypto.derive_shared_key(
            a_priv, b_pub, b"two"
        )

    def test_base_provider_is_abstract(self):
        with pytest.raises(NotImplementedError):
            CryptoProvider().sign(b"m", b"k")


class TestEphemeralIdentity:
    def test_peer_id_derived_from_key(self, crypto):
        identity = EphemeralIdentity.generate(crypto)
        assert identity.peer_id == f"peer-{crypto.hash(identity.public_key)[:16]}"

    def test_identities_are_unlinkable(self, crypto):
        a = EphemeralIdentity.generate(crypto)
        b = EphemeralIdentity.generate(crypto)
        assert a.peer_id != b.peer_id
        assert a.public_key != b.public_key

    def test_sign(self, crypto, identity):
        signature = identity.sign(crypto, b"payload")
        assert crypto.verify(b"payload", signature, identity.public_key)
