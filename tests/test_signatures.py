"""
Tests for cryptographic signatures, key rings and subject tags.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import pytest

from nullanchor.errors import SignatureError, UnknownKeyError, UnsupportedAlgorithmError
from nullanchor.records import SignatureAlgorithm
from nullanchor.signatures import (
    KeyRing,
    address_for_public_key,
    algorithm_for_key,
    base64_to_public_key,
    controller_did_hash,
    derive_subject_tag,
    generate_keypair,
    public_key_to_base64,
    sign_data,
    sign_document,
    verify_signature,
    verify_subject_tag,
)


ALL_ALGORITHMS = list(SignatureAlgorithm)


class TestKeyGeneration:
    """Tests for key pair generation."""

    @pytest.mark.parametrize("algorithm", ALL_ALGORITHMS)
    def test_generate_keypair(self, algorithm):
        """Every supported algorithm can generate a key pair."""
        private_key, public_key = generate_keypair(algorithm)
        assert algorithm_for_key(private_key) == algorithm
        assert algorithm_for_key(public_key) == algorithm

    def test_unknown_algorithm_rejected(self):
        """An unknown algorithm tag fails closed."""
        with pytest.raises(UnsupportedAlgorithmError):
            generate_keypair("RSA-PSS")


class TestPublicKeySerialization:
    """Tests for public key serialization."""

    @pytest.mark.parametrize("algorithm", ALL_ALGORITHMS)
    def test_base64_roundtrip(self, algorithm):
        """A serialized public key loads back and still verifies."""
        private_key, public_key = generate_keypair(algorithm)
        restored = base64_to_public_key(public_key_to_base64(public_key))
        signature = sign_data(private_key, b"payload", algorithm)
        assert verify_signature(b"payload", signature, restored, algorithm)

    def test_malformed_key_rejected(self):
        """Garbage is a signature error, not a crash."""
        with pytest.raises(SignatureError):
            base64_to_public_key("not-a-key")


class TestVerifySignature:
    """Tests for raw signature verification."""

    @pytest.mark.parametrize("algorithm", ALL_ALGORITHMS)
    def test_roundtrip(self, algorithm):
        """sign then verify succeeds."""
        private_key, public_key = generate_keypair(algorithm)
        signature = sign_data(private_key, b"hello", algorithm)
        assert verify_signature(b"hello", signature, public_key, algorithm)

    @pytest.mark.parametrize("algorithm", ALL_ALGORITHMS)
    def test_tampered_payload(self, algorithm):
        """A changed payload byte fails verification."""
        private_key, public_key = generate_keypair(algorithm)
        signature = sign_data(private_key, b"hello", algorithm)
        assert not verify_signature(b"hellp", signature, public_key, algorithm)

    @pytest.mark.parametrize("algorithm", ALL_ALGORITHMS)
    def test_tampered_signature(self, algorithm):
        """A changed signature byte fails verification."""
        private_key, public_key = generate_keypair(algorithm)
        signature = bytearray(sign_data(private_key, b"hello", algorithm))
        signature[-1] ^= 0x01
        assert not verify_signature(b"hello", bytes(signature), public_key, algorithm)

    def test_wrong_algorithm_for_key(self):
        """A key from another scheme is simply not valid."""
        private_key, public_key = generate_keypair(SignatureAlgorithm.ED25519)
        signature = sign_data(private_key, b"hello", SignatureAlgorithm.ED25519)
        assert not verify_signature(b"hello", signature, public_key, SignatureAlgorithm.ECDSA_P256)

    def test_unknown_algorithm_raises(self):
        """Unknown tags never silently default."""
        private_key, public_key = generate_keypair()
        signature = sign_data(private_key, b"hello", SignatureAlgorithm.ED25519)
        with pytest.raises(UnsupportedAlgorithmError):
            verify_signature(b"hello", signature, public_key, "none")

    def test_sign_with_mismatched_key(self):
        """Signing refuses a key of the wrong type."""
        private_key, _ = generate_keypair(SignatureAlgorithm.ED25519)
        with pytest.raises(SignatureError):
            sign_data(private_key, b"hello", SignatureAlgorithm.ECDSA_SECP256K1)


class TestKeyRing:
    """Tests for document verification through the key ring."""

    @pytest.fixture
    def ring_and_key(self):
        private_key, public_key = generate_keypair(SignatureAlgorithm.ECDSA_P256)
        ring = KeyRing()
        ring.register("ctrl-1", public_key_to_base64(public_key), SignatureAlgorithm.ECDSA_P256)
        return ring, private_key

    def test_signed_document_verifies(self, ring_and_key):
        """A document signed with a registered key verifies."""
        ring, private_key = ring_and_key
        doc = sign_document({"a": 1}, "ctrl-1", private_key, SignatureAlgorithm.ECDSA_P256)
        entry = ring.verify_document(doc)
        assert entry.key_id == "ctrl-1"

    def test_key_order_irrelevant(self, ring_and_key):
        """Verification is over the canonical form, so key order is irrelevant."""
        ring, private_key = ring_and_key
        doc = sign_document({"a": 1, "b": 2}, "ctrl-1", private_key, SignatureAlgorithm.ECDSA_P256)
        reordered = {"signature": doc["signature"], "b": 2, "a": 1}
        ring.verify_document(reordered)

    def test_tampered_field_rejected(self, ring_and_key):
        """Changing any signed field breaks the signature."""
        ring, private_key = ring_and_key
        doc = sign_document({"a": 1}, "ctrl-1", private_key, SignatureAlgorithm.ECDSA_P256)
        doc["a"] = 2
        with pytest.raises(SignatureError):
            ring.verify_document(doc)

    def test_unsigned_document_rejected(self, ring_and_key):
        """A missing signature is a signature error."""
        ring, _ = ring_and_key
        with pytest.raises(SignatureError):
            ring.verify_document({"a": 1})

    def test_unknown_key_rejected(self, ring_and_key):
        """Documents signed under an unregistered key id are rejected."""
        ring, private_key = ring_and_key
        doc = sign_document({"a": 1}, "ctrl-2", private_key, SignatureAlgorithm.ECDSA_P256)
        with pytest.raises(UnknownKeyError):
            ring.verify_document(doc)

    def test_algorithm_substitution_rejected(self, ring_and_key):
        """The registered algorithm wins over the document's claim."""
        ring, _ = ring_and_key
        other_private, _ = generate_keypair(SignatureAlgorithm.ED25519)
        doc = sign_document({"a": 1}, "ctrl-1", other_private, SignatureAlgorithm.ED25519)
        with pytest.raises(SignatureError):
            ring.verify_document(doc)

    def test_unknown_algorithm_tag_rejected(self, ring_and_key):
        """An unknown algorithm in the envelope fails closed."""
        ring, private_key = ring_and_key
        doc = sign_document({"a": 1}, "ctrl-1", private_key, SignatureAlgorithm.ECDSA_P256)
        doc["signature"]["algorithm"] = "HS256"
        with pytest.raises(UnsupportedAlgorithmError):
            ring.verify_document(doc)

    def test_register_rejects_wrong_key_type(self):
        """A key cannot be registered under another algorithm."""
        _, public_key = generate_keypair(SignatureAlgorithm.ED25519)
        with pytest.raises(SignatureError):
            KeyRing().register("k", public_key, SignatureAlgorithm.ECDSA_SECP256K1)


class TestSubjectTags:
    """Tests for keyed subject tags."""

    def test_deterministic(self):
        """Same key, handle and context give the same tag."""
        a = derive_subject_tag("secret", "subj-1", "acme:w-1")
        b = derive_subject_tag("secret", "subj-1", "acme:w-1")
        assert a == b
        assert len(a) == 66

    def test_depends_on_every_input(self):
        """Changing key, handle or context changes the tag."""
        base = derive_subject_tag("secret", "subj-1", "acme:w-1")
        assert derive_subject_tag("other", "subj-1", "acme:w-1") != base
        assert derive_subject_tag("secret", "subj-2", "acme:w-1") != base
        assert derive_subject_tag("secret", "subj-1", "acme:w-2") != base

    def test_does_not_contain_handle(self):
        """The tag does not reveal the subject handle."""
        tag = derive_subject_tag("secret", "subj-1", "acme:w-1")
        assert "subj-1".encode().hex() not in tag

    def test_verify_subject_tag(self):
        """Tags verify against their inputs and nothing else."""
        tag = derive_subject_tag(b"secret", "subj-1", "acme:w-1")
        assert verify_subject_tag(tag, b"secret", "subj-1", "acme:w-1")
        assert not verify_subject_tag(tag, b"secret", "subj-9", "acme:w-1")
        assert not verify_subject_tag("0xnothex", b"secret", "subj-1", "acme:w-1")


class TestIdentifiers:
    """Tests for derived identifiers."""

    def test_address_format(self):
        """Key addresses are 0x plus 40 hex characters."""
        _, public_key = generate_keypair()
        address = address_for_public_key(public_key)
        assert address.startswith("0x")
        assert len(address) == 42

    def test_address_distinct_per_key(self):
        """Different keys get different addresses."""
        _, a = generate_keypair()
        _, b = generate_keypair()
        assert address_for_public_key(a) != address_for_public_key(b)

    def test_controller_did_hash(self):
        """The DID hash is stable for a given audience."""
        assert controller_did_hash("did:web:acme.example") == controller_did_hash("did:web:acme.example")
        assert controller_did_hash("did:web:acme.example") != controller_did_hash("did:web:other.example")
