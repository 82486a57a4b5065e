"""
Tests for warrant, attestation and receipt documents.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import pytest
from datetime import datetime, timedelta, timezone

from nullanchor.errors import SchemaError
from nullanchor.records import (
    ActionScope,
    AssuranceLevel,
    Attestation,
    AttestationStatus,
    DenialReason,
    EvidenceClass,
    Jurisdiction,
    Receipt,
    Warrant,
    parse_timestamp,
)


@pytest.fixture
def valid_receipt():
    return Receipt(
        receipt_id="r-1",
        warrant_hash="0x" + "11" * 32,
        attestation_hash="0x" + "22" * 32,
        subject_handle="subj-7f3a",
        completed_at=datetime(2026, 3, 2, 11, 55, tzinfo=timezone.utc),
        evidence_hash="0x" + "cd" * 32,
        controller_did_hash="0x" + "33" * 32,
        jurisdiction_bits=Jurisdiction.GDPR.bit,
        evidence_class_bits=EvidenceClass.API_LOG.bit,
        timestamp=1_772_452_800,
    )


class TestWarrant:
    """Tests for Warrant parsing and validation."""

    def test_parse_valid_warrant(self, make_warrant):
        """A well-formed warrant parses and validates."""
        warrant = Warrant.from_document(make_warrant())
        valid, errors = warrant.validate()
        assert valid, errors
        assert warrant.scope == [ActionScope.DELETE_ALL]
        assert warrant.jurisdiction == Jurisdiction.GDPR
        assert warrant.signature.key_id == "acme-controller-1"

    def test_wire_shape_roundtrip(self, make_warrant):
        """to_document reproduces the wire document."""
        document = make_warrant()
        assert Warrant.from_document(document).to_document() == document

    def test_subject_context(self, make_warrant):
        """Subject tags are scoped to enterprise and warrant."""
        warrant = Warrant.from_document(make_warrant())
        assert warrant.subject_context == "acme-corp:w-0001"

    def test_missing_field_rejected(self, make_warrant):
        """Missing required fields are reported."""
        document = make_warrant(sign=False)
        del document["audience"]
        with pytest.raises(SchemaError) as exc_info:
            Warrant.from_document(document)
        assert "warrant.audience is required" in exc_info.value.details["errors"]

    def test_unknown_field_rejected(self, make_warrant):
        """Unrecognised fields are refused."""
        with pytest.raises(SchemaError):
            Warrant.from_document(make_warrant(sign=False, rawEmail="alice@example.com"))

    def test_wrong_type_rejected(self, make_warrant):
        """The type tag is fixed."""
        with pytest.raises(SchemaError):
            Warrant.from_document(make_warrant(sign=False, type="NullWarrant@v0.1"))

    def test_unsupported_enum_value_rejected(self, make_warrant):
        """Jurisdictions outside the enumeration are refused."""
        with pytest.raises(SchemaError):
            Warrant.from_document(make_warrant(sign=False, jurisdiction="MARS"))

    def test_naive_timestamp_rejected(self, make_warrant):
        """Timestamps must carry an offset."""
        with pytest.raises(SchemaError):
            Warrant.from_document(make_warrant(sign=False, issuedAt="2026-03-02T10:00:00"))

    def test_empty_anchors_invalid(self, make_warrant):
        """A subject needs at least one anchor."""
        warrant = Warrant.from_document(
            make_warrant(sign=False, subject={"subjectHandle": "subj-7f3a", "anchors": []})
        )
        valid, errors = warrant.validate()
        assert not valid
        assert "subject.anchors cannot be empty" in errors

    def test_raw_identifier_invalid(self, make_warrant):
        """Anchor hashes must be digests, never raw personal data."""
        warrant = Warrant.from_document(make_warrant(
            sign=False,
            subject={
                "subjectHandle": "subj-7f3a",
                "anchors": [{"namespace": "email", "hash": "alice@example.com"}],
            },
        ))
        valid, _ = warrant.validate()
        assert not valid

    def test_duplicate_scope_invalid(self, make_warrant):
        """Scope is a set."""
        warrant = Warrant.from_document(make_warrant(sign=False, scope=["delete_all", "delete_all"]))
        valid, errors = warrant.validate()
        assert not valid
        assert "scope contains duplicate actions" in errors

    def test_window_order_invalid(self, make_warrant):
        """notBefore after expiresAt is invalid."""
        warrant = Warrant.from_document(make_warrant(
            sign=False,
            notBefore="2026-05-01T00:00:00Z",
            expiresAt="2026-04-01T00:00:00Z",
        ))
        valid, errors = warrant.validate()
        assert not valid
        assert "notBefore cannot be after expiresAt" in errors

    def test_no_return_channel_invalid(self, make_warrant):
        """At least one return channel is required."""
        warrant = Warrant.from_document(make_warrant(sign=False, returnChannels={}))
        valid, _ = warrant.validate()
        assert not valid

    def test_bad_wallet_invalid(self, make_warrant):
        """The receipt wallet must be a ledger address."""
        warrant = Warrant.from_document(make_warrant(
            sign=False, returnChannels={"subjectReceiptWallet": "alice"}
        ))
        valid, errors = warrant.validate()
        assert not valid
        assert "returnChannels.subjectReceiptWallet must be a ledger address" in errors


class TestAttestation:
    """Tests for Attestation parsing and validation."""

    def test_parse_valid_attestation(self, make_attestation):
        """A well-formed attestation parses and validates."""
        attestation = Attestation.from_document(make_attestation())
        valid, errors = attestation.validate()
        assert valid, errors
        assert attestation.status == AttestationStatus.DELETED

    def test_wire_shape_roundtrip(self, make_attestation):
        """to_document reproduces the wire document."""
        document = make_attestation()
        assert Attestation.from_document(document).to_document() == document

    def test_rejected_requires_denial_reason(self, make_attestation):
        """A rejection must say why."""
        attestation = Attestation.from_document(make_attestation(sign=False, status="rejected"))
        valid, errors = attestation.validate()
        assert not valid
        assert "denialReason required when status is rejected" in errors

    def test_rejected_with_reason_valid(self, make_attestation):
        """A rejection with a reason is valid."""
        attestation = Attestation.from_document(
            make_attestation(sign=False, status="rejected", denialReason="legal_obligation")
        )
        assert attestation.validate()[0]
        assert attestation.denial_reason == DenialReason.LEGAL_OBLIGATION

    def test_deleted_with_reason_invalid(self, make_attestation):
        """A deletion carries no denial reason."""
        attestation = Attestation.from_document(
            make_attestation(sign=False, denialReason="not_found")
        )
        assert not attestation.validate()[0]

    def test_non_object_rejected(self):
        """Documents must be JSON objects."""
        with pytest.raises(SchemaError):
            Attestation.from_document(["not", "an", "object"])


class TestReceipt:
    """Tests for Receipt validation."""

    def test_valid_receipt(self, valid_receipt):
        """A well-formed receipt is valid."""
        valid, errors = valid_receipt.validate()
        assert valid, errors

    def test_roundtrip(self, valid_receipt):
        """Receipts parse back from their wire shape."""
        assert Receipt.from_document(valid_receipt.to_document()) == valid_receipt

    def test_unsigned_receipt_parses(self, valid_receipt):
        """The signature envelope is optional when parsing."""
        parsed = Receipt.from_document(valid_receipt.to_document())
        assert parsed.signature is None
        assert "signature" not in parsed.to_document()

    def test_status_must_be_deleted(self, valid_receipt):
        """Receipts only exist for deletions."""
        valid_receipt.status = AttestationStatus.SUPPRESSED
        assert not valid_receipt.validate()[0]

    def test_hashes_must_differ(self, valid_receipt):
        """Warrant and attestation hashes are distinct."""
        valid_receipt.attestation_hash = valid_receipt.warrant_hash
        valid, errors = valid_receipt.validate()
        assert not valid
        assert "warrant_hash and attestation_hash must differ" in errors

    def test_short_hash_invalid(self, valid_receipt):
        """Hashes are 32-byte 0x values."""
        valid_receipt.controller_did_hash = "0x1234"
        assert not valid_receipt.validate()[0]


class TestEnumerations:
    """Tests for assurance levels and bit layouts."""

    def test_assurance_for_evidence(self):
        """Hardware evidence is HIGH, log evidence MEDIUM, none BASIC."""
        assert AssuranceLevel.for_evidence([EvidenceClass.TEE_QUOTE]) == AssuranceLevel.HIGH
        assert AssuranceLevel.for_evidence([EvidenceClass.KEY_DESTROY, EvidenceClass.API_LOG]) == AssuranceLevel.HIGH
        assert AssuranceLevel.for_evidence([EvidenceClass.DKIM_ATTESTATION]) == AssuranceLevel.MEDIUM
        assert AssuranceLevel.for_evidence([]) == AssuranceLevel.BASIC

    def test_bits_follow_enumeration_order(self):
        """Bit positions follow declaration order."""
        assert Jurisdiction.GDPR.bit == 1
        assert Jurisdiction.CCPA.bit == 2
        assert EvidenceClass.TEE_QUOTE.bit == 1
        assert EvidenceClass.DKIM_ATTESTATION.bit == 8

    def test_parse_timestamp_z_suffix(self):
        """Z suffix parses as UTC."""
        parsed = parse_timestamp("2026-03-02T12:00:00Z")
        assert parsed.utcoffset() == timedelta(0)
