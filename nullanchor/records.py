"""
nullanchor - Document Types

Implements the Warrant, Attestation and Receipt documents exchanged by the
relayer. Documents travel as JSON objects with camelCase keys; the classes
here parse that wire shape, check its structural rules and render it back.

Digests and signatures are always computed over the wire document as
received, never over a re-rendered copy.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .errors import SchemaError


WARRANT_TYPE = "NullWarrant@v0.2"
ATTESTATION_TYPE = "DeletionAttestation@v0.2"
RECEIPT_TYPE = "MaskReceipt@v0.2"

NULL_ADDRESS = "0x" + "0" * 40

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_HEX_DIGEST_RE = re.compile(r"^(0x)?[0-9a-fA-F]{40,128}$")
_DIGEST32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class SignatureAlgorithm(str, Enum):
    """Closed set of document signature algorithms."""
    ED25519 = "Ed25519"
    ECDSA_P256 = "ECDSA-P256"
    ECDSA_SECP256K1 = "ECDSA-secp256k1"


class AnchorNamespace(str, Enum):
    """Identifier namespaces a subject anchor may hash."""
    EMAIL = "email"
    PHONE = "phone"
    NAME = "name"
    ADDRESS = "address"
    DEVICE_ID = "device_id"
    ACCOUNT_ID = "account_id"
    IP_ADDRESS = "ip_address"
    COOKIE_ID = "cookie_id"


class ActionScope(str, Enum):
    DELETE_ALL = "delete_all"
    SUPPRESS_MARKETING = "suppress_marketing"
    DELETE_BACKUPS = "delete_backups"
    STOP_PROCESSING = "stop_processing"
    REVOKE_CONSENT = "revoke_consent"


class Jurisdiction(str, Enum):
    """Legal regimes. Member order defines receipt jurisdiction bits."""
    GDPR = "GDPR"
    CCPA = "CCPA"
    LGPD = "LGPD"
    PIPEDA = "PIPEDA"
    UK_GDPR = "UK_GDPR"
    APPI = "APPI"
    OTHER = "OTHER"

    @property
    def bit(self) -> int:
        return 1 << list(Jurisdiction).index(self)


class EvidenceClass(str, Enum):
    """Evidence kinds. Member order defines receipt evidence-class bits."""
    TEE_QUOTE = "TEE_QUOTE"
    API_LOG = "API_LOG"
    KEY_DESTROY = "KEY_DESTROY"
    DKIM_ATTESTATION = "DKIM_ATTESTATION"

    @property
    def bit(self) -> int:
        return 1 << list(EvidenceClass).index(self)


class AttestationStatus(str, Enum):
    DELETED = "deleted"
    SUPPRESSED = "suppressed"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"


class DenialReason(str, Enum):
    NOT_FOUND = "not_found"
    LEGAL_OBLIGATION = "legal_obligation"
    TECHNICAL_CONSTRAINT = "technical_constraint"
    POLICY_VIOLATION = "policy_violation"


class AssuranceLevel(int, Enum):
    """Strength of the evidence behind an anchor."""
    BASIC = 0
    MEDIUM = 1
    HIGH = 2

    @classmethod
    def for_evidence(cls, evidence: list["EvidenceClass"]) -> "AssuranceLevel":
        """Hardware-backed evidence is HIGH, log-based MEDIUM, otherwise BASIC."""
        kinds = set(evidence)
        if kinds & {EvidenceClass.TEE_QUOTE, EvidenceClass.KEY_DESTROY}:
            return cls.HIGH
        if kinds & {EvidenceClass.API_LOG, EvidenceClass.DKIM_ATTESTATION}:
            return cls.MEDIUM
        return cls.BASIC


def is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO 8601 timestamp. Naive timestamps are rejected."""
    if not isinstance(value, str):
        raise ValueError("timestamp must be an ISO 8601 string")
    text = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError("timestamp must carry a UTC offset")
    return parsed


class _Reader:
    """Collects shape errors while pulling typed fields out of a document."""

    def __init__(self, document: Any, where: str):
        if not isinstance(document, dict):
            raise SchemaError(f"{where} must be a JSON object")
        self.document = document
        self.where = where
        self.errors: list[str] = []

    def _missing(self, key: str):
        self.errors.append(f"{self.where}.{key} is required")

    def text(self, key: str, required: bool = True) -> Optional[str]:
        value = self.document.get(key)
        if value is None:
            if required:
                self._missing(key)
            return None
        if not isinstance(value, str) or not value:
            self.errors.append(f"{self.where}.{key} must be a non-empty string")
            return None
        return value

    def integer(self, key: str) -> Optional[int]:
        value = self.document.get(key)
        if value is None:
            self._missing(key)
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            self.errors.append(f"{self.where}.{key} must be an integer")
            return None
        return value

    def timestamp(self, key: str) -> Optional[datetime]:
        value = self.document.get(key)
        if value is None:
            self._missing(key)
            return None
        try:
            return parse_timestamp(value)
        except ValueError as exc:
            self.errors.append(f"{self.where}.{key}: {exc}")
            return None

    def enum(self, key: str, enum_cls, required: bool = True):
        value = self.document.get(key)
        if value is None:
            if required:
                self._missing(key)
            return None
        try:
            return enum_cls(value)
        except ValueError:
            self.errors.append(f"{self.where}.{key} has unsupported value {value!r}")
            return None

    def enum_list(self, key: str, enum_cls) -> list:
        value = self.document.get(key)
        if value is None:
            self._missing(key)
            return []
        if not isinstance(value, list):
            self.errors.append(f"{self.where}.{key} must be an array")
            return []
        out = []
        for item in value:
            try:
                out.append(enum_cls(item))
            except ValueError:
                self.errors.append(f"{self.where}.{key} has unsupported value {item!r}")
        return out

    def obj(self, key: str, required: bool = True) -> Optional[dict]:
        value = self.document.get(key)
        if value is None:
            if required:
                self._missing(key)
            return None
        if not isinstance(value, dict):
            self.errors.append(f"{self.where}.{key} must be an object")
            return None
        return value

    def reject_unknown(self, allowed: set[str]):
        for key in sorted(set(self.document) - allowed):
            self.errors.append(f"{self.where}.{key} is not a recognised field")

    def merge(self, other: "_Reader"):
        self.errors.extend(other.errors)

    def raise_if_errors(self):
        if self.errors:
            raise SchemaError(
                f"{self.where} failed schema check: {self.errors[0]}",
                details={"errors": list(self.errors)},
            )


@dataclass
class DocumentSignature:
    """Signature envelope carried by every signed document."""
    algorithm: str
    key_id: str
    value: str  # base64

    @classmethod
    def from_document(cls, document: Any) -> "DocumentSignature":
        reader = _Reader(document, "signature")
        algorithm = reader.text("algorithm")
        key_id = reader.text("keyId")
        value = reader.text("value")
        reader.reject_unknown({"algorithm", "keyId", "value"})
        reader.raise_if_errors()
        return cls(algorithm=algorithm, key_id=key_id, value=value)

    def to_document(self) -> dict:
        return {"algorithm": self.algorithm, "keyId": self.key_id, "value": self.value}


@dataclass
class SubjectAnchor:
    """A hashed identifier for the subject. Never the raw value."""
    namespace: AnchorNamespace
    hash: str
    hint: Optional[str] = None

    def to_document(self) -> dict:
        doc = {"namespace": self.namespace.value, "hash": self.hash}
        if self.hint is not None:
            doc["hint"] = self.hint
        return doc


@dataclass
class Subject:
    subject_handle: str
    anchors: list[SubjectAnchor]

    def to_document(self) -> dict:
        return {
            "subjectHandle": self.subject_handle,
            "anchors": [a.to_document() for a in self.anchors],
        }


@dataclass
class ReturnChannels:
    email: Optional[str] = None
    callback_url: Optional[str] = None
    subject_receipt_wallet: Optional[str] = None

    def to_document(self) -> dict:
        doc = {}
        if self.email is not None:
            doc["email"] = self.email
        if self.callback_url is not None:
            doc["callbackUrl"] = self.callback_url
        if self.subject_receipt_wallet is not None:
            doc["subjectReceiptWallet"] = self.subject_receipt_wallet
        return doc


WARRANT_FIELDS = {
    "type", "warrantId", "enterpriseId", "subject", "scope", "jurisdiction",
    "legalBasis", "issuedAt", "expiresAt", "notBefore", "returnChannels",
    "nonce", "audience", "evidenceRequested", "slaSeconds", "signature",
}


@dataclass
class Warrant:
    """
    Signed request to delete or suppress data about one subject.
    """
    warrant_id: str
    enterprise_id: str
    subject: Subject
    scope: list[ActionScope]
    jurisdiction: Jurisdiction
    legal_basis: Jurisdiction
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    return_channels: ReturnChannels
    nonce: str
    audience: str
    evidence_requested: list[EvidenceClass] = field(default_factory=list)
    sla_seconds: int = 0
    signature: Optional[DocumentSignature] = None
    type: str = WARRANT_TYPE

    @classmethod
    def from_document(cls, document: Any) -> "Warrant":
        """Parse the wire shape. Raises SchemaError listing every problem."""
        reader = _Reader(document, "warrant")
        doc_type = reader.text("type")
        if doc_type is not None and doc_type != WARRANT_TYPE:
            reader.errors.append(f"warrant.type must be {WARRANT_TYPE}")

        subject = None
        subject_doc = reader.obj("subject")
        if subject_doc is not None:
            subject = _parse_subject(subject_doc, reader)

        channels = None
        channels_doc = reader.obj("returnChannels")
        if channels_doc is not None:
            ch = _Reader(channels_doc, "warrant.returnChannels")
            channels = ReturnChannels(
                email=ch.text("email", required=False),
                callback_url=ch.text("callbackUrl", required=False),
                subject_receipt_wallet=ch.text("subjectReceiptWallet", required=False),
            )
            ch.reject_unknown({"email", "callbackUrl", "subjectReceiptWallet"})
            reader.merge(ch)

        signature = None
        signature_doc = reader.obj("signature", required=False)
        if signature_doc is not None:
            try:
                signature = DocumentSignature.from_document(signature_doc)
            except SchemaError as exc:
                reader.errors.extend(exc.details.get("errors", [exc.message]))

        warrant_id = reader.text("warrantId")
        enterprise_id = reader.text("enterpriseId")
        scope = reader.enum_list("scope", ActionScope)
        jurisdiction = reader.enum("jurisdiction", Jurisdiction)
        legal_basis = reader.enum("legalBasis", Jurisdiction)
        issued_at = reader.timestamp("issuedAt")
        not_before = reader.timestamp("notBefore")
        expires_at = reader.timestamp("expiresAt")
        nonce = reader.text("nonce")
        audience = reader.text("audience")
        evidence = reader.enum_list("evidenceRequested", EvidenceClass)
        sla_seconds = reader.integer("slaSeconds")
        reader.reject_unknown(WARRANT_FIELDS)
        reader.raise_if_errors()

        return cls(
            warrant_id=warrant_id,
            enterprise_id=enterprise_id,
            subject=subject,
            scope=scope,
            jurisdiction=jurisdiction,
            legal_basis=legal_basis,
            issued_at=issued_at,
            not_before=not_before,
            expires_at=expires_at,
            return_channels=channels,
            nonce=nonce,
            audience=audience,
            evidence_requested=evidence,
            sla_seconds=sla_seconds,
            signature=signature,
        )

    def validate(self) -> tuple[bool, list[str]]:
        """
        Check the structural rules a parsed warrant must satisfy.
        Returns (is_valid, list_of_errors).
        """
        errors = []

        if not self.subject.anchors:
            errors.append("subject.anchors cannot be empty")

        for anchor in self.subject.anchors:
            if not _HEX_DIGEST_RE.match(anchor.hash):
                errors.append(f"anchor hash for {anchor.namespace.value} must be a hex digest")

        if not self.scope:
            errors.append("scope cannot be empty")
        if len(set(self.scope)) != len(self.scope):
            errors.append("scope contains duplicate actions")

        if self.issued_at > self.expires_at:
            errors.append("issuedAt cannot be after expiresAt")
        if self.not_before > self.expires_at:
            errors.append("notBefore cannot be after expiresAt")

        if self.sla_seconds <= 0:
            errors.append("slaSeconds must be positive")

        channels = self.return_channels
        if not (channels.email or channels.callback_url or channels.subject_receipt_wallet):
            errors.append("returnChannels must name at least one channel")
        if channels.subject_receipt_wallet is not None and not is_address(channels.subject_receipt_wallet):
            errors.append("returnChannels.subjectReceiptWallet must be a ledger address")

        return (len(errors) == 0, errors)

    @property
    def subject_context(self) -> str:
        """Context string the subject tag is scoped to."""
        return f"{self.enterprise_id}:{self.warrant_id}"

    def to_document(self) -> dict:
        doc = {
            "type": self.type,
            "warrantId": self.warrant_id,
            "enterpriseId": self.enterprise_id,
            "subject": self.subject.to_document(),
            "scope": [s.value for s in self.scope],
            "jurisdiction": self.jurisdiction.value,
            "legalBasis": self.legal_basis.value,
            "issuedAt": format_timestamp(self.issued_at),
            "notBefore": format_timestamp(self.not_before),
            "expiresAt": format_timestamp(self.expires_at),
            "returnChannels": self.return_channels.to_document(),
            "nonce": self.nonce,
            "audience": self.audience,
            "evidenceRequested": [e.value for e in self.evidence_requested],
            "slaSeconds": self.sla_seconds,
        }
        if self.signature is not None:
            doc["signature"] = self.signature.to_document()
        return doc


def _parse_subject(subject_doc: dict, parent: _Reader) -> Optional[Subject]:
    reader = _Reader(subject_doc, "warrant.subject")
    handle = reader.text("subjectHandle")
    anchors = []
    raw_anchors = subject_doc.get("anchors")
    if not isinstance(raw_anchors, list):
        reader.errors.append("warrant.subject.anchors must be an array")
        raw_anchors = []
    for i, raw in enumerate(raw_anchors):
        try:
            ar = _Reader(raw, f"warrant.subject.anchors[{i}]")
        except SchemaError as exc:
            reader.errors.append(exc.message)
            continue
        namespace = ar.enum("namespace", AnchorNamespace)
        anchor_hash = ar.text("hash")
        hint = ar.text("hint", required=False)
        ar.reject_unknown({"namespace", "hash", "hint"})
        reader.merge(ar)
        if namespace is not None and anchor_hash is not None:
            anchors.append(SubjectAnchor(namespace=namespace, hash=anchor_hash, hint=hint))
    reader.reject_unknown({"subjectHandle", "anchors"})
    parent.merge(reader)
    if handle is None:
        return None
    return Subject(subject_handle=handle, anchors=anchors)


ATTESTATION_FIELDS = {
    "type", "attestationId", "warrantId", "enterpriseId", "subjectHandle",
    "status", "completedAt", "evidenceHash", "acceptedClaims",
    "controllerPolicyDigest", "denialReason", "signature",
}


@dataclass
class Attestation:
    """
    Signed response to a specific warrant.
    """
    attestation_id: str
    warrant_id: str
    enterprise_id: str
    subject_handle: str
    status: AttestationStatus
    completed_at: datetime
    evidence_hash: str
    accepted_claims: list[ActionScope]
    controller_policy_digest: str
    denial_reason: Optional[DenialReason] = None
    signature: Optional[DocumentSignature] = None
    type: str = ATTESTATION_TYPE

    @classmethod
    def from_document(cls, document: Any) -> "Attestation":
        reader = _Reader(document, "attestation")
        doc_type = reader.text("type")
        if doc_type is not None and doc_type != ATTESTATION_TYPE:
            reader.errors.append(f"attestation.type must be {ATTESTATION_TYPE}")

        signature = None
        signature_doc = reader.obj("signature", required=False)
        if signature_doc is not None:
            try:
                signature = DocumentSignature.from_document(signature_doc)
            except SchemaError as exc:
                reader.errors.extend(exc.details.get("errors", [exc.message]))

        attestation = dict(
            attestation_id=reader.text("attestationId"),
            warrant_id=reader.text("warrantId"),
            enterprise_id=reader.text("enterpriseId"),
            subject_handle=reader.text("subjectHandle"),
            status=reader.enum("status", AttestationStatus),
            completed_at=reader.timestamp("completedAt"),
            evidence_hash=reader.text("evidenceHash"),
            accepted_claims=reader.enum_list("acceptedClaims", ActionScope),
            controller_policy_digest=reader.text("controllerPolicyDigest"),
            denial_reason=reader.enum("denialReason", DenialReason, required=False),
        )
        reader.reject_unknown(ATTESTATION_FIELDS)
        reader.raise_if_errors()
        return cls(signature=signature, **attestation)

    def validate(self) -> tuple[bool, list[str]]:
        errors = []

        if not _HEX_DIGEST_RE.match(self.evidence_hash):
            errors.append("evidenceHash must be a hex digest")

        if self.status == AttestationStatus.REJECTED and self.denial_reason is None:
            errors.append("denialReason required when status is rejected")
        if self.status == AttestationStatus.DELETED and self.denial_reason is not None:
            errors.append("denialReason not permitted when status is deleted")

        if len(set(self.accepted_claims)) != len(self.accepted_claims):
            errors.append("acceptedClaims contains duplicates")

        return (len(errors) == 0, errors)

    def to_document(self) -> dict:
        doc = {
            "type": self.type,
            "attestationId": self.attestation_id,
            "warrantId": self.warrant_id,
            "enterpriseId": self.enterprise_id,
            "subjectHandle": self.subject_handle,
            "status": self.status.value,
            "completedAt": format_timestamp(self.completed_at),
            "evidenceHash": self.evidence_hash,
            "acceptedClaims": [c.value for c in self.accepted_claims],
            "controllerPolicyDigest": self.controller_policy_digest,
        }
        if self.denial_reason is not None:
            doc["denialReason"] = self.denial_reason.value
        if self.signature is not None:
            doc["signature"] = self.signature.to_document()
        return doc


RECEIPT_FIELDS = {
    "type", "receiptId", "warrantHash", "attestationHash", "subjectHandle",
    "status", "completedAt", "evidenceHash", "controllerDidHash",
    "jurisdictionBits", "evidenceClassBits", "timestamp", "signature",
}


@dataclass
class Receipt:
    """
    Derived proof that a warrant/attestation pair ended in deletion.
    Never authored independently; the relayer builds and signs it.
    """
    receipt_id: str
    warrant_hash: str
    attestation_hash: str
    subject_handle: str
    completed_at: datetime
    evidence_hash: str
    controller_did_hash: str
    jurisdiction_bits: int
    evidence_class_bits: int
    timestamp: int
    status: AttestationStatus = AttestationStatus.DELETED
    signature: Optional[DocumentSignature] = None
    type: str = RECEIPT_TYPE

    @classmethod
    def from_document(cls, document: Any) -> "Receipt":
        reader = _Reader(document, "receipt")
        doc_type = reader.text("type")
        if doc_type is not None and doc_type != RECEIPT_TYPE:
            reader.errors.append(f"receipt.type must be {RECEIPT_TYPE}")

        signature = None
        signature_doc = reader.obj("signature", required=False)
        if signature_doc is not None:
            try:
                signature = DocumentSignature.from_document(signature_doc)
            except SchemaError as exc:
                reader.errors.extend(exc.details.get("errors", [exc.message]))

        receipt = dict(
            receipt_id=reader.text("receiptId"),
            warrant_hash=reader.text("warrantHash"),
            attestation_hash=reader.text("attestationHash"),
            subject_handle=reader.text("subjectHandle"),
            status=reader.enum("status", AttestationStatus),
            completed_at=reader.timestamp("completedAt"),
            evidence_hash=reader.text("evidenceHash"),
            controller_did_hash=reader.text("controllerDidHash"),
            jurisdiction_bits=reader.integer("jurisdictionBits"),
            evidence_class_bits=reader.integer("evidenceClassBits"),
            timestamp=reader.integer("timestamp"),
        )
        reader.reject_unknown(RECEIPT_FIELDS)
        reader.raise_if_errors()
        return cls(signature=signature, **receipt)

    def validate(self) -> tuple[bool, list[str]]:
        errors = []

        if self.status != AttestationStatus.DELETED:
            errors.append("receipt status must be deleted")

        for name in ("warrant_hash", "attestation_hash", "controller_did_hash"):
            if not _DIGEST32_RE.match(getattr(self, name)):
                errors.append(f"{name} must be a 0x-prefixed 32-byte digest")

        if self.warrant_hash == self.attestation_hash:
            errors.append("warrant_hash and attestation_hash must differ")

        if self.jurisdiction_bits < 0 or self.evidence_class_bits < 0:
            errors.append("bit fields must be non-negative")
        if self.timestamp <= 0:
            errors.append("timestamp must be positive")

        return (len(errors) == 0, errors)

    def to_document(self) -> dict:
        doc = {
            "type": self.type,
            "receiptId": self.receipt_id,
            "warrantHash": self.warrant_hash,
            "attestationHash": self.attestation_hash,
            "subjectHandle": self.subject_handle,
            "status": self.status.value,
            "completedAt": format_timestamp(self.completed_at),
            "evidenceHash": self.evidence_hash,
            "controllerDidHash": self.controller_did_hash,
            "jurisdictionBits": self.jurisdiction_bits,
            "evidenceClassBits": self.evidence_class_bits,
            "timestamp": self.timestamp,
        }
        if self.signature is not None:
            doc["signature"] = self.signature.to_document()
        return doc
