"""
nullanchor - Verifiable Deletion Relayer

This package implements the verifiable deletion protocol end to end:

- Signed warrants and attestations with canonical JSON digests
- Ed25519, ECDSA P-256 and ECDSA secp256k1 document signatures
- Keyed subject tags (no personal data ever anchored)
- Append-only anchoring ledger with role-gated, fee-bearing writes
- Delegated anchoring via typed, domain-separated signatures
- Soulbound receipt tokens, one per warrant/attestation pair
- Relayer pipeline with bounded retries and confirmation timeouts

SPDX-License-Identifier: AGPL-3.0-or-later
"""

__version__ = "0.2.0"
__protocol_version__ = "0.2"

from .canonical import canonicalize, document_digest
from .signatures import derive_subject_tag, generate_keypair, sign_document, verify_signature, KeyRing
from .records import Warrant, Attestation, Receipt
from .ledger import AnchorLedger
from .receipts import ReceiptIssuer, token_id_for
from .relayer import Relayer, Outcome

__all__ = [
    "canonicalize",
    "document_digest",
    "derive_subject_tag",
    "generate_keypair",
    "sign_document",
    "verify_signature",
    "KeyRing",
    "Warrant",
    "Attestation",
    "Receipt",
    "AnchorLedger",
    "ReceiptIssuer",
    "token_id_for",
    "Relayer",
    "Outcome",
]
