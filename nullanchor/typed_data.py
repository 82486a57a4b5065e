"""
nullanchor - Typed Delegated-Anchor Messages

A delegated anchor is authorised by a signature over a fixed, typed,
domain-separated structure. The ledger never accepts a client-supplied
hash: it rebuilds the structure from the call arguments and its own
domain, hashes it, and verifies the signature against that hash.

Encoding: every member is a 32-byte word (digests as-is, integers
big-endian, strings and type descriptors hashed), and the final digest is
SHA-256(0x1901 || domainSeparator || structHash).

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import hashlib
from dataclasses import dataclass

from .canonical import from_hex
from .errors import SchemaError
from .jws import create_jws, verify_jws
from .records import is_address
from .signatures import PrivateKey, PublicKey, algorithm_for_key


DOMAIN_TYPE = "AnchorDomain(string name,string version,uint256 chainId,address verifyingContract)"
ANCHOR_TYPE = (
    "Anchor(bytes32 warrantDigest,bytes32 attestationDigest,bytes32 subjectTag,"
    "bytes32 controllerDidHash,uint8 assurance,uint256 nonce,uint256 deadline)"
)

_WORD = 32


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _uint(value: int) -> bytes:
    if value < 0 or value >= 1 << 256:
        raise SchemaError(f"Integer {value} does not fit in uint256")
    return value.to_bytes(_WORD, "big")


def _address(value: str) -> bytes:
    if not is_address(value):
        raise SchemaError(f"Not a ledger address: {value!r}")
    return bytes(12) + bytes.fromhex(value[2:])


@dataclass(frozen=True)
class AnchorDomain:
    """Binds signatures to one registry deployment on one chain."""
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def separator(self) -> bytes:
        return _sha256(
            _sha256(DOMAIN_TYPE.encode("utf-8"))
            + _sha256(self.name.encode("utf-8"))
            + _sha256(self.version.encode("utf-8"))
            + _uint(self.chain_id)
            + _address(self.verifying_contract)
        )


@dataclass(frozen=True)
class AnchorAuthorization:
    """The exact anchor call a signer authorises."""
    warrant_digest: str
    attestation_digest: str
    subject_tag: str
    controller_did_hash: str
    assurance: int
    nonce: int
    deadline: int  # unix seconds

    def struct_hash(self) -> bytes:
        return _sha256(
            _sha256(ANCHOR_TYPE.encode("utf-8"))
            + from_hex(self.warrant_digest)
            + from_hex(self.attestation_digest)
            + from_hex(self.subject_tag)
            + from_hex(self.controller_did_hash)
            + _uint(self.assurance)
            + _uint(self.nonce)
            + _uint(self.deadline)
        )


def typed_digest(domain: AnchorDomain, authorization: AnchorAuthorization) -> bytes:
    """Domain-separated digest a delegated signer signs."""
    return _sha256(b"\x19\x01" + domain.separator() + authorization.struct_hash())


def sign_authorization(
    domain: AnchorDomain,
    authorization: AnchorAuthorization,
    private_key: PrivateKey,
    key_id: str = "delegate",
) -> str:
    """Detached JWS over the typed digest."""
    return create_jws(
        typed_digest(domain, authorization),
        private_key,
        key_id,
        algorithm_for_key(private_key),
    )


def verify_authorization(
    domain: AnchorDomain,
    authorization: AnchorAuthorization,
    signature: str,
    public_key: PublicKey,
) -> None:
    """Raises SignatureError unless ``signature`` authorises exactly this call."""
    verify_jws(
        signature,
        typed_digest(domain, authorization),
        public_key,
        expected_algorithm=algorithm_for_key(public_key),
    )

