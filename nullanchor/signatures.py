"""
nullanchor - Cryptographic Signatures and Subject Tags

Implements document signing and verification over the unsigned canonical
form. Supported algorithms form a closed set: Ed25519, ECDSA over P-256,
and ECDSA over secp256k1 (the curve the anchoring ledger verifies). Each
algorithm is bound to its own signer and verifier; an unknown tag fails
closed with UnsupportedAlgorithmError.

Also derives privacy-preserving subject tags and ledger addresses.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import base64
import binascii
import hashlib
from dataclasses import dataclass
from typing import Callable, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.asymmetric.ec import (
    EllipticCurvePrivateKey,
    EllipticCurvePublicKey,
    SECP256K1,
    SECP256R1,
)

from .canonical import signing_input, to_hex
from .errors import SchemaError, SignatureError, UnknownKeyError, UnsupportedAlgorithmError
from .records import DocumentSignature, SignatureAlgorithm


PrivateKey = Union[Ed25519PrivateKey, EllipticCurvePrivateKey]
PublicKey = Union[Ed25519PublicKey, EllipticCurvePublicKey]

# Domain prefix for subject tags.
SUBJECT_TAG_PREFIX = b"NULL_TAG"


def parse_algorithm(tag: Union[str, SignatureAlgorithm]) -> SignatureAlgorithm:
    """Resolve an algorithm tag. Never defaults."""
    if isinstance(tag, SignatureAlgorithm):
        return tag
    try:
        return SignatureAlgorithm(tag)
    except ValueError:
        raise UnsupportedAlgorithmError(f"Unsupported signature algorithm: {tag!r}") from None


def _ec_curve_is(key, curve_cls) -> bool:
    return isinstance(key, (EllipticCurvePublicKey, EllipticCurvePrivateKey)) and isinstance(key.curve, curve_cls)


@dataclass(frozen=True)
class _Scheme:
    generate: Callable[[], PrivateKey]
    accepts: Callable[[object], bool]
    sign: Callable[[PrivateKey, bytes], bytes]
    verify: Callable[[PublicKey, bytes, bytes], None]


def _ecdsa_scheme(curve_cls) -> _Scheme:
    return _Scheme(
        generate=lambda: ec.generate_private_key(curve_cls()),
        accepts=lambda key: _ec_curve_is(key, curve_cls),
        sign=lambda key, data: key.sign(data, ec.ECDSA(hashes.SHA256())),
        verify=lambda key, sig, data: key.verify(sig, data, ec.ECDSA(hashes.SHA256())),
    )


_SCHEMES: dict[SignatureAlgorithm, _Scheme] = {
    SignatureAlgorithm.ED25519: _Scheme(
        generate=ed25519.Ed25519PrivateKey.generate,
        accepts=lambda key: isinstance(key, (Ed25519PublicKey, Ed25519PrivateKey)),
        sign=lambda key, data: key.sign(data),
        verify=lambda key, sig, data: key.verify(sig, data),
    ),
    SignatureAlgorithm.ECDSA_P256: _ecdsa_scheme(SECP256R1),
    SignatureAlgorithm.ECDSA_SECP256K1: _ecdsa_scheme(SECP256K1),
}


def algorithm_for_key(key: Union[PrivateKey, PublicKey]) -> SignatureAlgorithm:
    """The algorithm a key belongs to."""
    for algorithm, scheme in _SCHEMES.items():
        if scheme.accepts(key):
            return algorithm
    raise UnsupportedAlgorithmError(f"No supported algorithm for key type {type(key).__name__}")


def generate_keypair(
    algorithm: SignatureAlgorithm = SignatureAlgorithm.ED25519
) -> tuple[PrivateKey, PublicKey]:
    """
    Generate a new key pair for the specified algorithm.

    Key management is external; this exists for tests, demos and
    bootstrapping a relayer identity.
    """
    private_key = _SCHEMES[parse_algorithm(algorithm)].generate()
    return private_key, private_key.public_key()


def public_key_to_base64(public_key: PublicKey) -> str:
    """Serialize a public key to base64-encoded DER format."""
    der_bytes = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der_bytes).decode("ascii")


def base64_to_public_key(b64_key: str) -> PublicKey:
    """Deserialize a base64-encoded DER public key."""
    try:
        der_bytes = base64.b64decode(b64_key, validate=True)
        return serialization.load_der_public_key(der_bytes)
    except (binascii.Error, ValueError) as exc:
        raise SignatureError("Malformed public key") from exc


def sign_data(
    private_key: PrivateKey,
    data: bytes,
    algorithm: SignatureAlgorithm,
) -> bytes:
    """Sign data with the private key using the specified algorithm."""
    scheme = _SCHEMES[parse_algorithm(algorithm)]
    if not scheme.accepts(private_key):
        raise SignatureError(f"Key does not match algorithm {algorithm}")
    return scheme.sign(private_key, data)


def verify_signature(
    data: bytes,
    signature: bytes,
    public_key: PublicKey,
    algorithm: Union[str, SignatureAlgorithm],
) -> bool:
    """
    Verify a signature against data. Returns True if valid.

    An unknown algorithm raises UnsupportedAlgorithmError; a key that
    belongs to a different algorithm is simply not valid.
    """
    scheme = _SCHEMES[parse_algorithm(algorithm)]
    if not scheme.accepts(public_key):
        return False
    try:
        scheme.verify(public_key, signature, data)
        return True
    except InvalidSignature:
        return False


def sign_document(
    document: dict,
    key_id: str,
    private_key: PrivateKey,
    algorithm: SignatureAlgorithm = SignatureAlgorithm.ED25519,
) -> dict:
    """
    Return a copy of the document carrying a signature envelope.

    The signature covers the canonical serialization of every field except
    ``signature`` itself.
    """
    algorithm = parse_algorithm(algorithm)
    sig_bytes = sign_data(private_key, signing_input(document), algorithm)
    signed = dict(document)
    signed["signature"] = DocumentSignature(
        algorithm=algorithm.value,
        key_id=key_id,
        value=base64.b64encode(sig_bytes).decode("ascii"),
    ).to_document()
    return signed


@dataclass(frozen=True)
class KeyEntry:
    key_id: str
    algorithm: SignatureAlgorithm
    public_key: PublicKey


class KeyRing:
    """
    Externally supplied verification keys, looked up by key id.

    The algorithm a key was registered under is authoritative; a document
    claiming a different algorithm for the same key id is rejected.
    """

    def __init__(self):
        self._keys: dict[str, KeyEntry] = {}

    def register(
        self,
        key_id: str,
        public_key: Union[PublicKey, str],
        algorithm: Union[str, SignatureAlgorithm] = SignatureAlgorithm.ED25519,
    ) -> KeyEntry:
        algorithm = parse_algorithm(algorithm)
        if isinstance(public_key, str):
            public_key = base64_to_public_key(public_key)
        if not _SCHEMES[algorithm].accepts(public_key):
            raise SignatureError(f"Key {key_id} is not a {algorithm.value} key")
        entry = KeyEntry(key_id=key_id, algorithm=algorithm, public_key=public_key)
        self._keys[key_id] = entry
        return entry

    def resolve(self, key_id: str) -> KeyEntry:
        try:
            return self._keys[key_id]
        except KeyError:
            raise UnknownKeyError(f"Unknown key id: {key_id}") from None

    def __contains__(self, key_id: str) -> bool:
        return key_id in self._keys

    def verify_document(self, document: dict) -> KeyEntry:
        """
        Verify a document's signature envelope.

        Raises SignatureError (or a subclass) on any failure. Returns the
        key entry that verified it.
        """
        envelope = document.get("signature")
        if envelope is None:
            raise SignatureError("Document is not signed")
        try:
            signature = DocumentSignature.from_document(envelope)
        except SchemaError as exc:
            raise SignatureError(f"Malformed signature envelope: {exc.message}") from exc

        algorithm = parse_algorithm(signature.algorithm)
        entry = self.resolve(signature.key_id)
        if entry.algorithm != algorithm:
            raise SignatureError(
                f"Key {entry.key_id} is registered for {entry.algorithm.value}, "
                f"document claims {algorithm.value}"
            )

        try:
            sig_bytes = base64.b64decode(signature.value, validate=True)
        except binascii.Error as exc:
            raise SignatureError("Signature value is not base64") from exc

        if not verify_signature(signing_input(document), sig_bytes, entry.public_key, algorithm):
            raise SignatureError("Signature does not verify over the canonical document")
        return entry


def _as_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def derive_subject_tag(
    controller_key: Union[str, bytes],
    subject_handle: str,
    context: str,
) -> str:
    """
    Keyed pseudonym for a data subject.

    HMAC-SHA256 under the controller key over the domain prefix, the
    subject handle and the context. Deterministic per (key, handle,
    context) and not invertible without the key.
    """
    mac = hmac.HMAC(_as_bytes(controller_key), hashes.SHA256())
    mac.update(SUBJECT_TAG_PREFIX + _as_bytes(subject_handle) + _as_bytes(context))
    return to_hex(mac.finalize())


def verify_subject_tag(
    tag: str,
    controller_key: Union[str, bytes],
    subject_handle: str,
    context: str,
) -> bool:
    """Constant-time check that a tag belongs to the subject."""
    mac = hmac.HMAC(_as_bytes(controller_key), hashes.SHA256())
    mac.update(SUBJECT_TAG_PREFIX + _as_bytes(subject_handle) + _as_bytes(context))
    try:
        expected = bytes.fromhex(tag[2:] if tag.startswith("0x") else tag)
        mac.verify(expected)
        return True
    except (ValueError, InvalidSignature):
        return False


def hash_identifier(value: str) -> str:
    """SHA-256 of an identifier string, 0x-hex."""
    return to_hex(hashlib.sha256(value.encode("utf-8")).digest())


def controller_did_hash(audience: str) -> str:
    """Anchored stand-in for the controller's DID (the warrant audience)."""
    return hash_identifier(audience)


def address_for_public_key(public_key: PublicKey) -> str:
    """
    Ledger-native address of a key: the last 20 bytes of SHA-256 over the
    DER SubjectPublicKeyInfo.
    """
    der_bytes = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return "0x" + hashlib.sha256(der_bytes).digest()[-20:].hex()
