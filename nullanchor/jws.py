"""
nullanchor - Detached Compact JWS

Signs and verifies a protected header plus an out-of-band payload
(RFC 7515 compact serialization, RFC 7797 unencoded detached payload).
The token has the form ``<header>..<signature>``; the payload is never
carried inside it.

Verification recomputes the signing input from the header exactly as
received and the payload supplied by the verifier. The header algorithm
must equal the algorithm the verifier expects; ``none`` and unknown
algorithms are refused.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import base64
import binascii
import json
from typing import Optional

from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from .errors import SignatureError, UnsupportedAlgorithmError
from .records import SignatureAlgorithm
from .signatures import PrivateKey, PublicKey, sign_data, verify_signature


JWS_ALGORITHMS = {
    "EdDSA": SignatureAlgorithm.ED25519,
    "ES256": SignatureAlgorithm.ECDSA_P256,
    "ES256K": SignatureAlgorithm.ECDSA_SECP256K1,
}
_JWS_NAMES = {v: k for k, v in JWS_ALGORITHMS.items()}

_EC_COORDINATE_SIZE = 32


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    if any(c in text for c in "+/="):
        raise SignatureError("JWS segment is not base64url")
    try:
        return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
    except (binascii.Error, ValueError) as exc:
        raise SignatureError("JWS segment is not base64url") from exc


def _to_raw_signature(der_or_raw: bytes, algorithm: SignatureAlgorithm) -> bytes:
    """JWS carries ECDSA signatures as fixed-width r||s, not DER."""
    if algorithm == SignatureAlgorithm.ED25519:
        return der_or_raw
    r, s = decode_dss_signature(der_or_raw)
    return r.to_bytes(_EC_COORDINATE_SIZE, "big") + s.to_bytes(_EC_COORDINATE_SIZE, "big")


def _from_raw_signature(raw: bytes, algorithm: SignatureAlgorithm) -> bytes:
    if algorithm == SignatureAlgorithm.ED25519:
        return raw
    if len(raw) != 2 * _EC_COORDINATE_SIZE:
        raise SignatureError("ECDSA JWS signature has the wrong length")
    r = int.from_bytes(raw[:_EC_COORDINATE_SIZE], "big")
    s = int.from_bytes(raw[_EC_COORDINATE_SIZE:], "big")
    return encode_dss_signature(r, s)


def _protected_header(algorithm: SignatureAlgorithm, key_id: str) -> dict:
    return {"alg": _JWS_NAMES[algorithm], "b64": False, "crit": ["b64"], "kid": key_id}


def create_jws(
    payload: bytes,
    private_key: PrivateKey,
    key_id: str,
    algorithm: SignatureAlgorithm = SignatureAlgorithm.ED25519,
) -> str:
    """Create a detached compact JWS over ``payload``."""
    header = json.dumps(
        _protected_header(algorithm, key_id), separators=(",", ":"), sort_keys=True
    ).encode("utf-8")
    encoded_header = _b64url(header)
    signing_input = encoded_header.encode("ascii") + b"." + payload
    signature = _to_raw_signature(sign_data(private_key, signing_input, algorithm), algorithm)
    return f"{encoded_header}..{_b64url(signature)}"


def read_jws_header(token: str) -> dict:
    """Decode the protected header without verifying anything."""
    if not isinstance(token, str) or not token.isascii():
        raise SignatureError("JWS must be an ASCII string")
    parts = token.split(".")
    if len(parts) != 3:
        raise SignatureError("JWS must have three segments")
    try:
        header = json.loads(_b64url_decode(parts[0]))
    except ValueError as exc:
        raise SignatureError("JWS header is not JSON") from exc
    if not isinstance(header, dict):
        raise SignatureError("JWS header must be an object")
    return header


def verify_jws(
    token: str,
    payload: bytes,
    public_key: PublicKey,
    expected_algorithm: SignatureAlgorithm,
    expected_key_id: Optional[str] = None,
) -> dict:
    """
    Verify a detached JWS. Returns the protected header.

    Raises SignatureError on any mismatch, including algorithm or key id
    substitution in the header and an attached payload.
    """
    header = read_jws_header(token)
    encoded_header, attached, encoded_signature = token.split(".")

    if attached:
        raise SignatureError("JWS payload must be detached")

    alg = header.get("alg")
    if not isinstance(alg, str) or alg.lower() == "none":
        raise SignatureError("JWS algorithm 'none' is not accepted")
    if alg not in JWS_ALGORITHMS:
        raise UnsupportedAlgorithmError(f"Unsupported JWS algorithm: {alg}")
    algorithm = JWS_ALGORITHMS[alg]
    if algorithm != expected_algorithm:
        raise SignatureError(
            f"JWS algorithm {alg} does not match expected {_JWS_NAMES[expected_algorithm]}"
        )

    if header.get("b64") is not False or header.get("crit") != ["b64"]:
        raise SignatureError("JWS header must declare an unencoded detached payload")

    if expected_key_id is not None and header.get("kid") != expected_key_id:
        raise SignatureError("JWS key id does not match")

    signature = _from_raw_signature(_b64url_decode(encoded_signature), algorithm)
    signing_input = encoded_header.encode("ascii") + b"." + payload
    if not verify_signature(signing_input, signature, public_key, algorithm):
        raise SignatureError("JWS signature does not verify")
    return header
