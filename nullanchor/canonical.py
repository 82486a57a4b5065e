"""
nullanchor - Canonical Serialization and Digests

Turns an arbitrary nested document into one deterministic byte string and
hashes it. Signatures are always computed over the unsigned canonical form,
so the ``signature`` member is stripped before digesting.

Canonical format:
1. JSON, UTF-8, non-ASCII preserved
2. Object keys sorted lexicographically at every nesting level
3. Array order preserved, elements canonicalized recursively
4. No whitespace between elements, no trailing newline
5. Datetimes as ISO 8601 with UTC ``Z`` suffix

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import hashlib
import json
import math
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union
from uuid import UUID

from .errors import SchemaError


DIGEST_SIZE = 32

# All-zero digest: the attestation slot of a warrant-only anchor.
ZERO_DIGEST = "0x" + "00" * DIGEST_SIZE

SIGNATURE_FIELD = "signature"


def _serialize_value(value: Any) -> Any:
    """
    Convert a value to its JSON form following canonical rules.

    Anything that has no unambiguous JSON form is rejected rather than
    coerced.
    """
    if value is None or isinstance(value, (bool, str)):
        return value

    if isinstance(value, int):
        return value

    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise SchemaError("NaN and Infinity have no canonical form")
        return value

    if isinstance(value, Enum):
        return _serialize_value(value.value)

    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise SchemaError("Datetime must be timezone-aware for canonical serialization")
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    if isinstance(value, UUID):
        return str(value)

    if isinstance(value, (list, tuple)):
        return [_serialize_value(item) for item in value]

    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise SchemaError(f"Object keys must be strings, got {type(k).__name__}")
            out[k] = _serialize_value(v)
        return out

    if is_dataclass(value) and not isinstance(value, type):
        return _serialize_value(asdict(value))

    raise SchemaError(f"Cannot canonicalize value of type {type(value).__name__}")


def _sort_keys_recursive(obj: Any) -> Any:
    """Recursively sort dictionary keys alphabetically."""
    if isinstance(obj, dict):
        return {k: _sort_keys_recursive(v) for k, v in sorted(obj.items())}
    if isinstance(obj, list):
        return [_sort_keys_recursive(item) for item in obj]
    return obj


def canonicalize(document: Any) -> bytes:
    """
    Serialize a document to canonical JSON bytes.

    Pure and total over well-formed documents: two documents that differ
    only in key order produce identical bytes.
    """
    obj = _sort_keys_recursive(_serialize_value(document))
    json_str = json.dumps(
        obj,
        separators=(",", ":"),
        ensure_ascii=False,
        sort_keys=True,
        allow_nan=False,
    )
    return json_str.encode("utf-8")


def strip_signature(document: dict) -> dict:
    """Return a shallow copy of the document without its signature."""
    if not isinstance(document, dict):
        raise SchemaError("Document must be a JSON object")
    unsigned = dict(document)
    unsigned.pop(SIGNATURE_FIELD, None)
    return unsigned


def signing_input(document: dict) -> bytes:
    """Canonical bytes a document signature is computed over."""
    return canonicalize(strip_signature(document))


def digest(canonical_bytes: bytes) -> bytes:
    """SHA-256 over canonical bytes. Always 32 bytes."""
    return hashlib.sha256(canonical_bytes).digest()


def to_hex(raw: bytes) -> str:
    """Render a digest as 0x-prefixed lowercase hex."""
    return "0x" + raw.hex()


def from_hex(value: Union[str, bytes], size: int = DIGEST_SIZE) -> bytes:
    """
    Parse a fixed-width 0x-hex value (or pass raw bytes through).

    Raises SchemaError when the value is not exactly ``size`` bytes.
    """
    if isinstance(value, bytes):
        raw = value
    elif isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            raw = bytes.fromhex(text)
        except ValueError as exc:
            raise SchemaError(f"Not a hex string: {value!r}") from exc
    else:
        raise SchemaError(f"Expected hex string, got {type(value).__name__}")

    if len(raw) != size:
        raise SchemaError(f"Expected {size} bytes, got {len(raw)}")
    return raw


def normalize_digest(value: Union[str, bytes]) -> str:
    """Canonical 0x-hex spelling of a 32-byte digest."""
    return to_hex(from_hex(value))


def is_zero_digest(value: Union[str, bytes]) -> bool:
    return from_hex(value) == bytes(DIGEST_SIZE)


def document_digest(document: dict) -> str:
    """
    Digest of a warrant, attestation or receipt.

    Computed over the canonical form with ``signature`` stripped; returned
    as 0x-hex.
    """
    return to_hex(digest(signing_input(document)))
