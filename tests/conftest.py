"""
Pytest configuration and shared fixtures.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from nullanchor.ledger import RELAYER_ROLE, AnchorLedger
from nullanchor.receipts import MINTER_ROLE, ReceiptIssuer
from nullanchor.records import ATTESTATION_TYPE, WARRANT_TYPE, format_timestamp
from nullanchor.relayer import Relayer
from nullanchor.signatures import KeyRing, generate_keypair, sign_document
from nullanchor.store import RelayerStore


ADMIN = "0x" + "a0" * 20
FOUNDATION = "0x" + "f0" * 20
IMPLEMENTER = "0x" + "1e" * 20
WALLET = "0x" + "5b" * 20
OUTSIDER = "0x" + "99" * 20

CONTROLLER_KEY_ID = "acme-controller-1"
CONTROLLER_SECRET = "controller-tag-secret"

FIXED_NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def controller_keys():
    """Ed25519 key pair the enterprise controller signs with."""
    return generate_keypair()


@pytest.fixture
def keyring(controller_keys):
    ring = KeyRing()
    ring.register(CONTROLLER_KEY_ID, controller_keys[1])
    return ring


@pytest.fixture
def ledger(clock):
    """In-memory anchoring ledger administered by ADMIN."""
    return AnchorLedger(
        ":memory:",
        admin=ADMIN,
        foundation_treasury=FOUNDATION,
        implementer_treasury=IMPLEMENTER,
        clock=clock,
    )


@pytest.fixture
def issuer(clock):
    return ReceiptIssuer(":memory:", admin=ADMIN, clock=clock)


@pytest.fixture
def store():
    return RelayerStore(":memory:")


@pytest.fixture
def relayer_keys():
    return generate_keypair()


@pytest.fixture
def relayer(ledger, issuer, store, keyring, relayer_keys, clock):
    """Relayer with anchoring and minting rights and no real backoff."""
    instance = Relayer(
        ledger,
        issuer,
        store,
        keyring,
        relayer_keys[0],
        controller_secret=CONTROLLER_SECRET,
        confirmation_timeout=5.0,
        clock=clock,
        sleep=lambda seconds: None,
    )
    ledger.grant_role(ADMIN, RELAYER_ROLE, instance.address)
    issuer.grant_role(ADMIN, MINTER_ROLE, instance.address)
    yield instance
    instance.shutdown()


@pytest.fixture
def make_warrant(clock, controller_keys):
    """Build a signed warrant document; keyword overrides replace top-level fields."""

    def _make(sign: bool = True, **overrides) -> dict:
        now = clock()
        document = {
            "type": WARRANT_TYPE,
            "warrantId": "w-0001",
            "enterpriseId": "acme-corp",
            "subject": {
                "subjectHandle": "subj-7f3a",
                "anchors": [{"namespace": "email", "hash": "0x" + "ab" * 32}],
            },
            "scope": ["delete_all"],
            "jurisdiction": "GDPR",
            "legalBasis": "GDPR",
            "issuedAt": format_timestamp(now - timedelta(hours=1)),
            "notBefore": format_timestamp(now - timedelta(hours=1)),
            "expiresAt": format_timestamp(now + timedelta(days=30)),
            "returnChannels": {
                "email": "privacy@acme.example",
                "subjectReceiptWallet": WALLET,
            },
            "nonce": "n-0001",
            "audience": "did:web:acme.example",
            "evidenceRequested": ["API_LOG"],
            "slaSeconds": 2592000,
        }
        document.update(overrides)
        if not sign:
            return document
        return sign_document(document, CONTROLLER_KEY_ID, controller_keys[0])

    return _make


@pytest.fixture
def make_attestation(clock, controller_keys):
    """Build a signed attestation answering warrant w-0001 by default."""

    def _make(sign: bool = True, **overrides) -> dict:
        now = clock()
        document = {
            "type": ATTESTATION_TYPE,
            "attestationId": "a-0001",
            "warrantId": "w-0001",
            "enterpriseId": "acme-corp",
            "subjectHandle": "subj-7f3a",
            "status": "deleted",
            "completedAt": format_timestamp(now - timedelta(minutes=5)),
            "evidenceHash": "0x" + "cd" * 32,
            "acceptedClaims": ["delete_all"],
            "controllerPolicyDigest": "0x" + "ef" * 32,
        }
        document.update(overrides)
        if not sign:
            return document
        return sign_document(document, CONTROLLER_KEY_ID, controller_keys[0])

    return _make
