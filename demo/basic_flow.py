#!/usr/bin/env python3
"""
nullanchor v0.2 - Basic Flow Demo

Demonstrates the complete flow of:
1. An enterprise signing a deletion warrant
2. The relayer anchoring the warrant digest
3. The controller signing a deletion attestation
4. Anchoring the pair and minting a soulbound receipt
5. Resubmitting the same attestation (duplicate, no second mint)
6. Treasuries withdrawing the accrued anchoring fees

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from datetime import datetime, timezone, timedelta

from nullanchor.config import RelayerSettings
from nullanchor.ledger import RELAYER_ROLE, AnchorLedger
from nullanchor.logging import setup_logging
from nullanchor.receipts import MINTER_ROLE, ReceiptIssuer
from nullanchor.records import ATTESTATION_TYPE, WARRANT_TYPE, SignatureAlgorithm, format_timestamp
from nullanchor.relayer import Relayer
from nullanchor.signatures import KeyRing, generate_keypair, sign_document
from nullanchor.store import RelayerStore


ADMIN = "0x" + "a0" * 20
FOUNDATION = "0x" + "f0" * 20
IMPLEMENTER = "0x" + "1e" * 20
SUBJECT_WALLET = "0x" + "5b" * 20


def main():
    print("=" * 60)
    print("nullanchor v0.2 - Basic Flow Demo")
    print("=" * 60)
    print()

    settings = RelayerSettings(
        _env_file=None,
        log_format="console",
        log_level="WARNING",
        controller_secret="demo-controller-secret",
    )
    setup_logging(settings)

    # Step 1: Keys for the controller and the relayer
    print("[1] Generating controller (Ed25519) and relayer (secp256k1) keys...")
    controller_private, controller_public = generate_keypair(SignatureAlgorithm.ED25519)
    relayer_private, _ = generate_keypair(SignatureAlgorithm.ECDSA_SECP256K1)
    keyring = KeyRing()
    keyring.register("acme-controller-1", controller_public)
    print("    Controller key registered as acme-controller-1")
    print()

    # Step 2: Ledger, receipt issuer and relayer
    print("[2] Initializing ledger, receipt issuer and relayer...")
    ledger = AnchorLedger(
        ":memory:",
        admin=ADMIN,
        foundation_treasury=FOUNDATION,
        implementer_treasury=IMPLEMENTER,
        chain_id=settings.chain_id,
        name=settings.registry_name,
        version=settings.registry_version,
    )
    issuer = ReceiptIssuer(":memory:", admin=ADMIN)
    relayer = Relayer.from_settings(
        settings,
        ledger=ledger,
        issuer=issuer,
        keyring=keyring,
        signing_key=relayer_private,
        store=RelayerStore(":memory:"),
    )
    ledger.grant_role(ADMIN, RELAYER_ROLE, relayer.address)
    issuer.grant_role(ADMIN, MINTER_ROLE, relayer.address)
    print(f"    Relayer address: {relayer.address}")
    print(f"    Base fee: {ledger.base_fee}")
    print()

    # Step 3: Enterprise signs a warrant
    print("[3] Signing deletion warrant w-0001...")
    now = datetime.now(timezone.utc)
    warrant = sign_document(
        {
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
            "issuedAt": format_timestamp(now),
            "notBefore": format_timestamp(now - timedelta(minutes=1)),
            "expiresAt": format_timestamp(now + timedelta(days=30)),
            "returnChannels": {"subjectReceiptWallet": SUBJECT_WALLET},
            "nonce": "n-0001",
            "audience": "did:web:acme.example",
            "evidenceRequested": ["API_LOG", "KEY_DESTROY"],
            "slaSeconds": 2592000,
        },
        "acme-controller-1",
        controller_private,
    )
    print()

    # Step 4: Anchor the warrant
    print("[4] Submitting warrant...")
    result = relayer.submit_warrant(warrant)
    print(f"    Outcome: {result.outcome.value}")
    print(f"    Digest: {result.digest}")
    print(f"    Ledger ref: {result.ledger_ref}")
    print()

    # Step 5: Controller signs the deletion attestation
    print("[5] Signing deletion attestation a-0001...")
    attestation = sign_document(
        {
            "type": ATTESTATION_TYPE,
            "attestationId": "a-0001",
            "warrantId": "w-0001",
            "enterpriseId": "acme-corp",
            "subjectHandle": "subj-7f3a",
            "status": "deleted",
            "completedAt": format_timestamp(datetime.now(timezone.utc)),
            "evidenceHash": "0x" + "cd" * 32,
            "acceptedClaims": ["delete_all"],
            "controllerPolicyDigest": "0x" + "ef" * 32,
        },
        "acme-controller-1",
        controller_private,
    )
    print()

    # Step 6: Anchor the pair and mint the receipt
    print("[6] Submitting attestation...")
    result = relayer.submit_attestation(attestation)
    print(f"    Outcome: {result.outcome.value}")
    print(f"    Ledger ref: {result.ledger_ref}")
    print(f"    Token ID: {result.token_id}")
    print(f"    Receipt owner: {issuer.owner_of(result.token_id)}")
    print(f"    Receipt validates: {relayer.validator.check_receipt(result.receipt).accepted}")
    print()

    # Step 7: Resubmit the same attestation
    print("[7] Resubmitting the same attestation...")
    duplicate = relayer.submit_attestation(attestation)
    print(f"    Outcome: {duplicate.outcome.value}")
    print(f"    Same token: {duplicate.token_id == result.token_id}")
    print(f"    Receipts minted: {issuer.total_minted}")
    print()

    # Step 8: Fees
    print("[8] Withdrawing accrued fees...")
    for name, treasury in (("Foundation", FOUNDATION), ("Implementer", IMPLEMENTER)):
        amount = ledger.withdraw(treasury, lambda address, value: None)
        print(f"    {name}: {amount}")
    print(f"    Total collected: {ledger.total_fees_collected}")
    print()

    # Step 9: Status
    print("[9] Status of a-0001...")
    status = relayer.get_status("a-0001")
    for event in status["history"]:
        print(f"    - {event['outcome']} at {event['recordedAt']}")
    print()

    relayer.shutdown()

    print("=" * 60)
    print("Demo completed successfully!")
    print()
    print("Key principles demonstrated:")
    print("  - Only digests and keyed subject tags reach the ledger")
    print("  - Append-only anchoring with role-gated writes")
    print("  - One soulbound receipt per warrant/attestation pair")
    print("  - Duplicate submissions never anchor or mint twice")
    print("  - Pull-payment fee split between two treasuries")
    print("=" * 60)


if __name__ == "__main__":
    main()
