"""
nullanchor - Append-Only Anchoring Ledger

Records (warrantDigest, attestationDigest) pairs together with a
privacy-preserving subject tag, the controller DID hash and an assurance
level. Only digests and tags are stored; no document and no personal data
ever reaches this table.

Structural guarantees:
- Anchors table is append-only (no UPDATE, no DELETE; sqlite triggers)
- Per-signer delegation nonces only ever increase by one
- Nonce check, nonce increment, record insertion and fee crediting happen
  in one transaction under the ledger lock
- Fees are split between two treasuries as pull-payment balances; nothing
  is pushed to a beneficiary at anchor time

The ledger does not reject a digest that is already anchored. Duplicate
detection belongs to the caller (see relayer.Relayer).

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Union

import structlog

from .canonical import ZERO_DIGEST, is_zero_digest, normalize_digest
from .errors import (
    AuthorizationError,
    DeadlineExpired,
    InsufficientFee,
    InvalidAssurance,
    InvalidNonce,
    LedgerError,
    LedgerPaused,
    NoBalance,
    PayoutFailed,
    SchemaError,
)
from .records import NULL_ADDRESS, AssuranceLevel, is_address
from .signatures import PublicKey, address_for_public_key, base64_to_public_key, hash_identifier
from .storage import SQLiteStore
from .typed_data import AnchorAuthorization, AnchorDomain, verify_authorization


logger = structlog.get_logger(__name__)

DEFAULT_ADMIN_ROLE = "DEFAULT_ADMIN_ROLE"
RELAYER_ROLE = "RELAYER_ROLE"
TREASURY_ROLE = "TREASURY_ROLE"

# Fee split: FOUNDATION_FEE/FEE_DENOMINATOR to the foundation treasury,
# the remainder to the implementer treasury.
FOUNDATION_FEE = 1
IMPLEMENTER_FEE = 12
FEE_DENOMINATOR = FOUNDATION_FEE + IMPLEMENTER_FEE

DEFAULT_BASE_FEE = 10**15  # 0.001 in the ledger's smallest unit

REGISTRY_NAME = "NullAnchorRegistry"
REGISTRY_VERSION = "1"
DEFAULT_REGISTRY_ADDRESS = "0x" + hash_identifier("nullanchor:registry")[-40:]

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def split_fee(fee: int) -> tuple[int, int]:
    """(foundation share, implementer share) of a fee."""
    foundation = fee * FOUNDATION_FEE // FEE_DENOMINATOR
    return foundation, fee - foundation


@dataclass(frozen=True)
class AnchorRecord:
    """One immutable ledger entry."""
    block_height: int
    warrant_digest: str
    attestation_digest: str
    submitter: str  # authorising identity (signer for delegated anchors)
    executor: str  # account that sent the call and paid the fee
    subject_tag: str
    controller_did_hash: str
    assurance: AssuranceLevel
    fee: int
    timestamp: datetime
    tx_ref: str

    @property
    def delegated(self) -> bool:
        return self.submitter != self.executor

    def to_dict(self) -> dict:
        return {
            "blockHeight": self.block_height,
            "warrantDigest": self.warrant_digest,
            "attestationDigest": self.attestation_digest,
            "submitter": self.submitter,
            "subjectTag": self.subject_tag,
            "controllerDidHash": self.controller_did_hash,
            "assuranceLevel": int(self.assurance),
            "timestamp": self.timestamp.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "txRef": self.tx_ref,
        }


class AnchorLedger(SQLiteStore):
    """
    Authorization-gated, append-only anchoring registry.

    Identities are ledger addresses passed explicitly as ``caller``.
    """

    SCHEMA = """
        -- Anchored digest pairs
        CREATE TABLE IF NOT EXISTS anchors (
            block_height INTEGER PRIMARY KEY AUTOINCREMENT,
            warrant_digest TEXT NOT NULL,
            attestation_digest TEXT NOT NULL,
            submitter TEXT NOT NULL,
            executor TEXT NOT NULL,
            subject_tag TEXT NOT NULL,
            controller_did_hash TEXT NOT NULL,
            assurance INTEGER NOT NULL CHECK (assurance IN (0, 1, 2)),
            fee TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            tx_ref TEXT UNIQUE NOT NULL
        );

        CREATE TRIGGER IF NOT EXISTS prevent_anchor_update
        BEFORE UPDATE ON anchors
        BEGIN
            SELECT RAISE(ABORT, 'UPDATE not permitted on append-only ledger');
        END;

        CREATE TRIGGER IF NOT EXISTS prevent_anchor_delete
        BEFORE DELETE ON anchors
        BEGIN
            SELECT RAISE(ABORT, 'DELETE not permitted on append-only ledger');
        END;

        -- Delegation nonces: created at 1, then +1 per delegated anchor
        CREATE TABLE IF NOT EXISTS nonces (
            address TEXT PRIMARY KEY,
            nonce INTEGER NOT NULL
        );

        CREATE TRIGGER IF NOT EXISTS nonce_monotonic
        BEFORE UPDATE ON nonces
        WHEN NEW.nonce <> OLD.nonce + 1
        BEGIN
            SELECT RAISE(ABORT, 'nonce must advance by one on append-only counter');
        END;

        CREATE TRIGGER IF NOT EXISTS prevent_nonce_delete
        BEFORE DELETE ON nonces
        BEGIN
            SELECT RAISE(ABORT, 'DELETE not permitted on append-only nonce counter');
        END;

        -- Pull-payment balances
        CREATE TABLE IF NOT EXISTS balances (
            address TEXT PRIMARY KEY,
            amount TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS roles (
            role TEXT NOT NULL,
            account TEXT NOT NULL,
            PRIMARY KEY (role, account)
        );

        CREATE TABLE IF NOT EXISTS registry_state (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            base_fee TEXT NOT NULL,
            foundation_treasury TEXT NOT NULL,
            implementer_treasury TEXT NOT NULL,
            paused INTEGER NOT NULL DEFAULT 0,
            total_anchors INTEGER NOT NULL DEFAULT 0,
            total_fees_collected TEXT NOT NULL DEFAULT '0'
        );

        -- Administrative and payout events
        CREATE TABLE IF NOT EXISTS ledger_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL,
            account TEXT NOT NULL,
            payload TEXT NOT NULL,
            timestamp TEXT NOT NULL
        );

        CREATE TRIGGER IF NOT EXISTS prevent_event_update
        BEFORE UPDATE ON ledger_events
        BEGIN
            SELECT RAISE(ABORT, 'UPDATE not permitted on append-only event log');
        END;

        CREATE TRIGGER IF NOT EXISTS prevent_event_delete
        BEFORE DELETE ON ledger_events
        BEGIN
            SELECT RAISE(ABORT, 'DELETE not permitted on append-only event log');
        END;

        CREATE INDEX IF NOT EXISTS idx_anchor_warrant ON anchors(warrant_digest);
        CREATE INDEX IF NOT EXISTS idx_anchor_attestation ON anchors(attestation_digest);
        CREATE INDEX IF NOT EXISTS idx_anchor_submitter ON anchors(submitter);
    """

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        *,
        admin: str,
        foundation_treasury: str,
        implementer_treasury: str,
        base_fee: int = DEFAULT_BASE_FEE,
        chain_id: int = 1,
        name: str = REGISTRY_NAME,
        version: str = REGISTRY_VERSION,
        address: str = DEFAULT_REGISTRY_ADDRESS,
        clock: Optional[Clock] = None,
    ):
        for field_name, value in (
            ("admin", admin),
            ("foundation_treasury", foundation_treasury),
            ("implementer_treasury", implementer_treasury),
            ("address", address),
        ):
            if not is_address(value) or value == NULL_ADDRESS:
                raise SchemaError(f"{field_name} must be a non-null ledger address")
        _check_amount(base_fee, "base_fee")

        self.address = address
        self.domain = AnchorDomain(
            name=name,
            version=version,
            chain_id=chain_id,
            verifying_contract=address,
        )
        self.clock = clock or utc_now
        super().__init__(db_path)

        with self._transaction():
            self._conn.execute(
                """
                INSERT OR IGNORE INTO registry_state
                    (id, base_fee, foundation_treasury, implementer_treasury)
                VALUES (1, ?, ?, ?)
                """,
                (str(base_fee), foundation_treasury, implementer_treasury),
            )
            for role in (DEFAULT_ADMIN_ROLE, TREASURY_ROLE):
                self._conn.execute(
                    "INSERT OR IGNORE INTO roles (role, account) VALUES (?, ?)",
                    (role, admin),
                )

    # -- State ---------------------------------------------------------------

    def _state(self):
        return self._query_one("SELECT * FROM registry_state WHERE id = 1")

    @property
    def base_fee(self) -> int:
        return int(self._state()["base_fee"])

    @property
    def paused(self) -> bool:
        return bool(self._state()["paused"])

    @property
    def treasuries(self) -> tuple[str, str]:
        state = self._state()
        return state["foundation_treasury"], state["implementer_treasury"]

    @property
    def total_anchors(self) -> int:
        return self._state()["total_anchors"]

    @property
    def total_fees_collected(self) -> int:
        return int(self._state()["total_fees_collected"])

    # -- Roles ---------------------------------------------------------------

    def has_role(self, role: str, account: str) -> bool:
        row = self._query_one(
            "SELECT 1 FROM roles WHERE role = ? AND account = ?",
            (role, account),
        )
        return row is not None

    def _require_role(self, role: str, account: str):
        if not self.has_role(role, account):
            raise AuthorizationError(account, role)

    def grant_role(self, caller: str, role: str, account: str):
        if not is_address(account):
            raise SchemaError(f"Not a ledger address: {account!r}")
        with self._transaction():
            self._require_role(DEFAULT_ADMIN_ROLE, caller)
            self._conn.execute(
                "INSERT OR IGNORE INTO roles (role, account) VALUES (?, ?)",
                (role, account),
            )
            self._record_event("role_granted", caller, {"role": role, "account": account})

    def revoke_role(self, caller: str, role: str, account: str):
        with self._transaction():
            self._require_role(DEFAULT_ADMIN_ROLE, caller)
            self._conn.execute(
                "DELETE FROM roles WHERE role = ? AND account = ?",
                (role, account),
            )
            self._record_event("role_revoked", caller, {"role": role, "account": account})

    # -- Administration ------------------------------------------------------

    def pause(self, caller: str):
        self._set_paused(caller, True)

    def unpause(self, caller: str):
        self._set_paused(caller, False)

    def _set_paused(self, caller: str, paused: bool):
        with self._transaction():
            self._require_role(DEFAULT_ADMIN_ROLE, caller)
            self._conn.execute(
                "UPDATE registry_state SET paused = ? WHERE id = 1",
                (1 if paused else 0,),
            )
            self._record_event("paused" if paused else "unpaused", caller, {})
        logger.info("ledger_pause_changed", paused=paused, caller=caller)

    def set_base_fee(self, caller: str, base_fee: int):
        _check_amount(base_fee, "base_fee")
        with self._transaction():
            self._require_role(TREASURY_ROLE, caller)
            self._conn.execute(
                "UPDATE registry_state SET base_fee = ? WHERE id = 1",
                (str(base_fee),),
            )
            self._record_event("base_fee_updated", caller, {"baseFee": base_fee})

    def set_treasuries(self, caller: str, foundation_treasury: str, implementer_treasury: str):
        for value in (foundation_treasury, implementer_treasury):
            if not is_address(value) or value == NULL_ADDRESS:
                raise SchemaError("Treasuries must be non-null ledger addresses")
        with self._transaction():
            self._require_role(TREASURY_ROLE, caller)
            self._conn.execute(
                """
                UPDATE registry_state
                SET foundation_treasury = ?, implementer_treasury = ?
                WHERE id = 1
                """,
                (foundation_treasury, implementer_treasury),
            )
            self._record_event(
                "treasuries_updated",
                caller,
                {"foundation": foundation_treasury, "implementer": implementer_treasury},
            )

    # -- Anchoring -----------------------------------------------------------

    def anchor(
        self,
        caller: str,
        warrant_digest: str,
        attestation_digest: str,
        subject_tag: str,
        controller_did_hash: str,
        assurance: int,
        fee: int,
    ) -> AnchorRecord:
        """
        Anchor a digest pair on behalf of a direct submitter.

        The caller must hold RELAYER_ROLE. A warrant-only anchor passes
        ZERO_DIGEST as ``attestation_digest``.
        """
        args = _normalize_anchor_args(
            warrant_digest, attestation_digest, subject_tag, controller_did_hash, assurance
        )
        _check_amount(fee, "fee")

        with self._transaction():
            self._check_open_and_fee(fee)
            self._require_role(RELAYER_ROLE, caller)
            record = self._append(submitter=caller, executor=caller, fee=fee, **args)

        logger.info(
            "anchor_recorded",
            block_height=record.block_height,
            warrant_digest=record.warrant_digest,
            attestation_digest=record.attestation_digest,
            assurance=int(record.assurance),
        )
        return record

    def anchor_delegated(
        self,
        caller: str,
        warrant_digest: str,
        attestation_digest: str,
        subject_tag: str,
        controller_did_hash: str,
        assurance: int,
        *,
        signer_public_key: Union[PublicKey, str],
        nonce: int,
        deadline: int,
        signature: str,
        fee: int,
    ) -> AnchorRecord:
        """
        Anchor on behalf of a signer who authorised this exact call.

        The signed structure embeds the signer's current nonce, which the
        caller supplies. Any executor may relay it; the signer must hold
        RELAYER_ROLE. Exactly one call per (signer, nonce) can succeed.
        """
        args = _normalize_anchor_args(
            warrant_digest, attestation_digest, subject_tag, controller_did_hash, assurance
        )
        _check_amount(fee, "fee")
        _check_amount(nonce, "nonce")
        _check_amount(deadline, "deadline")
        if isinstance(signer_public_key, str):
            signer_public_key = base64_to_public_key(signer_public_key)

        authorization = AnchorAuthorization(
            warrant_digest=args["warrant_digest"],
            attestation_digest=args["attestation_digest"],
            subject_tag=args["subject_tag"],
            controller_did_hash=args["controller_did_hash"],
            assurance=int(args["assurance"]),
            nonce=nonce,
            deadline=deadline,
        )

        with self._transaction():
            self._check_open_and_fee(fee)

            now = self.clock()
            if now.timestamp() > deadline:
                raise DeadlineExpired(
                    "Delegated anchor deadline has passed",
                    details={"deadline": deadline},
                )

            verify_authorization(self.domain, authorization, signature, signer_public_key)
            signer = address_for_public_key(signer_public_key)
            self._require_role(RELAYER_ROLE, signer)

            current = self._nonce_of(signer)
            if nonce != current:
                raise InvalidNonce(
                    f"Nonce {nonce} does not match signer's current nonce {current}",
                    details={"signer": signer, "expected": current, "provided": nonce},
                )
            self._conn.execute(
                """
                INSERT INTO nonces (address, nonce) VALUES (?, 1)
                ON CONFLICT(address) DO UPDATE SET nonce = nonce + 1
                """,
                (signer,),
            )
            record = self._append(submitter=signer, executor=caller, fee=fee, **args)

        logger.info(
            "delegated_anchor_recorded",
            block_height=record.block_height,
            signer=signer,
            executor=caller,
            nonce=nonce,
        )
        return record

    def _check_open_and_fee(self, fee: int):
        state = self._state()
        if state["paused"]:
            raise LedgerPaused("Ledger is paused")
        base_fee = int(state["base_fee"])
        if fee < base_fee:
            raise InsufficientFee(
                f"Fee {fee} is below the base fee {base_fee}",
                details={"fee": fee, "baseFee": base_fee},
            )

    def _append(
        self,
        *,
        submitter: str,
        executor: str,
        fee: int,
        warrant_digest: str,
        attestation_digest: str,
        subject_tag: str,
        controller_did_hash: str,
        assurance: AssuranceLevel,
    ) -> AnchorRecord:
        """Insert the record, bump totals, credit the treasuries. Caller holds the transaction."""
        timestamp = self.clock()
        stamp = timestamp.astimezone(timezone.utc).isoformat()
        next_height = self._query_one(
            "SELECT COALESCE(MAX(block_height), 0) + 1 AS h FROM anchors"
        )["h"]
        tx_ref = "0x" + hashlib.sha256(
            f"{self.address}:{next_height}:{warrant_digest}:{attestation_digest}:{submitter}:{stamp}".encode("utf-8")
        ).hexdigest()

        cursor = self._conn.execute(
            """
            INSERT INTO anchors (
                warrant_digest, attestation_digest, submitter, executor,
                subject_tag, controller_did_hash, assurance, fee,
                timestamp, tx_ref
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                warrant_digest,
                attestation_digest,
                submitter,
                executor,
                subject_tag,
                controller_did_hash,
                int(assurance),
                str(fee),
                stamp,
                tx_ref,
            ),
        )
        height = cursor.lastrowid

        state = self._state()
        self._conn.execute(
            """
            UPDATE registry_state
            SET total_anchors = total_anchors + 1, total_fees_collected = ?
            WHERE id = 1
            """,
            (str(int(state["total_fees_collected"]) + fee),),
        )

        foundation_share, implementer_share = split_fee(fee)
        self._credit(state["foundation_treasury"], foundation_share)
        self._credit(state["implementer_treasury"], implementer_share)

        return AnchorRecord(
            block_height=height,
            warrant_digest=warrant_digest,
            attestation_digest=attestation_digest,
            submitter=submitter,
            executor=executor,
            subject_tag=subject_tag,
            controller_did_hash=controller_did_hash,
            assurance=assurance,
            fee=fee,
            timestamp=timestamp,
            tx_ref=tx_ref,
        )

    # -- Queries -------------------------------------------------------------

    def is_anchored(self, digest: str) -> bool:
        return self.last_anchor_height(digest) > 0

    def last_anchor_height(self, digest: str) -> int:
        """Height of the latest record containing the digest; 0 if never anchored."""
        digest = normalize_digest(digest)
        if is_zero_digest(digest):
            return 0
        row = self._query_one(
            """
            SELECT COALESCE(MAX(block_height), 0) AS height FROM anchors
            WHERE warrant_digest = ? OR attestation_digest = ?
            """,
            (digest, digest),
        )
        return row["height"]

    def get_record(self, block_height: int) -> Optional[AnchorRecord]:
        row = self._query_one(
            "SELECT * FROM anchors WHERE block_height = ?",
            (block_height,),
        )
        return self._row_to_record(row) if row else None

    def records_for(self, digest: str) -> list[AnchorRecord]:
        """All records containing the digest, oldest first."""
        digest = normalize_digest(digest)
        if is_zero_digest(digest):
            return []
        rows = self._query_all(
            """
            SELECT * FROM anchors
            WHERE warrant_digest = ? OR attestation_digest = ?
            ORDER BY block_height
            """,
            (digest, digest),
        )
        return [self._row_to_record(row) for row in rows]

    def nonce_of(self, address: str) -> int:
        with self._lock:
            return self._nonce_of(address)

    def _nonce_of(self, address: str) -> int:
        row = self._query_one("SELECT nonce FROM nonces WHERE address = ?", (address,))
        return row["nonce"] if row else 0

    # -- Pull payments -------------------------------------------------------

    def balance_of(self, address: str) -> int:
        row = self._query_one("SELECT amount FROM balances WHERE address = ?", (address,))
        return int(row["amount"]) if row else 0

    def _credit(self, address: str, amount: int):
        if amount == 0:
            return
        self._conn.execute(
            """
            INSERT INTO balances (address, amount) VALUES (?, ?)
            ON CONFLICT(address) DO UPDATE SET amount = ?
            """,
            (address, str(amount), str(self.balance_of(address) + amount)),
        )

    def withdraw(self, caller: str, payout: Optional[Callable[[str, int], None]] = None) -> int:
        """
        Pay out the caller's accrued balance.

        ``payout(address, amount)`` performs the actual transfer. If it
        raises, the balance is restored and PayoutFailed is raised.
        """
        with self._transaction():
            amount = self.balance_of(caller)
            if amount == 0:
                raise NoBalance(f"No balance for {caller}")
            self._conn.execute(
                "UPDATE balances SET amount = '0' WHERE address = ?",
                (caller,),
            )
            if payout is not None:
                try:
                    payout(caller, amount)
                except Exception as exc:
                    raise PayoutFailed(f"Payout to {caller} failed: {exc}") from exc
            self._record_event("withdrawal", caller, {"amount": str(amount)})

        logger.info("balance_withdrawn", account=caller, amount=amount)
        return amount

    # -- Events --------------------------------------------------------------

    def _record_event(self, kind: str, account: str, payload: dict):
        self._conn.execute(
            """
            INSERT INTO ledger_events (kind, account, payload, timestamp)
            VALUES (?, ?, ?, ?)
            """,
            (kind, account, json.dumps(payload, sort_keys=True), self.clock().isoformat()),
        )

    def events(self, kind: Optional[str] = None) -> list[dict]:
        if kind is None:
            rows = self._query_all("SELECT * FROM ledger_events ORDER BY id")
        else:
            rows = self._query_all(
                "SELECT * FROM ledger_events WHERE kind = ? ORDER BY id",
                (kind,),
            )
        return [
            {
                "kind": row["kind"],
                "account": row["account"],
                "payload": json.loads(row["payload"]),
                "timestamp": datetime.fromisoformat(row["timestamp"]),
            }
            for row in rows
        ]

    def _row_to_record(self, row) -> AnchorRecord:
        return AnchorRecord(
            block_height=row["block_height"],
            warrant_digest=row["warrant_digest"],
            attestation_digest=row["attestation_digest"],
            submitter=row["submitter"],
            executor=row["executor"],
            subject_tag=row["subject_tag"],
            controller_did_hash=row["controller_did_hash"],
            assurance=AssuranceLevel(row["assurance"]),
            fee=int(row["fee"]),
            timestamp=datetime.fromisoformat(row["timestamp"]),
            tx_ref=row["tx_ref"],
        )


def _check_amount(value: int, name: str):
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise LedgerError(f"{name} must be a non-negative integer")


def _normalize_anchor_args(
    warrant_digest: str,
    attestation_digest: str,
    subject_tag: str,
    controller_did_hash: str,
    assurance: int,
) -> dict:
    if isinstance(assurance, bool) or not isinstance(assurance, int):
        raise InvalidAssurance(f"Assurance must be an integer, got {assurance!r}")
    try:
        level = AssuranceLevel(assurance)
    except ValueError:
        raise InvalidAssurance(f"Assurance {assurance} is not one of 0, 1, 2") from None

    warrant_digest = normalize_digest(warrant_digest)
    if is_zero_digest(warrant_digest):
        raise SchemaError("Warrant digest cannot be zero")

    return {
        "warrant_digest": warrant_digest,
        "attestation_digest": normalize_digest(attestation_digest or ZERO_DIGEST),
        "subject_tag": normalize_digest(subject_tag),
        "controller_did_hash": normalize_digest(controller_did_hash),
        "assurance": level,
    }
