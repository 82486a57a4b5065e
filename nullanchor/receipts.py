"""
nullanchor - Soulbound Receipt Issuer

Mints one non-transferable receipt token per (warrantDigest,
attestationDigest) pair. The token id is derived from the pair, so a
second mint for the same pair collides on the primary key and fails with
AlreadyMinted no matter how many relayers race for it.

Tokens are soulbound by default: transfers and approvals fail closed
until an administrator switches on transfer mode. The switch is global and
only affects calls made after it.

Token rows are never deleted. Burning clears ownership but the id stays
reserved, so a burned receipt can never be minted again.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import structlog

from .canonical import from_hex, is_zero_digest, normalize_digest, to_hex
from .errors import (
    AlreadyMinted,
    ApprovalsDisabled,
    AuthorizationError,
    InvalidEvidence,
    InvalidRecipient,
    MintingDisabled,
    SchemaError,
    TokenNotFound,
    TransfersDisabled,
)
from .ledger import DEFAULT_ADMIN_ROLE, Clock, utc_now
from .records import NULL_ADDRESS, is_address
from .storage import SQLiteStore


logger = structlog.get_logger(__name__)

MINTER_ROLE = "MINTER_ROLE"


def token_id_for(warrant_digest: str, attestation_digest: str) -> str:
    """sha256(warrantDigest || attestationDigest), 0x-hex."""
    return to_hex(hashlib.sha256(from_hex(warrant_digest) + from_hex(attestation_digest)).digest())


@dataclass(frozen=True)
class MintResult:
    token_id: str
    tx_ref: str


@dataclass(frozen=True)
class ReceiptToken:
    token_id: str
    owner: Optional[str]  # None once burned
    receipt_hash: str
    warrant_digest: str
    attestation_digest: str
    original_minter: str
    minted_at: datetime
    tx_ref: str
    burned: bool

    def to_dict(self) -> dict:
        return {
            "tokenId": self.token_id,
            "owner": self.owner,
            "receiptHash": self.receipt_hash,
            "warrantDigest": self.warrant_digest,
            "attestationDigest": self.attestation_digest,
            "mintTimestamp": int(self.minted_at.timestamp()),
            "txRef": self.tx_ref,
            "burned": self.burned,
        }


class ReceiptIssuer(SQLiteStore):
    """Role-gated registry of soulbound receipt tokens."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS tokens (
            token_id TEXT PRIMARY KEY,
            owner TEXT,
            receipt_hash TEXT UNIQUE NOT NULL,
            warrant_digest TEXT NOT NULL,
            attestation_digest TEXT NOT NULL,
            original_minter TEXT NOT NULL,
            minted_at TEXT NOT NULL,
            tx_ref TEXT NOT NULL,
            burned INTEGER NOT NULL DEFAULT 0
        );

        -- Mint facts are immutable; only ownership and the burn flag move
        CREATE TRIGGER IF NOT EXISTS prevent_token_rewrite
        BEFORE UPDATE OF token_id, receipt_hash, warrant_digest,
            attestation_digest, original_minter, minted_at, tx_ref ON tokens
        BEGIN
            SELECT RAISE(ABORT, 'Mint record is append-only');
        END;

        CREATE TRIGGER IF NOT EXISTS prevent_unburn
        BEFORE UPDATE OF burned ON tokens
        WHEN OLD.burned = 1
        BEGIN
            SELECT RAISE(ABORT, 'Burned token is append-only');
        END;

        CREATE TRIGGER IF NOT EXISTS prevent_token_delete
        BEFORE DELETE ON tokens
        BEGIN
            SELECT RAISE(ABORT, 'DELETE not permitted on append-only token table');
        END;

        CREATE TABLE IF NOT EXISTS token_approvals (
            token_id TEXT PRIMARY KEY,
            approved TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS operator_approvals (
            owner TEXT NOT NULL,
            operator TEXT NOT NULL,
            PRIMARY KEY (owner, operator)
        );

        CREATE TABLE IF NOT EXISTS roles (
            role TEXT NOT NULL,
            account TEXT NOT NULL,
            PRIMARY KEY (role, account)
        );

        CREATE TABLE IF NOT EXISTS issuer_state (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            minting_enabled INTEGER NOT NULL DEFAULT 1,
            transfers_enabled INTEGER NOT NULL DEFAULT 0,
            total_minted INTEGER NOT NULL DEFAULT 0,
            total_burned INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_token_owner ON tokens(owner);
    """

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        *,
        admin: str,
        minting_enabled: bool = True,
        clock: Optional[Clock] = None,
    ):
        if not is_address(admin) or admin == NULL_ADDRESS:
            raise SchemaError("admin must be a non-null ledger address")
        self.clock = clock or utc_now
        super().__init__(db_path)

        with self._transaction():
            self._conn.execute(
                "INSERT OR IGNORE INTO issuer_state (id, minting_enabled) VALUES (1, ?)",
                (1 if minting_enabled else 0,),
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO roles (role, account) VALUES (?, ?)",
                (DEFAULT_ADMIN_ROLE, admin),
            )

    def _state(self):
        return self._query_one("SELECT * FROM issuer_state WHERE id = 1")

    @property
    def minting_enabled(self) -> bool:
        return bool(self._state()["minting_enabled"])

    @property
    def transfers_enabled(self) -> bool:
        return bool(self._state()["transfers_enabled"])

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

    def revoke_role(self, caller: str, role: str, account: str):
        with self._transaction():
            self._require_role(DEFAULT_ADMIN_ROLE, caller)
            self._conn.execute(
                "DELETE FROM roles WHERE role = ? AND account = ?",
                (role, account),
            )

    # -- Switches ------------------------------------------------------------

    def set_minting_enabled(self, caller: str, enabled: bool):
        with self._transaction():
            self._require_role(DEFAULT_ADMIN_ROLE, caller)
            self._conn.execute(
                "UPDATE issuer_state SET minting_enabled = ? WHERE id = 1",
                (1 if enabled else 0,),
            )
        logger.info("minting_toggled", enabled=enabled, caller=caller)

    def set_transfers_enabled(self, caller: str, enabled: bool):
        with self._transaction():
            self._require_role(DEFAULT_ADMIN_ROLE, caller)
            self._conn.execute(
                "UPDATE issuer_state SET transfers_enabled = ? WHERE id = 1",
                (1 if enabled else 0,),
            )
        logger.info("transfer_mode_toggled", enabled=enabled, caller=caller)

    # -- Minting -------------------------------------------------------------

    def mint(
        self,
        caller: str,
        recipient: str,
        warrant_digest: str,
        attestation_digest: str,
        evidence_digest: str,
    ) -> MintResult:
        """
        Mint the receipt token for a digest pair to ``recipient``.

        ``evidence_digest`` is the digest of the signed receipt document
        and becomes the token's receipt hash.
        """
        if not is_address(recipient) or recipient == NULL_ADDRESS:
            raise InvalidRecipient(f"Cannot mint to {recipient!r}")
        try:
            receipt_hash = normalize_digest(evidence_digest)
        except SchemaError as exc:
            raise InvalidEvidence(f"Evidence digest is malformed: {exc.message}") from exc
        if is_zero_digest(receipt_hash):
            raise InvalidEvidence("Evidence digest cannot be zero")

        warrant_digest = normalize_digest(warrant_digest)
        attestation_digest = normalize_digest(attestation_digest)
        token_id = token_id_for(warrant_digest, attestation_digest)

        with self._transaction():
            if not self._state()["minting_enabled"]:
                raise MintingDisabled("Receipt minting is disabled")
            self._require_role(MINTER_ROLE, caller)

            if self._row(token_id) is not None:
                raise AlreadyMinted(f"Receipt {token_id} already minted", token_id=token_id)
            if self.is_receipt_minted(receipt_hash):
                raise AlreadyMinted(
                    f"Receipt hash {receipt_hash} already minted", token_id=token_id
                )

            minted_at = self.clock()
            tx_ref = to_hex(hashlib.sha256(
                f"mint:{token_id}:{recipient}:{minted_at.isoformat()}".encode("utf-8")
            ).digest())
            self._conn.execute(
                """
                INSERT INTO tokens (
                    token_id, owner, receipt_hash, warrant_digest,
                    attestation_digest, original_minter, minted_at, tx_ref
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    token_id,
                    recipient,
                    receipt_hash,
                    warrant_digest,
                    attestation_digest,
                    caller,
                    minted_at.isoformat(),
                    tx_ref,
                ),
            )
            self._conn.execute(
                "UPDATE issuer_state SET total_minted = total_minted + 1 WHERE id = 1"
            )

        logger.info("receipt_minted", token_id=token_id, tx_ref=tx_ref)
        return MintResult(token_id=token_id, tx_ref=tx_ref)

    def burn(self, caller: str, token_id: str):
        with self._transaction():
            self._require_role(DEFAULT_ADMIN_ROLE, caller)
            self._live_row(token_id)
            self._conn.execute(
                "UPDATE tokens SET owner = NULL, burned = 1 WHERE token_id = ?",
                (token_id,),
            )
            self._conn.execute("DELETE FROM token_approvals WHERE token_id = ?", (token_id,))
            self._conn.execute(
                "UPDATE issuer_state SET total_burned = total_burned + 1 WHERE id = 1"
            )
        logger.info("receipt_burned", token_id=token_id)

    # -- Soulbound surface ---------------------------------------------------

    def transfer_from(self, caller: str, from_address: str, to_address: str, token_id: str):
        with self._transaction():
            if not self._state()["transfers_enabled"]:
                raise TransfersDisabled("Receipt tokens are soulbound")
            row = self._live_row(token_id)
            owner = row["owner"]
            if from_address != owner:
                raise AuthorizationError(from_address, "OWNER")
            if not self._may_move(caller, owner, token_id):
                raise AuthorizationError(caller, "OWNER_OR_APPROVED")
            if not is_address(to_address) or to_address == NULL_ADDRESS:
                raise InvalidRecipient(f"Cannot transfer to {to_address!r}")
            self._conn.execute(
                "UPDATE tokens SET owner = ? WHERE token_id = ?",
                (to_address, token_id),
            )
            self._conn.execute("DELETE FROM token_approvals WHERE token_id = ?", (token_id,))

    def approve(self, caller: str, approved: str, token_id: str):
        with self._transaction():
            if not self._state()["transfers_enabled"]:
                raise ApprovalsDisabled("Receipt tokens cannot be approved for transfer")
            row = self._live_row(token_id)
            if not self._may_move(caller, row["owner"], token_id):
                raise AuthorizationError(caller, "OWNER")
            self._conn.execute(
                """
                INSERT INTO token_approvals (token_id, approved) VALUES (?, ?)
                ON CONFLICT(token_id) DO UPDATE SET approved = excluded.approved
                """,
                (token_id, approved),
            )

    def set_approval_for_all(self, caller: str, operator: str, approved: bool):
        with self._transaction():
            if not self._state()["transfers_enabled"]:
                raise ApprovalsDisabled("Receipt tokens cannot be approved for transfer")
            if approved:
                self._conn.execute(
                    "INSERT OR IGNORE INTO operator_approvals (owner, operator) VALUES (?, ?)",
                    (caller, operator),
                )
            else:
                self._conn.execute(
                    "DELETE FROM operator_approvals WHERE owner = ? AND operator = ?",
                    (caller, operator),
                )

    def _may_move(self, caller: str, owner: str, token_id: str) -> bool:
        if caller == owner:
            return True
        if self._query_one(
            "SELECT 1 FROM token_approvals WHERE token_id = ? AND approved = ?",
            (token_id, caller),
        ):
            return True
        return self._query_one(
            "SELECT 1 FROM operator_approvals WHERE owner = ? AND operator = ?",
            (owner, caller),
        ) is not None

    # -- Reads ---------------------------------------------------------------

    def _row(self, token_id: str):
        return self._query_one("SELECT * FROM tokens WHERE token_id = ?", (token_id,))

    def _live_row(self, token_id: str):
        row = self._row(token_id)
        if row is None or row["burned"]:
            raise TokenNotFound(f"No receipt token {token_id}")
        return row

    def exists(self, token_id: str) -> bool:
        row = self._row(token_id)
        return row is not None and not row["burned"]

    def get_token(self, token_id: str) -> ReceiptToken:
        row = self._live_row(token_id)
        return _row_to_token(row)

    def owner_of(self, token_id: str) -> str:
        return self._live_row(token_id)["owner"]

    def receipt_hash(self, token_id: str) -> str:
        return self._live_row(token_id)["receipt_hash"]

    def mint_timestamp(self, token_id: str) -> datetime:
        return datetime.fromisoformat(self._live_row(token_id)["minted_at"])

    def original_minter(self, token_id: str) -> str:
        return self._live_row(token_id)["original_minter"]

    def is_receipt_minted(self, receipt_hash: str) -> bool:
        row = self._query_one(
            "SELECT 1 FROM tokens WHERE receipt_hash = ?",
            (normalize_digest(receipt_hash),),
        )
        return row is not None

    def token_for_pair(self, warrant_digest: str, attestation_digest: str) -> Optional[ReceiptToken]:
        row = self._row(token_id_for(warrant_digest, attestation_digest))
        return _row_to_token(row) if row else None

    def balance_of(self, owner: str) -> int:
        row = self._query_one(
            "SELECT COUNT(*) AS n FROM tokens WHERE owner = ? AND burned = 0",
            (owner,),
        )
        return row["n"]

    @property
    def total_minted(self) -> int:
        return self._state()["total_minted"]

    @property
    def total_burned(self) -> int:
        return self._state()["total_burned"]

    def total_supply(self) -> int:
        state = self._state()
        return state["total_minted"] - state["total_burned"]


def _row_to_token(row) -> ReceiptToken:
    return ReceiptToken(
        token_id=row["token_id"],
        owner=row["owner"],
        receipt_hash=row["receipt_hash"],
        warrant_digest=row["warrant_digest"],
        attestation_digest=row["attestation_digest"],
        original_minter=row["original_minter"],
        minted_at=datetime.fromisoformat(row["minted_at"]),
        tx_ref=row["tx_ref"],
        burned=bool(row["burned"]),
    )
