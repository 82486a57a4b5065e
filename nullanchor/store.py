"""
nullanchor - Durable Relayer State

Two append-only tables the relayer needs across restarts:

- warrant index: warrantId -> warrant digest plus the few warrant facts an
  attestation needs later (receipt wallet, jurisdiction, evidence classes,
  audience). No personal data is stored.
- status log: one row per state change of a submission, keyed by both
  document id and digest.

Losing this state never causes double anchoring; the ledger's replay and
nonce protection remain the backstop.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .records import EvidenceClass, Jurisdiction
from .storage import SQLiteStore


@dataclass(frozen=True)
class WarrantEntry:
    warrant_id: str
    digest: str
    enterprise_id: str
    audience: str
    jurisdiction: Jurisdiction
    evidence_requested: tuple[EvidenceClass, ...]
    receipt_wallet: Optional[str]
    block_height: int
    recorded_at: datetime


@dataclass(frozen=True)
class StatusEvent:
    kind: str  # "warrant" | "attestation"
    document_id: str
    digest: str
    outcome: str
    ledger_ref: Optional[int] = None
    token_id: Optional[str] = None
    receipt: Optional[dict] = None
    error: Optional[dict] = None
    recorded_at: Optional[datetime] = None
    related_id: Optional[str] = None  # warrant id of an attestation

    def to_dict(self) -> dict:
        out = {
            "kind": self.kind,
            "id": self.document_id,
            "digest": self.digest,
            "outcome": self.outcome,
            "ledgerRef": self.ledger_ref,
        }
        if self.related_id is not None:
            out["warrantId"] = self.related_id
        if self.token_id is not None:
            out["tokenId"] = self.token_id
        if self.receipt is not None:
            out["receipt"] = self.receipt
        if self.error is not None:
            out["error"] = self.error
        if self.recorded_at is not None:
            out["recordedAt"] = self.recorded_at.isoformat()
        return out


class RelayerStore(SQLiteStore):
    """Warrant index and status log."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS warrant_index (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            warrant_id TEXT NOT NULL,
            digest TEXT NOT NULL,
            enterprise_id TEXT NOT NULL,
            audience TEXT NOT NULL,
            jurisdiction TEXT NOT NULL,
            evidence_requested TEXT NOT NULL,
            receipt_wallet TEXT,
            block_height INTEGER NOT NULL,
            recorded_at TEXT NOT NULL
        );

        CREATE TRIGGER IF NOT EXISTS prevent_index_update
        BEFORE UPDATE ON warrant_index
        BEGIN
            SELECT RAISE(ABORT, 'UPDATE not permitted on append-only warrant index');
        END;

        CREATE TRIGGER IF NOT EXISTS prevent_index_delete
        BEFORE DELETE ON warrant_index
        BEGIN
            SELECT RAISE(ABORT, 'DELETE not permitted on append-only warrant index');
        END;

        CREATE TABLE IF NOT EXISTS status_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL,
            document_id TEXT NOT NULL,
            digest TEXT NOT NULL,
            related_id TEXT,
            outcome TEXT NOT NULL,
            ledger_ref INTEGER,
            token_id TEXT,
            receipt TEXT,
            error TEXT,
            recorded_at TEXT NOT NULL
        );

        CREATE TRIGGER IF NOT EXISTS prevent_status_update
        BEFORE UPDATE ON status_log
        BEGIN
            SELECT RAISE(ABORT, 'UPDATE not permitted on append-only status log');
        END;

        CREATE TRIGGER IF NOT EXISTS prevent_status_delete
        BEFORE DELETE ON status_log
        BEGIN
            SELECT RAISE(ABORT, 'DELETE not permitted on append-only status log');
        END;

        CREATE INDEX IF NOT EXISTS idx_index_warrant ON warrant_index(warrant_id);
        CREATE INDEX IF NOT EXISTS idx_status_document ON status_log(document_id);
        CREATE INDEX IF NOT EXISTS idx_status_digest ON status_log(digest);
    """

    # -- Warrant index -------------------------------------------------------

    def record_warrant(self, entry: WarrantEntry):
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO warrant_index (
                    warrant_id, digest, enterprise_id, audience, jurisdiction,
                    evidence_requested, receipt_wallet, block_height, recorded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.warrant_id,
                    entry.digest,
                    entry.enterprise_id,
                    entry.audience,
                    entry.jurisdiction.value,
                    json.dumps([e.value for e in entry.evidence_requested]),
                    entry.receipt_wallet,
                    entry.block_height,
                    entry.recorded_at.isoformat(),
                ),
            )

    def get_warrant(self, warrant_id: str) -> Optional[WarrantEntry]:
        """Latest indexed warrant with this id."""
        row = self._query_one(
            "SELECT * FROM warrant_index WHERE warrant_id = ? ORDER BY id DESC LIMIT 1",
            (warrant_id,),
        )
        if row is None:
            return None
        return WarrantEntry(
            warrant_id=row["warrant_id"],
            digest=row["digest"],
            enterprise_id=row["enterprise_id"],
            audience=row["audience"],
            jurisdiction=Jurisdiction(row["jurisdiction"]),
            evidence_requested=tuple(EvidenceClass(e) for e in json.loads(row["evidence_requested"])),
            receipt_wallet=row["receipt_wallet"],
            block_height=row["block_height"],
            recorded_at=datetime.fromisoformat(row["recorded_at"]),
        )

    # -- Status log ----------------------------------------------------------

    def append_status(self, event: StatusEvent) -> StatusEvent:
        recorded_at = event.recorded_at or datetime.now(timezone.utc)
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO status_log (
                    kind, document_id, digest, related_id, outcome,
                    ledger_ref, token_id, receipt, error, recorded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.kind,
                    event.document_id,
                    event.digest,
                    event.related_id,
                    event.outcome,
                    event.ledger_ref,
                    event.token_id,
                    json.dumps(event.receipt, sort_keys=True) if event.receipt is not None else None,
                    json.dumps(event.error, sort_keys=True) if event.error is not None else None,
                    recorded_at.isoformat(),
                ),
            )
        return StatusEvent(
            kind=event.kind,
            document_id=event.document_id,
            digest=event.digest,
            outcome=event.outcome,
            ledger_ref=event.ledger_ref,
            token_id=event.token_id,
            receipt=event.receipt,
            error=event.error,
            recorded_at=recorded_at,
            related_id=event.related_id,
        )

    def history(self, key: str) -> list[StatusEvent]:
        """All events for a document id or digest, oldest first."""
        rows = self._query_all(
            "SELECT * FROM status_log WHERE document_id = ? OR digest = ? ORDER BY id",
            (key, key),
        )
        return [_row_to_event(row) for row in rows]

    def latest_status(self, key: str) -> Optional[StatusEvent]:
        events = self.history(key)
        return events[-1] if events else None

    def latest_receipt(self, digest: str) -> Optional[StatusEvent]:
        """Most recent event for an attestation digest that carries a receipt."""
        row = self._query_one(
            """
            SELECT * FROM status_log
            WHERE digest = ? AND receipt IS NOT NULL
            ORDER BY id DESC LIMIT 1
            """,
            (digest,),
        )
        return _row_to_event(row) if row else None


def _row_to_event(row) -> StatusEvent:
    return StatusEvent(
        kind=row["kind"],
        document_id=row["document_id"],
        digest=row["digest"],
        outcome=row["outcome"],
        ledger_ref=row["ledger_ref"],
        token_id=row["token_id"],
        receipt=json.loads(row["receipt"]) if row["receipt"] else None,
        error=json.loads(row["error"]) if row["error"] else None,
        recorded_at=datetime.fromisoformat(row["recorded_at"]),
        related_id=row["related_id"],
    )
