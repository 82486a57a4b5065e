"""
nullanchor - Document Validation Pipeline

Every document moves through fixed stages, cheapest first:

    RECEIVED -> SCHEMA_CHECKED -> TEMPORALLY_VALID -> SIGNATURE_VALID -> ACCEPTED

and is REJECTED with a specific code at the first stage that fails.
Validation is binary and terminal: no stage is retried and no document is
"almost valid".

SPDX-License-Identifier: AGPL-3.0-or-later
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from .canonical import document_digest
from .errors import (
    ExpiredError,
    NotYetValidError,
    NullAnchorError,
    SchemaError,
    TemporalError,
    WarrantNotAnchoredError,
)
from .ledger import AnchorLedger, Clock, utc_now
from .records import Attestation, Receipt, Warrant
from .signatures import KeyEntry, KeyRing
from .store import RelayerStore, WarrantEntry


logger = structlog.get_logger(__name__)

DEFAULT_CLOCK_SKEW_SECONDS = 300


class ValidationStage(str, Enum):
    RECEIVED = "RECEIVED"
    SCHEMA_CHECKED = "SCHEMA_CHECKED"
    TEMPORALLY_VALID = "TEMPORALLY_VALID"
    SIGNATURE_VALID = "SIGNATURE_VALID"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


@dataclass
class ValidationReport:
    """
    Outcome of validating one document.

    ``reached`` is the last stage the document passed; for an accepted
    document it is ACCEPTED.
    """
    accepted: bool
    stage: ValidationStage
    reached: ValidationStage
    code: Optional[str] = None
    message: Optional[str] = None
    digest: Optional[str] = None
    document: Any = None
    signer: Optional[KeyEntry] = None
    warrant: Optional[WarrantEntry] = None


class DocumentValidator:
    """
    Validates warrants, attestations and receipts.

    ``validate_*`` raise the precise error; ``check_*`` never raise for a
    protocol failure and return a ValidationReport instead.
    """

    def __init__(
        self,
        keyring: KeyRing,
        ledger: Optional[AnchorLedger] = None,
        store: Optional[RelayerStore] = None,
        clock: Optional[Clock] = None,
        clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS,
    ):
        self.keyring = keyring
        self.ledger = ledger
        self.store = store
        self.clock = clock or utc_now
        self.clock_skew = timedelta(seconds=clock_skew_seconds)

    # -- Warrants ------------------------------------------------------------

    def validate_warrant(self, document: dict, now: Optional[datetime] = None) -> ValidationReport:
        now = now or self.clock()
        return self._run("warrant", document, Warrant, lambda w: self._warrant_window(w, now))

    def check_warrant(self, document: dict, now: Optional[datetime] = None) -> ValidationReport:
        return self._check(self.validate_warrant, document, now)

    @staticmethod
    def _warrant_window(warrant: Warrant, now: datetime):
        if now < warrant.not_before:
            raise NotYetValidError(
                f"Warrant {warrant.warrant_id} is not valid before {warrant.not_before.isoformat()}"
            )
        if now > warrant.expires_at:
            raise ExpiredError(
                f"Warrant {warrant.warrant_id} expired at {warrant.expires_at.isoformat()}"
            )

    # -- Attestations --------------------------------------------------------

    def validate_attestation(self, document: dict, now: Optional[datetime] = None) -> ValidationReport:
        """
        Validate an attestation, including that the warrant it answers has
        been anchored. Fails closed when no ledger or index is configured.
        """
        now = now or self.clock()
        report = self._run(
            "attestation", document, Attestation, lambda a: self._not_in_future(a, now)
        )
        attestation: Attestation = report.document
        try:
            report.warrant = self._anchored_warrant(attestation)
        except NullAnchorError as exc:
            exc.details.setdefault("stage", ValidationStage.SIGNATURE_VALID.value)
            logger.info("document_rejected", kind="attestation", code=exc.code)
            raise
        return report

    def check_attestation(self, document: dict, now: Optional[datetime] = None) -> ValidationReport:
        return self._check(self.validate_attestation, document, now)

    def _anchored_warrant(self, attestation: Attestation) -> WarrantEntry:
        if self.store is None or self.ledger is None:
            raise WarrantNotAnchoredError("No anchoring ledger configured")
        entry = self.store.get_warrant(attestation.warrant_id)
        if entry is None or not self.ledger.is_anchored(entry.digest):
            raise WarrantNotAnchoredError(
                f"Warrant {attestation.warrant_id} has not been anchored",
                details={"warrantId": attestation.warrant_id},
            )
        if entry.enterprise_id != attestation.enterprise_id:
            raise SchemaError(
                "Attestation enterpriseId does not match the anchored warrant",
                details={"warrantId": attestation.warrant_id},
            )
        return entry

    # -- Receipts ------------------------------------------------------------

    def validate_receipt(self, document: dict, now: Optional[datetime] = None) -> ValidationReport:
        now = now or self.clock()
        return self._run("receipt", document, Receipt, lambda r: self._not_in_future(r, now))

    def check_receipt(self, document: dict, now: Optional[datetime] = None) -> ValidationReport:
        return self._check(self.validate_receipt, document, now)

    def _not_in_future(self, document, now: datetime):
        if document.completed_at > now + self.clock_skew:
            raise TemporalError(
                f"completedAt {document.completed_at.isoformat()} is in the future"
            )

    # -- Pipeline ------------------------------------------------------------

    def _run(
        self,
        kind: str,
        document: dict,
        model,
        temporal_check: Callable[[Any], None],
    ) -> ValidationReport:
        stage = ValidationStage.RECEIVED
        try:
            parsed = model.from_document(document)
            valid, errors = parsed.validate()
            if not valid:
                raise SchemaError(f"{kind} failed structural check: {errors[0]}", details={"errors": errors})
            stage = ValidationStage.SCHEMA_CHECKED

            temporal_check(parsed)
            stage = ValidationStage.TEMPORALLY_VALID

            signer = self.keyring.verify_document(document)
            stage = ValidationStage.SIGNATURE_VALID
        except NullAnchorError as exc:
            exc.details.setdefault("stage", stage.value)
            logger.info("document_rejected", kind=kind, code=exc.code, reached=stage.value)
            raise

        return ValidationReport(
            accepted=True,
            stage=ValidationStage.ACCEPTED,
            reached=ValidationStage.ACCEPTED,
            digest=document_digest(document),
            document=parsed,
            signer=signer,
        )

    @staticmethod
    def _check(validate, document: dict, now: Optional[datetime]) -> ValidationReport:
        try:
            return validate(document, now)
        except NullAnchorError as exc:
            return ValidationReport(
                accepted=False,
                stage=ValidationStage.REJECTED,
                reached=ValidationStage(exc.details.get("stage", ValidationStage.RECEIVED.value)),
                code=exc.code,
                message=exc.message,
            )
