"""
nullanchor - Relayer Orchestration Pipeline

Per request:

    Validate -> ComputeDigest -> CheckReplay -> Anchor -> (deleted) MintReceipt -> Respond

The relayer is the only layer that retries, and it retries only
TransientInfraError. Before every retry it checks the ledger again, so a
transaction that landed after a timeout is never anchored twice.

Waiting for the ledger is bounded by a confirmation timeout. A timeout
never cancels a submitted call: its eventual outcome is still observed, and
for a deleted attestation the receipt is minted once it lands.

A failed mint never rolls back an anchor. The anchor is the durable proof;
the receipt is reported as pending.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from functools import partial, reduce
from typing import Callable, Iterator, Optional, Union

import structlog
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .canonical import ZERO_DIGEST, document_digest
from .errors import (
    AlreadyMinted,
    ConfirmationTimeout,
    DuplicateSubmission,
    NotFoundError,
    NullAnchorError,
    SchemaError,
    TransientInfraError,
)
from .ledger import AnchorLedger, AnchorRecord, Clock, utc_now
from .receipts import ReceiptIssuer, token_id_for
from .records import (
    AssuranceLevel,
    Attestation,
    AttestationStatus,
    Receipt,
    Warrant,
)
from .signatures import (
    KeyRing,
    PrivateKey,
    address_for_public_key,
    algorithm_for_key,
    controller_did_hash,
    derive_subject_tag,
    sign_document,
)
from .store import RelayerStore, StatusEvent, WarrantEntry
from .validator import DocumentValidator


logger = structlog.get_logger(__name__)


class Outcome(str, Enum):
    ANCHORED = "anchored"
    RECEIPTED = "receipted"
    RECEIPT_PENDING = "receipt_pending"
    PENDING_CONFIRMATION = "pending_confirmation"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


@dataclass
class SubmissionResult:
    """What the relayer tells the submitter."""
    outcome: Outcome
    digest: Optional[str] = None
    ledger_ref: Optional[int] = None
    receipt: Optional[dict] = None
    token_id: Optional[str] = None
    error: Optional[NullAnchorError] = None

    def to_response(self) -> dict:
        response = {
            "outcome": self.outcome.value,
            "digest": self.digest,
            "ledgerRef": self.ledger_ref,
        }
        if self.receipt is not None:
            response["receipt"] = self.receipt
        if self.token_id is not None:
            response["tokenId"] = self.token_id
        if self.error is not None:
            response["error"] = self.error.to_dict()
        return response


class Relayer:
    """
    Accepts warrants and attestations, anchors their digests and issues
    receipts.

    ``signing_key`` is the relayer's own key: it signs receipts, and its
    ledger address is the identity the relayer anchors and mints as.
    """

    def __init__(
        self,
        ledger: AnchorLedger,
        issuer: ReceiptIssuer,
        store: RelayerStore,
        keyring: KeyRing,
        signing_key: PrivateKey,
        *,
        controller_secret: Union[str, bytes],
        key_id: str = "relayer",
        address: Optional[str] = None,
        fee: Optional[int] = None,
        default_recipient: Optional[str] = None,
        mint_receipts: bool = True,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 8.0,
        confirmation_timeout: Optional[float] = 30.0,
        clock_skew_seconds: int = 300,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], None] = time.sleep,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.ledger = ledger
        self.issuer = issuer
        self.store = store
        self.keyring = keyring
        self.signing_key = signing_key
        self.key_id = key_id
        self.address = address or address_for_public_key(signing_key.public_key())
        self.controller_secret = controller_secret
        self.fee = fee
        self.default_recipient = default_recipient
        self.mint_receipts = mint_receipts
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.confirmation_timeout = confirmation_timeout
        self.clock = clock or utc_now
        self._sleep = sleep
        self._executor = executor or ThreadPoolExecutor(
            max_workers=8, thread_name_prefix="nullanchor-ledger"
        )

        if key_id not in keyring:
            keyring.register(key_id, signing_key.public_key(), algorithm_for_key(signing_key))

        self.validator = DocumentValidator(
            keyring,
            ledger=ledger,
            store=store,
            clock=self.clock,
            clock_skew_seconds=clock_skew_seconds,
        )

        self._digest_locks: dict[str, list] = {}  # digest -> [lock, holders and waiters]
        self._digest_locks_guard = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        ledger: AnchorLedger,
        issuer: ReceiptIssuer,
        keyring: KeyRing,
        signing_key: PrivateKey,
        store: Optional[RelayerStore] = None,
        **overrides,
    ) -> "Relayer":
        """Build a relayer from RelayerSettings."""
        options = dict(
            controller_secret=settings.controller_secret.get_secret_value(),
            key_id=settings.relayer_key_id,
            address=settings.relayer_address,
            default_recipient=settings.default_receipt_recipient,
            mint_receipts=settings.sbt_minting_enabled,
            max_attempts=settings.anchor_max_attempts,
            backoff_seconds=settings.anchor_backoff_seconds,
            backoff_max_seconds=settings.anchor_backoff_max_seconds,
            confirmation_timeout=settings.confirmation_timeout_seconds,
            clock_skew_seconds=settings.clock_skew_seconds,
        )
        options.update(overrides)
        return cls(
            ledger,
            issuer,
            store or RelayerStore(settings.database_path),
            keyring,
            signing_key,
            **options,
        )

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)

    # -- Warrants ------------------------------------------------------------

    def submit_warrant(self, document: dict) -> SubmissionResult:
        document_id = _document_id(document, "warrantId")
        with structlog.contextvars.bound_contextvars(kind="warrant", document_id=document_id):
            try:
                report = self.validator.validate_warrant(document)
            except NullAnchorError as exc:
                return self._rejected("warrant", document_id, None, exc)

            warrant: Warrant = report.document
            digest = report.digest
            subject_tag = derive_subject_tag(
                self.controller_secret,
                warrant.subject.subject_handle,
                warrant.subject_context,
            )
            assurance = AssuranceLevel.for_evidence(warrant.evidence_requested)
            anchor_call = partial(
                self.ledger.anchor,
                self.address,
                digest,
                ZERO_DIGEST,
                subject_tag,
                controller_did_hash(warrant.audience),
                int(assurance),
            )

            future = self._executor.submit(self._anchor_task, digest, ZERO_DIGEST, anchor_call)
            finish = partial(self._finish_warrant, warrant, digest)
            return self._await(future, "warrant", warrant.warrant_id, digest, finish)

    def _finish_warrant(self, warrant: Warrant, digest: str, future: Future) -> SubmissionResult:
        try:
            record, fresh = future.result()
        except NullAnchorError as exc:
            return self._rejected("warrant", warrant.warrant_id, digest, exc)

        if not fresh:
            error = DuplicateSubmission(
                f"Warrant {warrant.warrant_id} is already anchored",
                details={"digest": digest, "ledgerRef": record.block_height},
            )
            self._record("warrant", warrant.warrant_id, digest, Outcome.DUPLICATE, record, error=error)
            logger.info("duplicate_submission", digest=digest, ledger_ref=record.block_height)
            return SubmissionResult(
                outcome=Outcome.DUPLICATE,
                digest=digest,
                ledger_ref=record.block_height,
                error=error,
            )

        self.store.record_warrant(WarrantEntry(
            warrant_id=warrant.warrant_id,
            digest=digest,
            enterprise_id=warrant.enterprise_id,
            audience=warrant.audience,
            jurisdiction=warrant.jurisdiction,
            evidence_requested=tuple(warrant.evidence_requested),
            receipt_wallet=warrant.return_channels.subject_receipt_wallet,
            block_height=record.block_height,
            recorded_at=self.clock(),
        ))
        self._record("warrant", warrant.warrant_id, digest, Outcome.ANCHORED, record)
        logger.info("warrant_anchored", digest=digest, ledger_ref=record.block_height)
        return SubmissionResult(outcome=Outcome.ANCHORED, digest=digest, ledger_ref=record.block_height)

    # -- Attestations --------------------------------------------------------

    def submit_attestation(self, document: dict) -> SubmissionResult:
        document_id = _document_id(document, "attestationId")
        with structlog.contextvars.bound_contextvars(kind="attestation", document_id=document_id):
            try:
                report = self.validator.validate_attestation(document)
                attestation: Attestation = report.document
                entry: WarrantEntry = report.warrant
                subject_tag = self._attestation_subject_tag(attestation, entry)
            except NullAnchorError as exc:
                return self._rejected("attestation", document_id, None, exc, related_id=_document_id(document, "warrantId"))

            digest = report.digest
            anchor_call = partial(
                self.ledger.anchor,
                self.address,
                entry.digest,
                digest,
                subject_tag,
                controller_did_hash(entry.audience),
                int(AssuranceLevel.for_evidence(list(entry.evidence_requested))),
            )

            future = self._executor.submit(self._anchor_task, entry.digest, digest, anchor_call)
            finish = partial(self._finish_attestation, attestation, entry, digest)
            return self._await(future, "attestation", attestation.attestation_id, digest, finish)

    def _attestation_subject_tag(self, attestation: Attestation, entry: WarrantEntry) -> str:
        """Tag for the attested subject; must equal the tag anchored with the warrant."""
        tag = derive_subject_tag(
            self.controller_secret,
            attestation.subject_handle,
            f"{attestation.enterprise_id}:{attestation.warrant_id}",
        )
        anchored = [r for r in self.ledger.records_for(entry.digest) if r.warrant_digest == entry.digest]
        if anchored and anchored[0].subject_tag != tag:
            raise SchemaError(
                "Attestation subjectHandle does not match the anchored warrant",
                details={"warrantId": attestation.warrant_id},
            )
        return tag

    def _finish_attestation(
        self,
        attestation: Attestation,
        entry: WarrantEntry,
        digest: str,
        future: Future,
    ) -> SubmissionResult:
        doc_id = attestation.attestation_id
        try:
            record, fresh = future.result()
        except NullAnchorError as exc:
            return self._rejected("attestation", doc_id, digest, exc, related_id=entry.warrant_id)

        if not fresh:
            existing = self.issuer.token_for_pair(entry.digest, digest)
            stored = self.store.latest_receipt(digest)
            if existing is not None or attestation.status != AttestationStatus.DELETED:
                logger.info("duplicate_submission", digest=digest, ledger_ref=record.block_height)
                result = SubmissionResult(
                    outcome=Outcome.DUPLICATE,
                    digest=digest,
                    ledger_ref=record.block_height,
                    receipt=stored.receipt if stored else None,
                    token_id=existing.token_id if existing else None,
                )
                self._record("attestation", doc_id, digest, Outcome.DUPLICATE, record,
                             related_id=entry.warrant_id, token_id=result.token_id)
                return result
            # anchored earlier but the receipt never landed
            logger.info("receipt_retry", digest=digest, ledger_ref=record.block_height)
        else:
            logger.info("attestation_anchored", digest=digest, ledger_ref=record.block_height)

        if attestation.status != AttestationStatus.DELETED:
            self._record("attestation", doc_id, digest, Outcome.ANCHORED, record, related_id=entry.warrant_id)
            return SubmissionResult(outcome=Outcome.ANCHORED, digest=digest, ledger_ref=record.block_height)

        receipt = self._build_receipt(attestation, entry, digest, record)
        if not self.mint_receipts:
            self._record("attestation", doc_id, digest, Outcome.ANCHORED, record,
                         related_id=entry.warrant_id, receipt=receipt)
            return SubmissionResult(
                outcome=Outcome.ANCHORED, digest=digest, ledger_ref=record.block_height, receipt=receipt
            )
        return self._mint(attestation, entry, digest, record, receipt)

    # -- Receipts ------------------------------------------------------------

    def _build_receipt(
        self,
        attestation: Attestation,
        entry: WarrantEntry,
        digest: str,
        record: AnchorRecord,
    ) -> dict:
        """Signed receipt document. Deterministic in its unsigned form."""
        token_id = token_id_for(entry.digest, digest)
        receipt = Receipt(
            receipt_id=token_id,
            warrant_hash=entry.digest,
            attestation_hash=digest,
            subject_handle=attestation.subject_handle,
            completed_at=attestation.completed_at,
            evidence_hash=attestation.evidence_hash,
            controller_did_hash=controller_did_hash(entry.audience),
            jurisdiction_bits=entry.jurisdiction.bit,
            evidence_class_bits=reduce(lambda bits, e: bits | e.bit, entry.evidence_requested, 0),
            timestamp=int(record.timestamp.timestamp()),
        )
        return sign_document(
            receipt.to_document(),
            self.key_id,
            self.signing_key,
            algorithm_for_key(self.signing_key),
        )

    def _mint(
        self,
        attestation: Attestation,
        entry: WarrantEntry,
        digest: str,
        record: AnchorRecord,
        receipt: dict,
    ) -> SubmissionResult:
        doc_id = attestation.attestation_id
        recipient = entry.receipt_wallet or self.default_recipient or self.address
        try:
            minted = self.issuer.mint(self.address, recipient, entry.digest, digest, document_digest(receipt))
        except AlreadyMinted as exc:
            logger.info("receipt_already_minted", token_id=exc.token_id)
            self._record("attestation", doc_id, digest, Outcome.DUPLICATE, record,
                         related_id=entry.warrant_id, receipt=receipt, token_id=exc.token_id)
            return SubmissionResult(
                outcome=Outcome.DUPLICATE,
                digest=digest,
                ledger_ref=record.block_height,
                receipt=receipt,
                token_id=exc.token_id,
            )
        except NullAnchorError as exc:
            logger.warning("receipt_pending", digest=digest, code=exc.code)
            self._record("attestation", doc_id, digest, Outcome.RECEIPT_PENDING, record,
                         related_id=entry.warrant_id, error=exc)
            return SubmissionResult(
                outcome=Outcome.RECEIPT_PENDING,
                digest=digest,
                ledger_ref=record.block_height,
                error=exc,
            )

        self._record("attestation", doc_id, digest, Outcome.RECEIPTED, record,
                     related_id=entry.warrant_id, receipt=receipt, token_id=minted.token_id)
        return SubmissionResult(
            outcome=Outcome.RECEIPTED,
            digest=digest,
            ledger_ref=record.block_height,
            receipt=receipt,
            token_id=minted.token_id,
        )

    # -- Anchoring -----------------------------------------------------------

    @contextmanager
    def _digest_lock(self, digest: str) -> Iterator[None]:
        """Serialize submissions per digest; the entry lives only while held or awaited."""
        with self._digest_locks_guard:
            entry = self._digest_locks.setdefault(digest, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._digest_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._digest_locks[digest]

    def _find_anchor(self, warrant_digest: str, attestation_digest: str) -> Optional[AnchorRecord]:
        key = warrant_digest if attestation_digest == ZERO_DIGEST else attestation_digest
        if not self.ledger.is_anchored(key):
            return None
        for record in reversed(self.ledger.records_for(key)):
            if record.warrant_digest == warrant_digest and record.attestation_digest == attestation_digest:
                return record
        return None

    def _retrying(self, digest: str) -> Retrying:
        return Retrying(
            retry=retry_if_exception_type(TransientInfraError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_max_seconds),
            sleep=self._sleep,
            before_sleep=lambda state: logger.warning(
                "anchor_retry",
                digest=digest,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()),
            ),
            reraise=True,
        )

    def _anchor_task(
        self,
        warrant_digest: str,
        attestation_digest: str,
        anchor_call: Callable[[int], AnchorRecord],
    ) -> tuple[AnchorRecord, bool]:
        """
        Replay check plus anchor with retries. Runs on the ledger executor.

        Returns (record, fresh); ``fresh`` is False when the pair was
        already anchored before this submission.
        """
        key = warrant_digest if attestation_digest == ZERO_DIGEST else attestation_digest
        with self._digest_lock(key):
            existing = self._find_anchor(warrant_digest, attestation_digest)
            if existing is not None:
                return existing, False

            attempt = 0

            def submit() -> AnchorRecord:
                nonlocal attempt
                attempt += 1
                if attempt > 1:
                    landed = self._find_anchor(warrant_digest, attestation_digest)
                    if landed is not None:
                        logger.info("anchor_landed_late", digest=key, attempt=attempt)
                        return landed
                fee = self.fee if self.fee is not None else self.ledger.base_fee
                return anchor_call(fee)

            return self._retrying(key)(submit), True

    def _await(
        self,
        future: Future,
        kind: str,
        document_id: str,
        digest: str,
        finish: Callable[[Future], SubmissionResult],
    ) -> SubmissionResult:
        done, _ = wait_for_futures([future], timeout=self.confirmation_timeout)
        if not done:
            error = ConfirmationTimeout(
                f"Ledger did not confirm {kind} within {self.confirmation_timeout}s",
                details={"digest": digest},
            )
            self.store.append_status(StatusEvent(
                kind=kind,
                document_id=document_id,
                digest=digest,
                outcome=Outcome.PENDING_CONFIRMATION.value,
                error=error.to_dict(),
                recorded_at=self.clock(),
            ))
            logger.warning("confirmation_timeout", digest=digest, timeout=self.confirmation_timeout)
            future.add_done_callback(partial(self._late_confirmation, finish, digest))
            return SubmissionResult(outcome=Outcome.PENDING_CONFIRMATION, digest=digest, error=error)
        return finish(future)

    def _late_confirmation(self, finish: Callable[[Future], SubmissionResult], digest: str, future: Future):
        try:
            result = finish(future)
        except Exception:
            logger.exception("late_confirmation_failed", digest=digest)
            return
        logger.info("late_confirmation", digest=digest, outcome=result.outcome.value)

    # -- Status --------------------------------------------------------------

    def get_status(self, key: str) -> dict:
        """Latest state and history for a warrant id, attestation id or digest."""
        history = self.store.history(key)
        if not history:
            raise NotFoundError(f"No submission known for {key}")
        latest = history[-1]
        status = latest.to_dict()
        status["anchored"] = self.ledger.is_anchored(latest.digest) if latest.digest else False
        status["lastAnchorHeight"] = self.ledger.last_anchor_height(latest.digest) if latest.digest else 0
        status["history"] = [
            {"outcome": event.outcome, "recordedAt": event.recorded_at.isoformat()}
            for event in history
        ]
        return status

    # -- Bookkeeping ---------------------------------------------------------

    def _record(
        self,
        kind: str,
        document_id: str,
        digest: str,
        outcome: Outcome,
        record: Optional[AnchorRecord],
        *,
        related_id: Optional[str] = None,
        receipt: Optional[dict] = None,
        token_id: Optional[str] = None,
        error: Optional[NullAnchorError] = None,
    ):
        self.store.append_status(StatusEvent(
            kind=kind,
            document_id=document_id,
            digest=digest,
            outcome=outcome.value,
            ledger_ref=record.block_height if record else None,
            token_id=token_id,
            receipt=receipt,
            error=error.to_dict() if error else None,
            recorded_at=self.clock(),
            related_id=related_id,
        ))

    def _rejected(
        self,
        kind: str,
        document_id: Optional[str],
        digest: Optional[str],
        error: NullAnchorError,
        related_id: Optional[str] = None,
    ) -> SubmissionResult:
        logger.info("submission_rejected", code=error.code, digest=digest)
        if document_id is not None:
            self._record(kind, document_id, digest or "", Outcome.REJECTED, None,
                         related_id=related_id, error=error)
        return SubmissionResult(outcome=Outcome.REJECTED, digest=digest, error=error)


def _document_id(document, key: str) -> Optional[str]:
    if isinstance(document, dict) and isinstance(document.get(key), str):
        return document[key]
    return None
