"""
nullanchor - Error Taxonomy

Every rejection raised by the core carries a stable machine-readable code.
Only TransientInfraError (and its subclasses) is retryable; everything else
is terminal and reported to the caller as-is.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

from typing import Any, Optional


class NullAnchorError(Exception):
    """Base exception for all protocol errors."""

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Structured {code, message} form returned to callers."""
        return {"code": self.code, "message": self.message}


# -- Validation --------------------------------------------------------------

class ValidationError(NullAnchorError):
    """Document failed structural or temporal checks."""
    code = "VALIDATION_ERROR"
    status_code = 400


class SchemaError(ValidationError):
    code = "SCHEMA_INVALID"


class TemporalError(ValidationError):
    code = "TEMPORAL_INVALID"


class NotYetValidError(TemporalError):
    code = "NOT_YET_VALID"


class ExpiredError(TemporalError):
    code = "WARRANT_EXPIRED"


class WarrantNotAnchoredError(ValidationError):
    """Attestation references a warrant that has not been anchored."""
    code = "WARRANT_NOT_ANCHORED"
    status_code = 409


# -- Signatures --------------------------------------------------------------

class SignatureError(NullAnchorError):
    """Signature did not verify. Always terminal."""
    code = "SIGNATURE_INVALID"
    status_code = 401


class UnsupportedAlgorithmError(SignatureError):
    code = "UNSUPPORTED_ALGORITHM"


class UnknownKeyError(SignatureError):
    code = "UNKNOWN_KEY"


# -- Replay ------------------------------------------------------------------

class ReplayError(NullAnchorError):
    """Something was already anchored or minted."""
    code = "REPLAY_DETECTED"
    status_code = 409


class DuplicateSubmission(ReplayError):
    code = "DUPLICATE_SUBMISSION"


class InvalidNonce(ReplayError):
    code = "INVALID_NONCE"


class AlreadyMinted(ReplayError):
    code = "ALREADY_MINTED"

    def __init__(self, message: str, token_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.token_id = token_id


# -- Authorization -----------------------------------------------------------

class AuthorizationError(NullAnchorError):
    code = "UNAUTHORIZED"
    status_code = 403

    def __init__(self, account: str, role: str):
        super().__init__(
            f"Account {account} is missing role {role}",
            details={"account": account, "role": role},
        )
        self.account = account
        self.role = role


# -- Ledger ------------------------------------------------------------------

class LedgerError(NullAnchorError):
    """Ledger rejected the call. Terminal."""
    code = "LEDGER_REJECTED"
    status_code = 422


class InvalidAssurance(LedgerError):
    code = "INVALID_ASSURANCE"


class InsufficientFee(LedgerError):
    code = "INSUFFICIENT_FEE"
    status_code = 402


class LedgerPaused(LedgerError):
    code = "LEDGER_PAUSED"
    status_code = 503


class DeadlineExpired(LedgerError):
    code = "DEADLINE_EXPIRED"


class NoBalance(LedgerError):
    code = "NO_BALANCE"


class PayoutFailed(LedgerError):
    code = "PAYOUT_FAILED"


class AppendOnlyViolation(LedgerError):
    """Raised when the store refuses an UPDATE or DELETE."""
    code = "APPEND_ONLY_VIOLATION"
    status_code = 500


# -- Receipts ----------------------------------------------------------------

class ReceiptError(NullAnchorError):
    code = "RECEIPT_ERROR"
    status_code = 422


class MintingDisabled(ReceiptError):
    code = "MINTING_DISABLED"
    status_code = 503


class InvalidRecipient(ReceiptError):
    code = "INVALID_RECIPIENT"


class InvalidEvidence(ReceiptError):
    code = "INVALID_EVIDENCE"


class TokenNotFound(ReceiptError):
    code = "TOKEN_NOT_FOUND"
    status_code = 404


class TransfersDisabled(ReceiptError):
    code = "TRANSFERS_DISABLED"
    status_code = 403


class ApprovalsDisabled(ReceiptError):
    code = "APPROVALS_DISABLED"
    status_code = 403


# -- Lookup / infrastructure -------------------------------------------------

class NotFoundError(NullAnchorError):
    code = "NOT_FOUND"
    status_code = 404


class TransientInfraError(NullAnchorError):
    """Ledger or network hiccup. The relayer retries these."""
    code = "LEDGER_UNAVAILABLE"
    status_code = 503
    retryable = True


class ConfirmationTimeout(TransientInfraError):
    code = "CONFIRMATION_TIMEOUT"
    status_code = 202
