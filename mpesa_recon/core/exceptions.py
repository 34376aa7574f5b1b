"""M-Pesa Reconciliation Service - Custom exceptions."""

from typing import Any


class MpesaReconError(Exception):
    """Base exception for all service errors."""

    error_code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(MpesaReconError):
    """Input validation failed."""

    error_code = "VALIDATION_ERROR"
    status_code = 400


class TransactionNotFound(MpesaReconError):
    """Referenced transaction does not exist."""

    error_code = "TRANSACTION_NOT_FOUND"
    status_code = 404


class InvalidStateError(MpesaReconError):
    """Operation not allowed for the transaction's current state."""

    error_code = "INVALID_STATE"
    status_code = 409


class InvalidStateTransition(InvalidStateError):
    """Store rejected a write that would break a lifecycle invariant."""

    error_code = "INVALID_STATE_TRANSITION"


class DuplicateReceiptError(InvalidStateTransition):
    """M-Pesa receipt is already recorded on another transaction."""

    error_code = "DUPLICATE_RECEIPT"


class AlreadySyncedError(InvalidStateError):
    """Transaction has already been posted to SAP."""

    error_code = "ALREADY_SYNCED"

    def __init__(self, transaction_id: int, sap_reference: str | None = None) -> None:
        details: dict[str, Any] = {"transaction_id": transaction_id}
        if sap_reference:
            details["sap_reference"] = sap_reference
        super().__init__("Transaction already synced with SAP", details)


class GatewayError(MpesaReconError):
    """M-Pesa gateway returned an error or could not be reached."""

    error_code = "GATEWAY_ERROR"
    status_code = 502

    def __init__(
        self, message: str, kind: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        self.kind = kind
        details = dict(details or {})
        if kind:
            details["kind"] = kind
        super().__init__(message, details)


class LedgerError(GatewayError):
    """SAP returned an error or could not be reached."""

    error_code = "LEDGER_ERROR"


class MalformedCallback(MpesaReconError):
    """Inbound webhook did not match the expected envelope."""

    error_code = "MALFORMED_CALLBACK"
    status_code = 400
