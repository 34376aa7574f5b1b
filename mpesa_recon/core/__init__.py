"""Core module - configuration and exceptions."""

from mpesa_recon.core.config import Settings, get_settings
from mpesa_recon.core.exceptions import (
    AlreadySyncedError,
    DuplicateReceiptError,
    GatewayError,
    InvalidStateError,
    InvalidStateTransition,
    LedgerError,
    MalformedCallback,
    MpesaReconError,
    TransactionNotFound,
    ValidationError,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Exceptions
    "MpesaReconError",
    "ValidationError",
    "TransactionNotFound",
    "InvalidStateError",
    "InvalidStateTransition",
    "DuplicateReceiptError",
    "AlreadySyncedError",
    "GatewayError",
    "LedgerError",
    "MalformedCallback",
]
