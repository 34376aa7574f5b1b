"""M-Pesa Reconciliation Service."""

__version__ = "0.1.0"
