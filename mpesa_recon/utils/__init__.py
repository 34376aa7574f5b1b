"""Utility functions shared across services."""

from mpesa_recon.utils.helpers import (
    format_utc_datetime,
    local_date,
    local_day_bounds,
    local_timestamp,
    local_today,
    utcnow,
)
from mpesa_recon.utils.pagination import PaginatedResult, PaginationParams, paginate_query
from mpesa_recon.utils.phone import is_valid_phone, normalize_phone

__all__ = [
    "PaginatedResult",
    "PaginationParams",
    "format_utc_datetime",
    "is_valid_phone",
    "local_date",
    "local_day_bounds",
    "local_timestamp",
    "local_today",
    "normalize_phone",
    "paginate_query",
    "utcnow",
]
