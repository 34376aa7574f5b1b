"""Pagination utility functions."""

import math
from dataclasses import dataclass
from typing import Generic, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

T = TypeVar("T")


@dataclass
class PaginationParams:
    """Pagination parameters."""

    page: int = 1
    page_size: int = 20

    @property
    def offset(self) -> int:
        """Calculate offset for SQL query."""
        return (self.page - 1) * self.page_size


@dataclass
class PaginatedResult(Generic[T]):
    """Paginated result container."""

    items: list[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total > 0 else 1


async def paginate_query(
    db: AsyncSession,
    query: Select,
    params: PaginationParams,
) -> PaginatedResult[T]:
    """Run a select with offset/limit and a separate count.

    Args:
        db: Database session
        query: SQLAlchemy select query, already ordered
        params: Pagination parameters

    Returns:
        PaginatedResult with the requested page and the unpaginated total
    """
    count_result = await db.execute(select(func.count()).select_from(query.subquery()))
    total = count_result.scalar() or 0

    result = await db.execute(query.offset(params.offset).limit(params.page_size))
    items = list(result.scalars().all())

    return PaginatedResult(items=items, total=total, page=params.page, page_size=params.page_size)
