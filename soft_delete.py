"""Tombstone policy shared by every entity table.

Records are never physically removed: they carry ``is_deleted`` and
``deleted_at``. Reads go through :func:`live` (or :func:`deleted_only`) so the
filter is visible at every call site instead of hidden in a query hook.
"""

from datetime import datetime
from typing import Optional, TypeVar

from sqlalchemy import Boolean, DateTime, Select
from sqlalchemy.orm import Mapped, mapped_column

from errors import AlreadyDeletedError, NotDeletedError

S = TypeVar("S", bound=Select)


class SoftDeleteMixin:
    is_deleted: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, index=True
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


def live(stmt: S, model: type[SoftDeleteMixin], *, include_deleted: bool = False) -> S:
    if include_deleted:
        return stmt
    return stmt.where(model.is_deleted.is_(False))


def deleted_only(stmt: S, model: type[SoftDeleteMixin]) -> S:
    return stmt.where(model.is_deleted.is_(True))


def mark_deleted(record: SoftDeleteMixin, label: str) -> None:
    if record.is_deleted:
        raise AlreadyDeletedError(f"{label} is already deleted")
    record.is_deleted = True
    record.deleted_at = datetime.utcnow()


def mark_restored(record: SoftDeleteMixin, label: str) -> None:
    if not record.is_deleted:
        raise NotDeletedError(f"{label} is not deleted")
    record.is_deleted = False
    record.deleted_at = None
