"""Typed query building for list endpoints.

Filters, sort keys and numeric comparisons are whitelisted per entity;
anything else is rejected before a statement is built.
"""

import operator
import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import Select, func

from errors import BadRequestError
from models import Account, AccountType, Transaction, TransactionType
from money import to_cents


@dataclass(frozen=True)
class Scope:
    """Owner restriction for a service call; ``owner_id=None`` is unrestricted."""

    owner_id: Optional[int] = None

    @property
    def unrestricted(self) -> bool:
        return self.owner_id is None

    @classmethod
    def owner(cls, user_id: int) -> "Scope":
        return cls(owner_id=user_id)

    @classmethod
    def all(cls) -> "Scope":
        return cls(owner_id=None)


def apply_scope(stmt: Select, model, scope: Scope) -> Select:
    if scope.unrestricted:
        return stmt
    return stmt.where(model.user_id == scope.owner_id)


class NumericOperator(str, Enum):
    gt = ">"
    gte = ">="
    lt = "<"
    lte = "<="
    eq = "="
    ne = "!="


_OPERATORS: dict[NumericOperator, Callable] = {
    NumericOperator.gt: operator.gt,
    NumericOperator.gte: operator.ge,
    NumericOperator.lt: operator.lt,
    NumericOperator.lte: operator.le,
    NumericOperator.eq: operator.eq,
    NumericOperator.ne: operator.ne,
}

_NUMERIC_RE = re.compile(r"^\s*([a-zA-Z_]+)\s*(>=|<=|!=|>|<|=)\s*(-?[0-9]+(?:\.[0-9]+)?)\s*$")


@dataclass(frozen=True)
class NumericFilter:
    field: str
    operator: NumericOperator
    value_cents: int

    def clause(self, column):
        return _OPERATORS[self.operator](column, self.value_cents)


def parse_numeric_filters(raw: Optional[str], allowed: set[str]) -> list[NumericFilter]:
    if not raw:
        return []
    parsed: list[NumericFilter] = []
    for item in raw.split(","):
        if not item.strip():
            continue
        match = _NUMERIC_RE.match(item)
        if not match:
            raise BadRequestError(f"Invalid numeric filter: {item.strip()}")
        name, op, value = match.groups()
        if name not in allowed:
            raise BadRequestError(f"Numeric filter not allowed on field: {name}")
        parsed.append(NumericFilter(name, NumericOperator(op), to_cents(value)))
    return parsed


@dataclass(frozen=True)
class SortKey:
    field: str
    descending: bool = False


def parse_sort(
    raw: Optional[str], allowed: set[str], default: tuple[SortKey, ...]
) -> tuple[SortKey, ...]:
    if not raw:
        return default
    keys: list[SortKey] = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        descending = item.startswith("-")
        name = item.lstrip("-")
        if name not in allowed:
            raise BadRequestError(f"Cannot sort by field: {name}")
        keys.append(SortKey(name, descending))
    return tuple(keys) or default


@dataclass(frozen=True)
class Page:
    page: int = 1
    limit: int = 10

    MAX_LIMIT = 100

    @classmethod
    def for_scope(
        cls, scope: Scope, page: Optional[int] = None, limit: Optional[int] = None
    ) -> "Page":
        default_limit = 50 if scope.unrestricted else 10
        page = max(page or 1, 1)
        limit = min(max(limit or default_limit, 1), cls.MAX_LIMIT)
        return cls(page=page, limit=limit)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


TRANSACTION_SORT_COLUMNS = {
    "date": Transaction.date,
    "amount": Transaction.amount_cents,
    "type": Transaction.type,
    "description": Transaction.description,
    "createdAt": Transaction.created_at,
}

ACCOUNT_SORT_COLUMNS = {
    "name": Account.name,
    "balance": Account.balance_cents,
    "type": Account.type,
    "createdAt": Account.created_at,
}


def _order(stmt: Select, keys: tuple[SortKey, ...], columns: dict) -> Select:
    for key in keys:
        column = columns[key.field]
        stmt = stmt.order_by(column.desc() if key.descending else column.asc())
    return stmt


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    description: Optional[str] = None
    start: Optional[date] = None
    end: Optional[date] = None
    numeric: list[NumericFilter] = field(default_factory=list)
    sort: tuple[SortKey, ...] = (SortKey("date", descending=True),)

    NUMERIC_FIELDS = {"amount"}

    def apply(self, stmt: Select) -> Select:
        if self.type:
            stmt = stmt.where(Transaction.type == self.type)
        if self.category_id:
            stmt = stmt.where(Transaction.category_id == self.category_id)
        if self.account_id:
            stmt = stmt.where(Transaction.account_id == self.account_id)
        if self.description:
            like = f"%{self.description.lower()}%"
            stmt = stmt.where(func.lower(Transaction.description).like(like))
        if self.start:
            stmt = stmt.where(Transaction.date >= self.start)
        if self.end:
            stmt = stmt.where(Transaction.date <= self.end)
        for item in self.numeric:
            stmt = stmt.where(item.clause(Transaction.amount_cents))
        return stmt

    def order(self, stmt: Select) -> Select:
        return _order(stmt, self.sort, TRANSACTION_SORT_COLUMNS).order_by(
            Transaction.id.desc()
        )


@dataclass
class AccountFilters:
    type: Optional[AccountType] = None
    name: Optional[str] = None
    numeric: list[NumericFilter] = field(default_factory=list)
    sort: tuple[SortKey, ...] = (SortKey("createdAt", descending=True),)

    NUMERIC_FIELDS = {"balance"}

    def apply(self, stmt: Select) -> Select:
        if self.type:
            stmt = stmt.where(Account.type == self.type)
        if self.name:
            like = f"%{self.name.lower()}%"
            stmt = stmt.where(
                func.lower(Account.name).like(like)
                | func.lower(func.coalesce(Account.description, "")).like(like)
            )
        for item in self.numeric:
            stmt = stmt.where(item.clause(Account.balance_cents))
        return stmt

    def order(self, stmt: Select) -> Select:
        return _order(stmt, self.sort, ACCOUNT_SORT_COLUMNS).order_by(
            Account.id.desc()
        )
