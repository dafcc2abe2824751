"""Read-only aggregation over live transactions.

Amounts are summed as integer cents and converted to ``Decimal`` on the way
out. Period buckets are derived in Python so day/week/month/year keys are the
same on every database backend.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from errors import BadRequestError
from filters import Scope, apply_scope
from models import Category, Transaction, TransactionType
from money import from_cents, quantize
from periods import Granularity, period_key, resolve_range, trailing_months
from soft_delete import live

MIN_TREND_MONTHS = 1
MAX_TREND_MONTHS = 24


class ReportService:
    def __init__(self, session: Session, scope: Scope) -> None:
        self.session = session
        self.scope = scope

    def _transactions(self, *columns):
        stmt = live(select(*columns), Transaction)
        return apply_scope(stmt, Transaction, self.scope)

    def spending_by_category(
        self, start: Union[str, date, None], end: Union[str, date, None]
    ) -> dict[str, Any]:
        period = resolve_range(start, end)
        total = func.coalesce(func.sum(Transaction.amount_cents), 0).label("total")
        stmt = (
            self._transactions(
                Category.id,
                Category.name,
                Category.icon,
                Category.color,
                total,
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.type == TransactionType.expense,
                Transaction.date >= period.start,
                Transaction.date <= period.end,
            )
            .group_by(Category.id, Category.name, Category.icon, Category.color)
            .order_by(total.desc(), Category.name)
        )
        rows = self.session.execute(stmt).all()

        data = [
            {
                "category_id": row.id,
                "category_name": row.name,
                "category_icon": row.icon,
                "category_color": row.color,
                "total_amount": from_cents(int(row.total)),
            }
            for row in rows
        ]
        total_cents = sum(int(row.total) for row in rows)
        return {
            "type": "spending_by_category",
            "period": {"startDate": period.start, "endDate": period.end},
            "data": data,
            "summary": {
                "total_spending": from_cents(total_cents),
                "categories_count": len(data),
            },
        }

    def income_vs_expenses(
        self,
        start: Union[str, date, None],
        end: Union[str, date, None],
        granularity: Union[Granularity, str] = Granularity.month,
    ) -> dict[str, Any]:
        period = resolve_range(start, end)
        try:
            granularity = Granularity(granularity)
        except ValueError as exc:
            raise BadRequestError(
                "Invalid groupBy, expected one of day, week, month, year"
            ) from exc

        stmt = self._transactions(
            Transaction.date, Transaction.type, Transaction.amount_cents
        ).where(Transaction.date >= period.start, Transaction.date <= period.end)

        # (period, type) -> [sum, count]
        by_type: dict[tuple[str, TransactionType], list[int]] = defaultdict(
            lambda: [0, 0]
        )
        for row in self.session.execute(stmt):
            bucket = by_type[(period_key(row.date, granularity), row.type)]
            bucket[0] += row.amount_cents
            bucket[1] += 1

        periods: dict[str, dict[str, int]] = {}
        for (key, txn_type), (cents, count) in by_type.items():
            totals = periods.setdefault(
                key,
                {"income": 0, "income_count": 0, "expense": 0, "expense_count": 0},
            )
            totals[txn_type.value] = cents
            totals[f"{txn_type.value}_count"] = count

        data = []
        for key in sorted(periods):
            totals = periods[key]
            data.append(
                {
                    "period": key,
                    "income": from_cents(totals["income"]),
                    "income_count": totals["income_count"],
                    "expense": from_cents(totals["expense"]),
                    "expense_count": totals["expense_count"],
                    "balance": from_cents(totals["income"] - totals["expense"]),
                }
            )

        income = sum(t["income"] for t in periods.values())
        expense = sum(t["expense"] for t in periods.values())
        return {
            "type": "income_vs_expenses",
            "period": {
                "startDate": period.start,
                "endDate": period.end,
                "groupBy": granularity.value,
            },
            "data": data,
            "summary": {
                "total_income": from_cents(income),
                "total_expense": from_cents(expense),
                "balance": from_cents(income - expense),
                "period_count": len(data),
            },
        }

    def monthly_trend(
        self, months: int = 6, *, today: Optional[date] = None
    ) -> dict[str, Any]:
        if not MIN_TREND_MONTHS <= months <= MAX_TREND_MONTHS:
            raise BadRequestError(
                f"Months must be between {MIN_TREND_MONTHS} and {MAX_TREND_MONTHS}"
            )
        window = trailing_months(months, today=today)
        stmt = self._transactions(Transaction.date, Transaction.amount_cents).where(
            Transaction.type == TransactionType.expense,
            Transaction.date >= window.start,
            Transaction.date <= window.end,
        )

        buckets: dict[str, list[int]] = defaultdict(lambda: [0, 0])
        for row in self.session.execute(stmt):
            bucket = buckets[period_key(row.date, Granularity.month)]
            bucket[0] += row.amount_cents
            bucket[1] += 1

        data = [
            {
                "month": key,
                "total_amount": from_cents(buckets[key][0]),
                "transaction_count": buckets[key][1],
            }
            for key in sorted(buckets)
        ]
        if data:
            total = sum(cents for cents, _ in buckets.values())
            average = quantize(Decimal(total) / 100 / len(data))
        else:
            average = Decimal("0.00")
        return {
            "type": "monthly_trend",
            "period": {
                "months": months,
                "startDate": window.start,
                "endDate": window.end,
            },
            "data": data,
            "summary": {"average_spending": average, "months_count": len(data)},
        }
