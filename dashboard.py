"""Dashboard aggregation: balance, month-over-month metrics, trend series,
category breakdowns and recent activity for one user.

Every query is scoped by ``user_id`` and opens its own session, so the
calculators can run as independent asyncio tasks and be cancelled without
holding on to a connection.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from sqlalchemy import BigInteger, and_, extract, func, select, type_coerce
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import joinedload

from amounts import (
    AMOUNT_SPLIT,
    ZERO,
    amount_from_parts,
    format_amount,
    percent_change,
    round_percentage,
    share_percentage,
)
from models import Category, Transaction, TransactionType
from periods import Period, month_key, month_period, trailing_months, utc_now
from schemas import (
    BalanceOut,
    Breakdown,
    CategoryBreakdownItem,
    CategorySummary,
    ChartData,
    ChartPoint,
    DashboardSnapshot,
    MonthlyMetrics,
    RecentTransaction,
)

logger = logging.getLogger(__name__)

CHART_MONTHS = 6
RECENT_TRANSACTIONS_LIMIT = 10
UNKNOWN_CATEGORY_NAME = "Unknown"
UNKNOWN_CATEGORY_COLOR = "#000000"


@dataclass(frozen=True)
class CategoryTotal:
    category_id: uuid.UUID
    name: Optional[str]
    color: Optional[str]
    total: Decimal


def amount_sums() -> tuple:
    """SUM() of ``Transaction.amount`` split into high and low unit counts.

    Each part stays far below the int64 limit for any realistic ledger; the
    exact total is rebuilt with ``amounts.amount_from_parts``.
    """
    units = type_coerce(Transaction.amount, BigInteger)
    return (
        func.sum(units // AMOUNT_SPLIT).label("total_high"),
        func.sum(units % AMOUNT_SPLIT).label("total_low"),
    )


def within(period: Period):
    # Half-open so sub-second timestamps in the last second still count.
    return and_(
        Transaction.date >= period.start,
        Transaction.date < period.end + timedelta(seconds=1),
    )


class DashboardRepository:
    """Read-only aggregate queries over a user's ledger."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def totals_by_type(
        self, user_id: uuid.UUID, period: Optional[Period] = None
    ) -> dict[TransactionType, Decimal]:
        stmt = (
            select(Transaction.type, *amount_sums())
            .where(Transaction.user_id == user_id)
            .group_by(Transaction.type)
        )
        if period is not None:
            stmt = stmt.where(within(period))
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()
        totals = {txn_type: ZERO for txn_type in TransactionType}
        for row in rows:
            totals[TransactionType(row.type)] = amount_from_parts(
                row.total_high, row.total_low
            )
        return totals

    async def monthly_totals(
        self, user_id: uuid.UUID, period: Period
    ) -> dict[tuple[str, TransactionType], Decimal]:
        year = extract("year", Transaction.date).label("year")
        month = extract("month", Transaction.date).label("month")
        stmt = (
            select(year, month, Transaction.type, *amount_sums())
            .where(Transaction.user_id == user_id, within(period))
            .group_by(year, month, Transaction.type)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()
        totals: dict[tuple[str, TransactionType], Decimal] = {}
        for row in rows:
            key = f"{int(row.year):04d}-{int(row.month):02d}"
            totals[(key, TransactionType(row.type))] = amount_from_parts(
                row.total_high, row.total_low
            )
        return totals

    async def totals_by_category(
        self, user_id: uuid.UUID, transaction_type: TransactionType
    ) -> list[CategoryTotal]:
        stmt = (
            select(
                Transaction.category_id,
                Category.name,
                Category.color,
                *amount_sums(),
            )
            .select_from(Transaction)
            .outerjoin(
                Category,
                and_(
                    Category.id == Transaction.category_id,
                    Category.user_id == user_id,
                ),
            )
            .where(
                Transaction.user_id == user_id,
                Transaction.type == transaction_type,
            )
            .group_by(Transaction.category_id, Category.name, Category.color)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()
        totals = [
            CategoryTotal(
                category_id=row.category_id,
                name=row.name,
                color=row.color,
                total=amount_from_parts(row.total_high, row.total_low),
            )
            for row in rows
        ]
        totals.sort(key=lambda item: (-item.total, item.category_id))
        return totals

    async def recent_transactions(
        self, user_id: uuid.UUID, limit: int
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            return list((await session.scalars(stmt)).all())


async def gather_or_cancel(*aws: Awaitable):
    """Await all awaitables concurrently; the first failure cancels the rest."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class DashboardService:
    def __init__(
        self,
        repository: DashboardRepository,
        *,
        clock: Callable[[], datetime] = utc_now,
        recent_limit: int = RECENT_TRANSACTIONS_LIMIT,
    ) -> None:
        self.repository = repository
        self.clock = clock
        self.recent_limit = recent_limit

    async def balance(self, user_id: uuid.UUID) -> BalanceOut:
        totals = await self.repository.totals_by_type(user_id)
        total = totals[TransactionType.income] - totals[TransactionType.expense]
        return BalanceOut(total=format_amount(total))

    async def monthly_metrics(self, user_id: uuid.UUID, now: datetime) -> MonthlyMetrics:
        current, previous = await gather_or_cancel(
            self.repository.totals_by_type(user_id, month_period(now)),
            self.repository.totals_by_type(user_id, month_period(now, -1)),
        )
        income = current[TransactionType.income]
        expenses = current[TransactionType.expense]
        prev_income = previous[TransactionType.income]
        prev_expenses = previous[TransactionType.expense]
        savings = income - expenses
        prev_savings = prev_income - prev_expenses
        return MonthlyMetrics(
            income=format_amount(income),
            expenses=format_amount(expenses),
            savings=format_amount(savings),
            income_change=round_percentage(percent_change(income, prev_income)),
            expenses_change=round_percentage(percent_change(expenses, prev_expenses)),
            savings_change=round_percentage(percent_change(savings, prev_savings)),
        )

    async def chart_data(self, user_id: uuid.UUID, now: datetime) -> list[ChartPoint]:
        months = trailing_months(now, CHART_MONTHS)
        series = {month_key(m): {"income": "0", "expenses": "0"} for m in months}
        window = Period("chart", months[0], month_period(now).end)

        totals = await self.repository.monthly_totals(user_id, window)
        for (key, txn_type), total in totals.items():
            point = series.get(key)
            if point is None:
                continue
            field = "income" if txn_type == TransactionType.income else "expenses"
            point[field] = format_amount(total)

        return [
            ChartPoint(month=key, income=point["income"], expenses=point["expenses"])
            for key, point in series.items()
        ]

    async def category_breakdown(
        self, user_id: uuid.UUID, transaction_type: TransactionType
    ) -> list[CategoryBreakdownItem]:
        rows = await self.repository.totals_by_category(user_id, transaction_type)
        grand_total = sum((row.total for row in rows), ZERO)
        return [
            CategoryBreakdownItem(
                category_id=row.category_id,
                category_name=row.name or UNKNOWN_CATEGORY_NAME,
                category_color=row.color or UNKNOWN_CATEGORY_COLOR,
                total=format_amount(row.total),
                percentage=round_percentage(share_percentage(row.total, grand_total)),
            )
            for row in rows
        ]

    async def recent_transactions(
        self, user_id: uuid.UUID, limit: Optional[int] = None
    ) -> list[RecentTransaction]:
        txns = await self.repository.recent_transactions(
            user_id, self.recent_limit if limit is None else limit
        )
        return [
            RecentTransaction(
                id=txn.id,
                amount=format_amount(txn.amount),
                description=txn.description,
                type=txn.type,
                date=txn.date,
                category=(
                    CategorySummary.model_validate(txn.category)
                    if txn.category
                    else None
                ),
            )
            for txn in txns
        ]

    async def get_dashboard(self, user_id: uuid.UUID) -> DashboardSnapshot:
        started = time.perf_counter()
        now = self.clock()
        (
            balance,
            monthly,
            chart,
            income_breakdown,
            expense_breakdown,
            recent,
        ) = await gather_or_cancel(
            self.balance(user_id),
            self.monthly_metrics(user_id, now),
            self.chart_data(user_id, now),
            self.category_breakdown(user_id, TransactionType.income),
            self.category_breakdown(user_id, TransactionType.expense),
            self.recent_transactions(user_id),
        )
        snapshot = DashboardSnapshot(
            balance=balance,
            monthly=monthly,
            chart=ChartData(last_six_months=chart),
            breakdown=Breakdown(
                income_by_category=income_breakdown,
                expenses_by_category=expense_breakdown,
            ),
            recent_transactions=recent,
        )
        logger.info(
            f"dashboard_built: user_id={user_id} "
            f"duration={time.perf_counter() - started:.3f}s"
        )
        return snapshot
