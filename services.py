from __future__ import annotations

import logging
import math
import statistics
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from sqlalchemy import extract, func, or_, select, update
from sqlalchemy.orm import Session

from alerts import AlertEngine
from config import get_settings
from csv_utils import export_transactions, parse_csv
from database import atomic
from errors import ConflictError, NotFoundError, StorageError, ValidationError
from locks import bucket_locks
from models import (
    Alert,
    AlertState,
    Budget,
    BudgetStatus,
    Category,
    Transaction,
    TransactionType,
)
from money import from_cents, to_cents
from periods import (
    add_months,
    bucket_for,
    local_now,
    local_today,
    month_bounds,
    month_end,
    month_start,
    range_bounds,
    to_local_naive,
)
from schemas import (
    BudgetIn,
    BudgetPatch,
    TransactionIn,
    TransactionPatch,
    parse_payload,
)

logger = logging.getLogger(__name__)

BucketKey = tuple[str, Category, int, int]

BUCKET_FIELDS = ("amount_cents", "category", "occurred_at", "type")


def expense_bucket(
    user_id: str,
    txn_type: TransactionType,
    category: Category,
    occurred_at: datetime,
) -> Optional[BucketKey]:
    if txn_type != TransactionType.expense:
        return None
    year, month = bucket_for(occurred_at)
    return (user_id, category, year, month)


def spent_for_bucket(
    session: Session, user_id: str, category: Category, year: int, month: int
) -> int:
    start, end = month_bounds(year, month)
    return int(
        session.execute(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.user_id == user_id,
                Transaction.category == category,
                Transaction.type == TransactionType.expense,
                Transaction.occurred_at >= start,
                Transaction.occurred_at < end,
            )
        ).scalar_one()
        or 0
    )


def refresh_buckets(session: Session, keys: Iterable[BucketKey]) -> list[Alert]:
    """Recompute and evaluate each bucket; caller holds the locks and commits."""
    alerts: list[Alert] = []
    for user_id, category, year, month in sorted(set(keys), key=repr):
        alerts.extend(
            BudgetService(session, user_id).refresh_bucket(category, month, year)
        )
    return alerts


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category: Optional[Category] = None
    start: Optional[Union[date, datetime]] = None
    end: Optional[Union[date, datetime]] = None
    query: Optional[str] = None


@dataclass
class Page:
    items: list[Transaction]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


@dataclass(frozen=True)
class LedgerTotal:
    total_cents: int
    count: int

    @property
    def total(self) -> Decimal:
        return from_cents(self.total_cents)


@dataclass(frozen=True)
class CategoryTotal:
    category: Category
    total_cents: int
    count: int

    @property
    def total(self) -> Decimal:
        return from_cents(self.total_cents)


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def record(self, payload: Union[TransactionIn, Mapping[str, Any]]) -> Transaction:
        data = parse_payload(TransactionIn, payload)
        occurred_at = (
            to_local_naive(data.occurred_at) if data.occurred_at else local_now()
        )
        txn = Transaction(
            user_id=self.user_id,
            type=data.type,
            category=data.category,
            amount_cents=to_cents(data.amount),
            occurred_at=occurred_at,
            payment_method=data.payment_method,
            description=data.description,
            tags=data.tags,
            notes=data.notes,
            is_recurring=data.is_recurring,
            recurring_period=data.recurring_period,
        )
        key = expense_bucket(self.user_id, txn.type, txn.category, txn.occurred_at)
        keys = [key] if key else []
        with bucket_locks.hold(*keys), atomic(self.session):
            self.session.add(txn)
            self.session.flush()
            refresh_buckets(self.session, keys)
        self.session.refresh(txn)
        logger.debug(f"ledger_record: id={txn.id} user={self.user_id}")
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.id == transaction_id,
            )
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def _reload(self, txn: Transaction) -> Optional[BucketKey]:
        """Re-read the row under the bucket lock and return its current bucket."""
        current = self.session.scalar(
            select(Transaction)
            .where(Transaction.id == txn.id)
            .execution_options(populate_existing=True)
        )
        if current is None:
            raise NotFoundError("Transaction not found")
        return expense_bucket(
            self.user_id, current.type, current.category, current.occurred_at
        )

    def amend(
        self,
        transaction_id: int,
        patch: Union[TransactionPatch, Mapping[str, Any]],
    ) -> Transaction:
        data = parse_payload(TransactionPatch, patch)
        changes = data.model_dump(exclude_unset=True)
        if "occurred_at" in changes:
            changes["occurred_at"] = to_local_naive(changes["occurred_at"])
        if "amount" in changes:
            changes["amount_cents"] = to_cents(changes.pop("amount"))

        txn = self.get(transaction_id)
        old_key = expense_bucket(
            self.user_id, txn.type, txn.category, txn.occurred_at
        )

        is_recurring = changes.get("is_recurring", txn.is_recurring)
        recurring_period = changes.get("recurring_period", txn.recurring_period)
        if is_recurring and recurring_period is None:
            raise ValidationError(
                "recurring_period is required for recurring transactions",
                fields={"recurring_period": "required when is_recurring"},
            )
        if not is_recurring:
            changes["recurring_period"] = None

        new_key = expense_bucket(
            self.user_id,
            changes.get("type", txn.type),
            changes.get("category", txn.category),
            changes.get("occurred_at", txn.occurred_at),
        )
        keys: set[BucketKey] = set()
        if any(name in changes for name in BUCKET_FIELDS):
            keys = {k for k in (old_key, new_key) if k is not None}

        with bucket_locks.hold(*keys), atomic(self.session):
            if self._reload(txn) != old_key:
                raise ConflictError("Transaction changed concurrently; retry the edit")
            for name, value in changes.items():
                setattr(txn, name, value)
            self.session.flush()
            refresh_buckets(self.session, keys)
        self.session.refresh(txn)
        return txn

    def retract(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        key = expense_bucket(self.user_id, txn.type, txn.category, txn.occurred_at)
        keys = [key] if key else []
        with bucket_locks.hold(*keys), atomic(self.session):
            if self._reload(txn) != key:
                raise ConflictError(
                    "Transaction changed concurrently; retry the removal"
                )
            self.session.delete(txn)
            self.session.flush()
            refresh_buckets(self.session, keys)
        logger.debug(f"ledger_retract: id={transaction_id} user={self.user_id}")

    def _filtered(self, stmt, filters: TransactionFilters):
        stmt = stmt.where(Transaction.user_id == self.user_id)
        lower, upper = range_bounds(filters.start, filters.end)
        if lower is not None:
            stmt = stmt.where(Transaction.occurred_at >= lower)
        if upper is not None:
            stmt = stmt.where(Transaction.occurred_at < upper)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Transaction.description).like(like),
                    func.lower(func.coalesce(Transaction.notes, "")).like(like),
                )
            )
        return stmt

    def query(
        self,
        filters: Optional[TransactionFilters] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Page:
        filters = filters or TransactionFilters()
        max_size = get_settings().page_size_max
        if page < 1:
            raise ValidationError("page must be >= 1", fields={"page": "must be >= 1"})
        if page_size < 1 or page_size > max_size:
            raise ValidationError(
                f"page_size must be between 1 and {max_size}",
                fields={"page_size": f"must be between 1 and {max_size}"},
            )
        total = int(
            self.session.execute(
                self._filtered(select(func.count(Transaction.id)), filters)
            ).scalar_one()
            or 0
        )
        stmt = (
            self._filtered(select(Transaction), filters)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        items = list(self.session.scalars(stmt).all())
        return Page(items=items, total=total, page=page, page_size=page_size)

    def recent(self, limit: int = 10) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def sum_by_date_range(
        self,
        start: Union[date, datetime],
        end: Union[date, datetime],
        txn_type: TransactionType = TransactionType.expense,
    ) -> LedgerTotal:
        lower, upper = range_bounds(start, end)
        row = self.session.execute(
            select(
                func.coalesce(func.sum(Transaction.amount_cents), 0),
                func.count(Transaction.id),
            ).where(
                Transaction.user_id == self.user_id,
                Transaction.type == txn_type,
                Transaction.occurred_at >= lower,
                Transaction.occurred_at < upper,
            )
        ).one()
        return LedgerTotal(total_cents=int(row[0] or 0), count=int(row[1] or 0))

    def sum_by_category(
        self, start: Union[date, datetime], end: Union[date, datetime]
    ) -> list[CategoryTotal]:
        lower, upper = range_bounds(start, end)
        rows = self.session.execute(
            select(
                Transaction.category,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.occurred_at >= lower,
                Transaction.occurred_at < upper,
            )
            .group_by(Transaction.category)
        ).all()
        totals = [
            CategoryTotal(
                category=row.category,
                total_cents=int(row.total or 0),
                count=int(row.count or 0),
            )
            for row in rows
        ]
        totals.sort(key=lambda t: (-t.total_cents, t.category.value))
        return totals


class BudgetService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _load(
        self, category: Category, month: int, year: int
    ) -> Optional[Budget]:
        return self.session.scalar(
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.category == category,
                Budget.year == year,
                Budget.month == month,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    def _load_by_id(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget)
            .where(Budget.user_id == self.user_id, Budget.id == budget_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not budget:
            raise NotFoundError("Budget not found")
        return budget

    def _recompute_row(self, budget: Budget) -> int:
        previous = budget.spent_cents or 0
        budget.spent_cents = spent_for_bucket(
            self.session, budget.user_id, budget.category, budget.year, budget.month
        )
        budget.last_computed_at = datetime.utcnow()
        self.session.flush()
        return previous

    def refresh_bucket(
        self, category: Category, month: int, year: int
    ) -> list[Alert]:
        """Recompute one bucket and fire any due alerts.

        Runs inside the caller's unit of work with the bucket lock held. A
        bucket without a budget row has nothing to update.
        """
        budget = self._load(category, month, year)
        if budget is None:
            return []
        previous = self._recompute_row(budget)
        return AlertEngine(self.session).evaluate_and_apply(budget, previous)

    def recompute(
        self, category: Union[Category, str], month: int, year: int
    ) -> Optional[Budget]:
        category = Category(category)
        with bucket_locks.hold((self.user_id, category, year, month)), atomic(
            self.session
        ):
            self.refresh_bucket(category, month, year)
        return self._load(category, month, year)

    def set_limit(self, payload: Union[BudgetIn, Mapping[str, Any]]) -> Budget:
        data = parse_payload(BudgetIn, payload)
        today = local_today()
        month = data.month or today.month
        year = data.year or today.year
        limit_cents = to_cents(data.limit)
        key = (self.user_id, data.category, year, month)

        with bucket_locks.hold(key), atomic(self.session):
            budget = self._load(data.category, month, year)
            if budget is not None:
                previous_limit = budget.limit_cents
                budget.limit_cents = limit_cents
                if data.alert_threshold is not None:
                    budget.alert_threshold = data.alert_threshold
                if data.notes is not None:
                    budget.notes = data.notes
                budget.alert_state = AlertState.normal
            else:
                previous_limit = limit_cents
                budget = Budget(
                    user_id=self.user_id,
                    category=data.category,
                    year=year,
                    month=month,
                    limit_cents=limit_cents,
                    spent_cents=0,
                    alert_threshold=(
                        data.alert_threshold or get_settings().default_alert_threshold
                    ),
                    alert_state=AlertState.normal,
                    notes=data.notes,
                )
                self.session.add(budget)
                self.session.flush()
            previous_spent = self._recompute_row(budget)
            AlertEngine(self.session).evaluate_and_apply(
                budget, previous_spent, previous_limit_cents=previous_limit
            )
        self.session.refresh(budget)
        logger.info(
            f"budget_set: budget_id={budget.id} user={self.user_id} "
            f"category={budget.category.value} period={year}-{month:02d} "
            f"limit_cents={budget.limit_cents}"
        )
        return budget

    def get(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id, Budget.id == budget_id
            )
        )
        if not budget:
            raise NotFoundError("Budget not found")
        return budget

    def update(
        self, budget_id: int, payload: Union[BudgetPatch, Mapping[str, Any]]
    ) -> Budget:
        data = parse_payload(BudgetPatch, payload)
        budget = self.get(budget_id)
        with bucket_locks.hold(budget.bucket), atomic(self.session):
            budget = self._load_by_id(budget_id)
            previous_limit = budget.limit_cents
            contract_changed = False
            if data.limit is not None:
                budget.limit_cents = to_cents(data.limit)
                contract_changed = True
            if data.alert_threshold is not None:
                budget.alert_threshold = data.alert_threshold
                contract_changed = True
            if "notes" in data.model_fields_set:
                budget.notes = data.notes
            if contract_changed:
                budget.alert_state = AlertState.normal
            previous_spent = self._recompute_row(budget)
            AlertEngine(self.session).evaluate_and_apply(
                budget, previous_spent, previous_limit_cents=previous_limit
            )
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        with bucket_locks.hold(budget.bucket), atomic(self.session):
            budget = self._load_by_id(budget_id)
            self.session.execute(
                update(Alert)
                .where(Alert.budget_id == budget.id)
                .values(budget_id=None)
            )
            self.session.delete(budget)

    def reset_alerts(self, budget_id: int) -> Budget:
        budget = self.get(budget_id)
        with bucket_locks.hold(budget.bucket), atomic(self.session):
            budget = self._load_by_id(budget_id)
            budget.alert_state = AlertState.normal
        self.session.refresh(budget)
        return budget

    def list_for_month(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> list[Budget]:
        today = local_today()
        month = month or today.month
        year = year or today.year
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.year == year,
                Budget.month == month,
            )
            .order_by(Budget.category.asc(), Budget.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def summary(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> dict[str, object]:
        budgets = self.list_for_month(month, year)
        total_limit = sum(b.limit_cents for b in budgets)
        total_spent = sum(b.spent_cents for b in budgets)
        exceeded = sum(1 for b in budgets if b.status == BudgetStatus.exceeded)
        warning = sum(1 for b in budgets if b.status == BudgetStatus.warning)
        percentage = 0
        if total_limit > 0:
            percentage = int(
                (Decimal(total_spent) * 100 / Decimal(total_limit)).quantize(
                    Decimal("1"), rounding=ROUND_HALF_UP
                )
            )
        return {
            "total_budgets": len(budgets),
            "total_limit": from_cents(total_limit),
            "total_spent": from_cents(total_spent),
            "remaining": from_cents(total_limit - total_spent),
            "percentage": percentage,
            "exceeded_count": exceeded,
            "warning_count": warning,
            "healthy_count": len(budgets) - exceeded - warning,
            "budgets": budgets,
        }

    def history(
        self,
        category: Union[Category, str],
        months: int = 6,
        today: Optional[date] = None,
    ) -> list[Budget]:
        category = Category(category)
        today = today or local_today()
        from_year, from_month = add_months(today.year, today.month, -months)
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.category == category,
                Budget.year * 12 + Budget.month >= from_year * 12 + from_month,
            )
            .order_by(Budget.year.asc(), Budget.month.asc())
        )
        return list(self.session.scalars(stmt).all())

    def check_alerts(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> list[Alert]:
        alerts: list[Alert] = []
        for budget in self.list_for_month(month, year):
            with bucket_locks.hold(budget.bucket), atomic(self.session):
                alerts.extend(
                    self.refresh_bucket(budget.category, budget.month, budget.year)
                )
        return alerts


class AlertService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list(self, unread_only: bool = False, limit: int = 50) -> list[Alert]:
        stmt = (
            select(Alert)
            .where(Alert.user_id == self.user_id)
            .order_by(Alert.created_at.desc(), Alert.id.desc())
            .limit(limit)
        )
        if unread_only:
            stmt = stmt.where(Alert.is_read.is_(False))
        return list(self.session.scalars(stmt).all())

    def for_budget(self, budget_id: int) -> list[Alert]:
        stmt = (
            select(Alert)
            .where(Alert.user_id == self.user_id, Alert.budget_id == budget_id)
            .order_by(Alert.created_at.asc(), Alert.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def unread_count(self) -> int:
        return int(
            self.session.execute(
                select(func.count(Alert.id)).where(
                    Alert.user_id == self.user_id, Alert.is_read.is_(False)
                )
            ).scalar_one()
            or 0
        )

    def get(self, alert_id: int) -> Alert:
        alert = self.session.scalar(
            select(Alert).where(Alert.user_id == self.user_id, Alert.id == alert_id)
        )
        if not alert:
            raise NotFoundError("Alert not found")
        return alert

    def mark_read(self, alert_id: int) -> Alert:
        alert = self.get(alert_id)
        if alert.is_read:
            return alert
        with atomic(self.session):
            alert.is_read = True
            alert.read_at = datetime.utcnow()
        self.session.refresh(alert)
        return alert

    def mark_all_read(self) -> int:
        with atomic(self.session):
            result = self.session.execute(
                update(Alert)
                .where(Alert.user_id == self.user_id, Alert.is_read.is_(False))
                .values(is_read=True, read_at=datetime.utcnow())
            )
        return int(result.rowcount or 0)


class InsightsService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.ledger = TransactionService(session, user_id)

    def dashboard(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> dict[str, object]:
        today = local_today()
        month = month or today.month
        year = year or today.year
        start, end = month_start(year, month), month_end(year, month)
        expense = self.ledger.sum_by_date_range(start, end, TransactionType.expense)
        income = self.ledger.sum_by_date_range(start, end, TransactionType.income)
        savings = income.total_cents - expense.total_cents
        savings_rate = 0.0
        if income.total_cents > 0:
            savings_rate = round(savings / income.total_cents * 100, 1)
        categories = self.ledger.sum_by_category(start, end)
        breakdown = [
            {
                "category": row.category.value,
                "total": row.total,
                "count": row.count,
                "percent": (
                    row.total_cents / expense.total_cents * 100
                    if expense.total_cents
                    else 0
                ),
            }
            for row in categories
        ]
        return {
            "year": year,
            "month": month,
            "total_income": income.total,
            "total_expense": expense.total,
            "savings": from_cents(savings),
            "savings_rate": savings_rate,
            "category_breakdown": breakdown,
        }

    def monthly_trend(
        self, months: int = 6, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        today = today or local_today()
        first_year, first_month = add_months(today.year, today.month, -(months - 1))
        start, _ = month_bounds(first_year, first_month)
        _, end = month_bounds(today.year, today.month)
        year_col = extract("year", Transaction.occurred_at).label("year")
        month_col = extract("month", Transaction.occurred_at).label("month")
        rows = self.session.execute(
            select(
                year_col,
                month_col,
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.occurred_at >= start,
                Transaction.occurred_at < end,
            )
            .group_by(year_col, month_col, Transaction.type)
        ).all()
        totals: dict[tuple[int, int, TransactionType], int] = {
            (int(row.year), int(row.month), row.type): int(row.total or 0)
            for row in rows
        }
        series: list[dict[str, object]] = []
        for offset in range(months):
            year, month = add_months(first_year, first_month, offset)
            series.append(
                {
                    "year": year,
                    "month": month,
                    "income_cents": totals.get((year, month, TransactionType.income), 0),
                    "expense_cents": totals.get(
                        (year, month, TransactionType.expense), 0
                    ),
                }
            )
        return series

    def daily_expenses(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> list[dict[str, int]]:
        today = local_today()
        month = month or today.month
        year = year or today.year
        start, end = month_bounds(year, month)
        day_col = extract("day", Transaction.occurred_at).label("day")
        rows = self.session.execute(
            select(
                day_col,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.occurred_at >= start,
                Transaction.occurred_at < end,
            )
            .group_by(day_col)
            .order_by(day_col)
        ).all()
        return [
            {
                "day": int(row.day),
                "total_cents": int(row.total or 0),
                "count": int(row.count or 0),
            }
            for row in rows
        ]

    def spending_trend(
        self, months: int = 6, today: Optional[date] = None
    ) -> dict[str, object]:
        series = self.monthly_trend(months, today)
        expenses = [row["expense_cents"] for row in series if row["expense_cents"]]
        return {
            "series": series,
            "trend": _trend_direction(expenses),
        }

    def predict_next_month(
        self, months: int = 6, today: Optional[date] = None
    ) -> Decimal:
        series = self.monthly_trend(months, today)
        expenses = [row["expense_cents"] for row in series if row["expense_cents"]]
        if not expenses:
            return from_cents(0)
        average = Decimal(sum(expenses)) / len(expenses)
        prediction = (average * Decimal("1.05") / 100).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return from_cents(int(prediction) * 100)

    def unusual_spending(
        self, months: int = 3, limit: int = 10, today: Optional[date] = None
    ) -> list[Transaction]:
        today = today or local_today()
        from_year, from_month = add_months(today.year, today.month, -months)
        since = datetime(from_year, from_month, min(today.day, 28))
        rows = list(
            self.session.scalars(
                select(Transaction).where(
                    Transaction.user_id == self.user_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.occurred_at >= since,
                )
            ).all()
        )
        if not rows:
            return []
        amounts = [txn.amount_cents for txn in rows]
        threshold = statistics.fmean(amounts) + 2 * statistics.pstdev(amounts)
        unusual = [txn for txn in rows if txn.amount_cents > threshold]
        unusual.sort(key=lambda txn: (-txn.amount_cents, -txn.id))
        return unusual[:limit]


def _trend_direction(values: Sequence[int]) -> str:
    if len(values) < 2:
        return "stable"
    recent = values[-3:]
    older = values[:-3]
    recent_avg = sum(recent) / len(recent)
    older_avg = sum(older) / len(older) if older else recent_avg
    if older_avg == 0:
        return "increasing" if recent_avg > 0 else "stable"
    change = (recent_avg - older_avg) / older_avg * 100
    if change > 10:
        return "increasing"
    if change < -10:
        return "decreasing"
    return "stable"


@dataclass
class SweepReport:
    year: int
    month: int
    budgets: int = 0
    recomputed: int = 0
    alerts: int = 0
    failures: int = 0
    alert_ids: list[int] = field(default_factory=list)


class SweepService:
    """Owner-agnostic pass over every budget of one month.

    Each budget is recomputed and evaluated in its own unit of work so a
    conflicting bucket does not roll back the rest. Storage failures abort the
    pass; the next scheduled run picks it up again.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def run(self, month: Optional[int] = None, year: Optional[int] = None) -> SweepReport:
        today = local_today()
        month = month or today.month
        year = year or today.year
        report = SweepReport(year=year, month=month)
        rows = self.session.execute(
            select(Budget.id, Budget.user_id, Budget.category)
            .where(Budget.year == year, Budget.month == month)
            .order_by(Budget.id)
        ).all()
        report.budgets = len(rows)
        for row in rows:
            key = (row.user_id, row.category, year, month)
            try:
                with bucket_locks.hold(key), atomic(self.session):
                    alerts = BudgetService(self.session, row.user_id).refresh_bucket(
                        row.category, month, year
                    )
            except ConflictError as exc:
                report.failures += 1
                logger.warning(
                    f"sweep_conflict: budget_id={row.id} reason={exc.message}"
                )
                continue
            except StorageError:
                report.failures += 1
                logger.exception(f"sweep_storage_error: budget_id={row.id}")
                raise
            report.recomputed += 1
            report.alerts += len(alerts)
            report.alert_ids.extend(alert.id for alert in alerts)
        logger.info(
            f"sweep_done: year={year} month={month} budgets={report.budgets} "
            f"recomputed={report.recomputed} alerts={report.alerts} "
            f"failures={report.failures}"
        )
        return report


class CSVService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def preview(self, content: str) -> tuple[list[TransactionIn], list[str]]:
        return parse_csv(content)

    def commit(self, content: str) -> int:
        rows, errors = parse_csv(content)
        if errors:
            raise ValidationError(
                f"CSV has {len(errors)} invalid row(s); nothing was imported",
                details="\n".join(errors),
            )
        if not rows:
            return 0
        txns: list[Transaction] = []
        now = local_now()
        for data in rows:
            txns.append(
                Transaction(
                    user_id=self.user_id,
                    type=data.type,
                    category=data.category,
                    amount_cents=to_cents(data.amount),
                    occurred_at=(
                        to_local_naive(data.occurred_at) if data.occurred_at else now
                    ),
                    payment_method=data.payment_method,
                    description=data.description,
                    tags=data.tags,
                    notes=data.notes,
                    is_recurring=data.is_recurring,
                    recurring_period=data.recurring_period,
                )
            )
        keys = {
            key
            for key in (
                expense_bucket(self.user_id, t.type, t.category, t.occurred_at)
                for t in txns
            )
            if key is not None
        }
        with bucket_locks.hold(*keys), atomic(self.session):
            self.session.add_all(txns)
            self.session.flush()
            refresh_buckets(self.session, keys)
        logger.info(
            f"csv_import: user={self.user_id} rows={len(txns)} buckets={len(keys)}"
        )
        return len(txns)

    def export(self, transactions: Sequence[Transaction]) -> str:
        return export_transactions(transactions)
