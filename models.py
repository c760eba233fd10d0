from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base
from money import from_cents


def _value_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class Category(str, Enum):
    """Closed set of category names shared by the ledger and budget keys."""

    food_dining = "Food & Dining"
    transportation = "Transportation"
    shopping = "Shopping"
    entertainment = "Entertainment"
    bills_utilities = "Bills & Utilities"
    healthcare = "Healthcare"
    education = "Education"
    travel = "Travel"
    investments = "Investments"
    salary = "Salary"
    freelance = "Freelance"
    business = "Business"
    rent = "Rent"
    emi = "EMI"
    insurance = "Insurance"
    gifts = "Gifts"
    other = "Other"


CATEGORY_ENUM = _value_enum(Category, "category")


class PaymentMethod(str, Enum):
    cash = "cash"
    card = "card"
    upi = "upi"
    net_banking = "net-banking"
    wallet = "wallet"
    other = "other"


class RecurringPeriod(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class AlertType(str, Enum):
    budget_exceeded = "budget_exceeded"
    budget_warning = "budget_warning"
    unusual_spending = "unusual_spending"
    savings_goal_achieved = "savings_goal_achieved"
    savings_goal_missed = "savings_goal_missed"
    purchase_affordable = "purchase_affordable"
    low_balance = "low_balance"
    monthly_report = "monthly_report"


class AlertSeverity(str, Enum):
    info = "info"
    warning = "warning"
    critical = "critical"
    success = "success"


class AlertState(str, Enum):
    normal = "normal"
    warning_sent = "warning_sent"
    exceeded_sent = "exceeded_sent"


class BudgetStatus(str, Enum):
    good = "good"
    moderate = "moderate"
    warning = "warning"
    exceeded = "exceeded"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        _value_enum(TransactionType, "transactiontype"), nullable=False
    )
    category: Mapped[Category] = mapped_column(CATEGORY_ENUM, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        _value_enum(PaymentMethod, "paymentmethod"),
        nullable=False,
        default=PaymentMethod.upi,
    )
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_period: Mapped[Optional[RecurringPeriod]] = mapped_column(
        _value_enum(RecurringPeriod, "recurringperiod")
    )

    __table_args__ = (
        Index("ix_transactions_user_occurred", "user_id", "occurred_at"),
        Index(
            "ix_transactions_user_category_occurred",
            "user_id",
            "category",
            "occurred_at",
        ),
        Index("ix_transactions_user_type_occurred", "user_id", "type", "occurred_at"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[Category] = mapped_column(CATEGORY_ENUM, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    alert_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=80)
    alert_state: Mapped[AlertState] = mapped_column(
        _value_enum(AlertState, "alertstate"),
        nullable=False,
        default=AlertState.normal,
    )
    notes: Mapped[Optional[str]] = mapped_column(String(200))
    last_computed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        UniqueConstraint(
            "user_id", "category", "year", "month", name="uq_budget_user_bucket"
        ),
        Index("ix_budget_user_month", "user_id", "year", "month"),
        Index("ix_budget_month", "year", "month"),
        CheckConstraint("limit_cents > 0", name="ck_budget_limit_positive"),
        CheckConstraint("spent_cents >= 0", name="ck_budget_spent_non_negative"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
        CheckConstraint(
            "alert_threshold BETWEEN 1 AND 100", name="ck_budget_threshold_range"
        ),
    )

    @property
    def bucket(self) -> tuple[str, Category, int, int]:
        return (self.user_id, self.category, self.year, self.month)

    @property
    def limit(self) -> Decimal:
        return from_cents(self.limit_cents)

    @property
    def spent(self) -> Decimal:
        return from_cents(self.spent_cents)

    @property
    def remaining(self) -> Decimal:
        return from_cents(max(0, self.limit_cents - self.spent_cents))

    @property
    def percentage(self) -> int:
        # Display only; threshold checks compare cents directly.
        if self.limit_cents <= 0:
            return 0
        ratio = Decimal(self.spent_cents) * 100 / Decimal(self.limit_cents)
        return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @property
    def alert_sent(self) -> bool:
        return self.alert_state != AlertState.normal

    @property
    def is_exceeded(self) -> bool:
        return is_exceeded(self.spent_cents, self.limit_cents)

    @property
    def status(self) -> BudgetStatus:
        return budget_status(self.spent_cents, self.limit_cents, self.alert_threshold)


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    budget_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budgets.id", ondelete="SET NULL")
    )
    type: Mapped[AlertType] = mapped_column(
        _value_enum(AlertType, "alerttype"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    message: Mapped[str] = mapped_column(String(500), nullable=False)
    severity: Mapped[AlertSeverity] = mapped_column(
        _value_enum(AlertSeverity, "alertseverity"),
        nullable=False,
        default=AlertSeverity.info,
    )
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    details: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    action_url: Mapped[Optional[str]] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_alerts_user_read_created", "user_id", "is_read", "created_at"),
        Index("ix_alerts_user_type", "user_id", "type"),
    )


def is_exceeded(spent_cents: int, limit_cents: int) -> bool:
    return spent_cents >= limit_cents


def reaches_threshold(spent_cents: int, limit_cents: int, threshold: int) -> bool:
    return spent_cents * 100 >= threshold * limit_cents


def budget_status(spent_cents: int, limit_cents: int, threshold: int) -> BudgetStatus:
    if is_exceeded(spent_cents, limit_cents):
        return BudgetStatus.exceeded
    if reaches_threshold(spent_cents, limit_cents, threshold):
        return BudgetStatus.warning
    if reaches_threshold(spent_cents, limit_cents, 50):
        return BudgetStatus.moderate
    return BudgetStatus.good
