from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker

from database import Base
from errors import ConflictError, NotFoundError, StorageError, ValidationError
from models import Category, PaymentMethod, Transaction, TransactionType
import services
from services import BudgetService, TransactionFilters, TransactionService


def _expense(amount: str, when: datetime, category: str = "Food & Dining", **extra):
    payload = {
        "type": "expense",
        "category": category,
        "amount": amount,
        "occurred_at": when,
        "description": extra.pop("description", "Groceries"),
    }
    payload.update(extra)
    return payload


def test_record_rejects_unknown_category_without_writing() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, "u1")
        with pytest.raises(ValidationError, match="Unknown category") as exc_info:
            txns.record(
                _expense("10", datetime(2025, 3, 1, 12), category="Miscellaneous Stuff")
            )
        assert "category" in exc_info.value.fields
        assert session.scalar(select(func.count(Transaction.id))) == 0


def test_record_suggests_close_category_name() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(ValidationError, match="did you mean 'Food & Dining'"):
            TransactionService(session, "u1").record(
                _expense("10", datetime(2025, 3, 1, 12), category="Fod & Dining")
            )


def test_record_accepts_category_case_insensitively() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txn = TransactionService(session, "u1").record(
            _expense("12.5", datetime(2025, 3, 1, 12), category="food & dining")
        )
        assert txn.category == Category.food_dining
        assert txn.amount_cents == 1250
        assert txn.amount == Decimal("12.50")
        assert txn.payment_method == PaymentMethod.upi


@pytest.mark.parametrize("amount", ["0", "-5", "abc"])
def test_record_rejects_non_positive_amount(amount: str) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(ValidationError):
            TransactionService(session, "u1").record(
                _expense(amount, datetime(2025, 3, 1, 12))
            )
        assert session.scalar(select(func.count(Transaction.id))) == 0


def test_recurring_transaction_requires_period() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, "u1")
        with pytest.raises(ValidationError, match="recurring_period"):
            txns.record(_expense("10", datetime(2025, 3, 1, 12), is_recurring=True))

        txn = txns.record(
            _expense(
                "10",
                datetime(2025, 3, 1, 12),
                is_recurring=True,
                recurring_period="monthly",
            )
        )
        assert txn.recurring_period is not None


def test_query_orders_newest_first_with_id_tiebreak() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, "u1")
        older = txns.record(_expense("5", datetime(2025, 3, 1, 9)))
        first = txns.record(_expense("6", datetime(2025, 3, 2, 9)))
        second = txns.record(_expense("7", datetime(2025, 3, 2, 9)))

        page = txns.query()
        assert [t.id for t in page.items] == [second.id, first.id, older.id]
        assert page.total == 3
        assert page.pages == 1


def test_query_filters_and_paginates() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, "u1")
        txns.record(_expense("5", datetime(2025, 3, 1, 9), description="Coffee beans"))
        txns.record(_expense("6", datetime(2025, 3, 3, 9), description="Coffee shop"))
        txns.record(
            _expense("40", datetime(2025, 3, 4, 9), category="Travel", description="Taxi")
        )
        txns.record(
            {
                "type": "income",
                "category": "Salary",
                "amount": "3000",
                "occurred_at": datetime(2025, 3, 5, 9),
                "description": "March salary",
            }
        )
        TransactionService(session, "u2").record(
            _expense("99", datetime(2025, 3, 1, 9), description="Coffee elsewhere")
        )

        coffee = txns.query(TransactionFilters(query="coffee"), page=1, page_size=1)
        assert coffee.total == 2
        assert coffee.pages == 2
        assert coffee.items[0].description == "Coffee shop"

        second_page = txns.query(TransactionFilters(query="coffee"), page=2, page_size=1)
        assert second_page.items[0].description == "Coffee beans"

        travel = txns.query(TransactionFilters(category=Category.travel))
        assert [t.description for t in travel.items] == ["Taxi"]

        income = txns.query(TransactionFilters(type=TransactionType.income))
        assert income.total == 1

        ranged = txns.query(
            TransactionFilters(start=date(2025, 3, 2), end=date(2025, 3, 4))
        )
        assert {t.description for t in ranged.items} == {"Coffee shop", "Taxi"}


def test_query_rejects_bad_paging() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, "u1")
        with pytest.raises(ValidationError, match="page_size"):
            txns.query(page_size=10_000)
        with pytest.raises(ValidationError, match="page"):
            txns.query(page=0)


def test_sum_by_date_range_includes_whole_end_day() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, "u1")
        txns.record(_expense("10", datetime(2025, 3, 1, 0, 0)))
        txns.record(_expense("20", datetime(2025, 3, 31, 23, 30)))
        txns.record(_expense("40", datetime(2025, 4, 1, 0, 0)))

        total = txns.sum_by_date_range(date(2025, 3, 1), date(2025, 3, 31))
        assert total.total_cents == 3000
        assert total.count == 2
        assert total.total == Decimal("30.00")


def test_sum_by_date_range_with_no_rows_is_zero() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        total = TransactionService(session, "u1").sum_by_date_range(
            date(2025, 1, 1), date(2025, 1, 31), TransactionType.income
        )
        assert total.total_cents == 0
        assert total.count == 0


def test_sum_by_category_orders_by_total_then_name() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, "u1")
        txns.record(_expense("30", datetime(2025, 3, 1, 9), category="Travel"))
        txns.record(_expense("30", datetime(2025, 3, 2, 9), category="Entertainment"))
        txns.record(_expense("10", datetime(2025, 3, 3, 9)))
        txns.record(_expense("50", datetime(2025, 3, 4, 9)))
        txns.record(
            {
                "type": "income",
                "category": "Salary",
                "amount": "1000",
                "occurred_at": datetime(2025, 3, 5, 9),
                "description": "Pay",
            }
        )

        rows = txns.sum_by_category(date(2025, 3, 1), date(2025, 3, 31))
        assert [(r.category, r.total_cents, r.count) for r in rows] == [
            (Category.food_dining, 6000, 2),
            (Category.entertainment, 3000, 1),
            (Category.travel, 3000, 1),
        ]


def test_retract_and_get_are_scoped_to_owner() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txn = TransactionService(session, "u1").record(
            _expense("10", datetime(2025, 3, 1, 9))
        )
        other = TransactionService(session, "u2")
        with pytest.raises(NotFoundError):
            other.get(txn.id)
        with pytest.raises(NotFoundError):
            other.retract(txn.id)
        with pytest.raises(NotFoundError):
            TransactionService(session, "u1").retract(txn.id + 100)


def test_amend_moves_spend_between_category_buckets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, "u1")
        food = budgets.set_limit(
            {"category": "Food & Dining", "limit": "1000", "month": 3, "year": 2025}
        )
        travel = budgets.set_limit(
            {"category": "Travel", "limit": "1000", "month": 3, "year": 2025}
        )
        txns = TransactionService(session, "u1")
        txn = txns.record(_expense("300", datetime(2025, 3, 10, 12)))
        assert budgets.get(food.id).spent_cents == 30000

        txns.amend(txn.id, {"category": "Travel"})

        assert budgets.get(food.id).spent_cents == 0
        assert budgets.get(travel.id).spent_cents == 30000


def test_amend_moves_spend_between_months() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, "u1")
        march = budgets.set_limit(
            {"category": "Food & Dining", "limit": "1000", "month": 3, "year": 2025}
        )
        april = budgets.set_limit(
            {"category": "Food & Dining", "limit": "1000", "month": 4, "year": 2025}
        )
        txns = TransactionService(session, "u1")
        txn = txns.record(_expense("200", datetime(2025, 3, 31, 23, 59)))

        txns.amend(txn.id, {"occurred_at": datetime(2025, 4, 1, 0, 0), "amount": "250"})

        assert budgets.get(march.id).spent_cents == 0
        assert budgets.get(april.id).spent_cents == 25000


def test_amend_description_only_keeps_budget_untouched() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, "u1")
        budget = budgets.set_limit(
            {"category": "Food & Dining", "limit": "1000", "month": 3, "year": 2025}
        )
        txns = TransactionService(session, "u1")
        txn = txns.record(_expense("100", datetime(2025, 3, 10, 12)))
        computed_at = budgets.get(budget.id).last_computed_at

        amended = txns.amend(txn.id, {"description": "Weekly shop"})

        assert amended.description == "Weekly shop"
        assert budgets.get(budget.id).last_computed_at == computed_at


def test_amend_rejects_null_for_required_field() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, "u1")
        txn = txns.record(_expense("100", datetime(2025, 3, 10, 12)))
        with pytest.raises(ValidationError, match="cannot be null"):
            txns.amend(txn.id, {"amount": None})


def test_income_does_not_touch_budgets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, "u1")
        budget = budgets.set_limit(
            {"category": "Salary", "limit": "1000", "month": 3, "year": 2025}
        )
        TransactionService(session, "u1").record(
            {
                "type": "income",
                "category": "Salary",
                "amount": "5000",
                "occurred_at": datetime(2025, 3, 1, 9),
                "description": "Pay",
            }
        )
        assert budgets.get(budget.id).spent_cents == 0


def _failing_refresh(session, keys):
    raise StorageError("Storage unavailable", "recompute failed")


def test_failed_recompute_rolls_back_record(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, "u1")
        budget = budgets.set_limit(
            {"category": "Food & Dining", "limit": "1000", "month": 3, "year": 2025}
        )
        monkeypatch.setattr(services, "refresh_buckets", _failing_refresh)

        with pytest.raises(StorageError):
            TransactionService(session, "u1").record(
                _expense("100", datetime(2025, 3, 10, 12))
            )

        assert session.scalar(select(func.count(Transaction.id))) == 0
        assert budgets.get(budget.id).spent_cents == 0


def test_failed_recompute_rolls_back_amend_and_retract(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, "u1")
        budget = budgets.set_limit(
            {"category": "Food & Dining", "limit": "1000", "month": 3, "year": 2025}
        )
        txns = TransactionService(session, "u1")
        txn_id = txns.record(_expense("100", datetime(2025, 3, 10, 12))).id
        monkeypatch.setattr(services, "refresh_buckets", _failing_refresh)

        with pytest.raises(StorageError):
            txns.amend(txn_id, {"amount": "500", "category": "Travel"})
        with pytest.raises(StorageError):
            txns.retract(txn_id)

        row = session.scalar(select(Transaction).where(Transaction.id == txn_id))
        assert row is not None
        assert row.amount_cents == 10000
        assert row.category == Category.food_dining
        assert budgets.get(budget.id).spent_cents == 10000


class _EditBeforeLock:
    """Runs a competing edit the first time a bucket lock is requested."""

    def __init__(self, locks, edit) -> None:
        self.locks = locks
        self.edit = edit
        self.pending = True

    def hold(self, *keys, **kwargs):
        if self.pending:
            self.pending = False
            self.edit()
        return self.locks.hold(*keys, **kwargs)


def test_retract_refuses_row_moved_by_concurrent_amend(tmp_path, monkeypatch) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    SessionFactory = sessionmaker(bind=engine)

    with SessionFactory() as session:
        budgets = BudgetService(session, "u1")
        food_id = budgets.set_limit(
            {"category": "Food & Dining", "limit": "1000", "month": 3, "year": 2025}
        ).id
        travel_id = budgets.set_limit(
            {"category": "Travel", "limit": "1000", "month": 3, "year": 2025}
        ).id
        txn_id = TransactionService(session, "u1").record(
            _expense("300", datetime(2025, 3, 10, 12))
        ).id

    def move_to_travel() -> None:
        with SessionFactory() as other:
            TransactionService(other, "u1").amend(txn_id, {"category": "Travel"})

    monkeypatch.setattr(
        services, "bucket_locks", _EditBeforeLock(services.bucket_locks, move_to_travel)
    )

    with SessionFactory() as session:
        txns = TransactionService(session, "u1")
        with pytest.raises(ConflictError, match="changed concurrently"):
            txns.retract(txn_id)

        budgets = BudgetService(session, "u1")
        assert budgets.get(food_id).spent_cents == 0
        assert budgets.get(travel_id).spent_cents == 30000
        assert txns.get(txn_id).category == Category.travel

        # a retry sees the moved row and clears the right bucket
        txns.retract(txn_id)
        assert budgets.get(travel_id).spent_cents == 0
        assert session.scalar(select(func.count(Transaction.id))) == 0
