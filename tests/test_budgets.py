from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import NotFoundError, ValidationError
from models import AlertState, Budget, BudgetStatus, Category
from periods import local_today
from services import AlertService, BudgetService, TransactionService


def _spend(session: Session, amount: str, day: int, category: str = "Food & Dining"):
    return TransactionService(session, "u1").record(
        {
            "category": category,
            "amount": amount,
            "occurred_at": datetime(2025, 3, day, 12, 0),
            "description": "Spend",
        }
    )


def test_set_limit_picks_up_existing_spend() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _spend(session, "300", 2)
        _spend(session, "200", 3)

        budget = BudgetService(session, "u1").set_limit(
            {"category": "Food & Dining", "limit": "1000", "month": 3, "year": 2025}
        )

        assert budget.spent_cents == 50000
        assert budget.spent == Decimal("500.00")
        assert budget.percentage == 50
        assert budget.status == BudgetStatus.moderate
        assert budget.alert_threshold == 80
        assert budget.alert_sent is False


def test_set_limit_updates_in_place_and_rearms_alerts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, "u1")
        first = budgets.set_limit(
            {"category": "Food & Dining", "limit": "1000", "month": 3, "year": 2025}
        )
        _spend(session, "900", 4)
        assert budgets.get(first.id).alert_state == AlertState.warning_sent

        second = budgets.set_limit(
            {
                "category": "Food & Dining",
                "limit": "5000",
                "month": 3,
                "year": 2025,
                "alert_threshold": 90,
            }
        )

        assert second.id == first.id
        assert second.limit_cents == 500000
        assert second.alert_threshold == 90
        assert second.alert_state == AlertState.normal
        assert session.scalar(select(func.count(Budget.id))) == 1


def test_set_limit_defaults_to_current_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget = BudgetService(session, "u1").set_limit(
            {"category": "Travel", "limit": "250"}
        )
        today = local_today()
        assert (budget.year, budget.month) == (today.year, today.month)


@pytest.mark.parametrize("threshold", [0, 101])
def test_set_limit_rejects_threshold_out_of_range(threshold: int) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(ValidationError, match="alert_threshold"):
            BudgetService(session, "u1").set_limit(
                {
                    "category": "Travel",
                    "limit": "100",
                    "month": 3,
                    "year": 2025,
                    "alert_threshold": threshold,
                }
            )


@pytest.mark.parametrize("limit", ["0", "-10"])
def test_set_limit_rejects_non_positive_limit(limit: str) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(ValidationError, match="limit"):
            BudgetService(session, "u1").set_limit(
                {"category": "Travel", "limit": limit, "month": 3, "year": 2025}
            )


def test_recompute_without_budget_is_a_no_op() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _spend(session, "100", 1)
        result = BudgetService(session, "u1").recompute(Category.food_dining, 3, 2025)
        assert result is None
        assert session.scalar(select(func.count(Budget.id))) == 0


def test_derived_fields_when_over_limit() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, "u1")
        budget = budgets.set_limit(
            {"category": "Food & Dining", "limit": "1000", "month": 3, "year": 2025}
        )
        _spend(session, "1100", 5)

        budget = budgets.get(budget.id)
        assert budget.remaining == Decimal("0.00")
        assert budget.percentage == 110
        assert budget.is_exceeded is True
        assert budget.status == BudgetStatus.exceeded


def test_update_notes_keeps_alert_state_but_limit_change_resets_it() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, "u1")
        budget = budgets.set_limit(
            {"category": "Food & Dining", "limit": "1000", "month": 3, "year": 2025}
        )
        _spend(session, "850", 5)

        updated = budgets.update(budget.id, {"notes": "groceries only"})
        assert updated.notes == "groceries only"
        assert updated.alert_state == AlertState.warning_sent

        updated = budgets.update(budget.id, {"limit": "2000"})
        assert updated.limit_cents == 200000
        assert updated.alert_state == AlertState.normal
        assert updated.spent_cents == 85000


def test_delete_budget_keeps_its_alerts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, "u1")
        budget = budgets.set_limit(
            {"category": "Food & Dining", "limit": "1000", "month": 3, "year": 2025}
        )
        _spend(session, "900", 5)

        budgets.delete(budget.id)

        with pytest.raises(NotFoundError):
            budgets.get(budget.id)
        alerts = AlertService(session, "u1").list()
        assert len(alerts) == 1
        assert alerts[0].budget_id is None


def test_budgets_are_scoped_to_owner() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget = BudgetService(session, "u1").set_limit(
            {"category": "Travel", "limit": "100", "month": 3, "year": 2025}
        )
        other = BudgetService(session, "u2")
        with pytest.raises(NotFoundError):
            other.get(budget.id)
        with pytest.raises(NotFoundError):
            other.update(budget.id, {"limit": "200"})
        assert other.list_for_month(3, 2025) == []


def test_summary_counts_budget_health() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, "u1")
        for category in ("Food & Dining", "Travel", "Shopping"):
            budgets.set_limit(
                {"category": category, "limit": "100", "month": 3, "year": 2025}
            )
        _spend(session, "120", 1, category="Food & Dining")
        _spend(session, "85", 1, category="Travel")
        _spend(session, "10", 1, category="Shopping")

        summary = budgets.summary(3, 2025)
        assert summary["total_budgets"] == 3
        assert summary["total_limit"] == Decimal("300.00")
        assert summary["total_spent"] == Decimal("215.00")
        assert summary["remaining"] == Decimal("85.00")
        assert summary["percentage"] == 72
        assert summary["exceeded_count"] == 1
        assert summary["warning_count"] == 1
        assert summary["healthy_count"] == 1


def test_history_returns_recent_months_in_order() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, "u1")
        for year, month in ((2024, 6), (2024, 11), (2025, 1), (2025, 3)):
            budgets.set_limit(
                {"category": "Travel", "limit": "100", "month": month, "year": year}
            )

        history = budgets.history("Travel", months=6, today=date(2025, 3, 15))
        assert [(b.year, b.month) for b in history] == [
            (2024, 11),
            (2025, 1),
            (2025, 3),
        ]


def test_reset_alerts_rearms_warning_for_next_check() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, "u1")
        budget = budgets.set_limit(
            {"category": "Food & Dining", "limit": "1000", "month": 3, "year": 2025}
        )
        _spend(session, "850", 5)

        reset = budgets.reset_alerts(budget.id)
        assert reset.alert_sent is False

        fired = budgets.check_alerts(3, 2025)
        assert [a.type.value for a in fired] == ["budget_warning"]
        assert budgets.get(budget.id).alert_sent is True
