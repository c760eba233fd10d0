"""
Budget alert state machine.

Each budget carries an explicit ``AlertState``:

    normal --(threshold reached)--> warning_sent
    normal | warning_sent --(spent crosses into >= limit)--> exceeded_sent
    any --(limit/threshold edited, or explicit reset)--> normal

The warning alert is level-triggered but suppressed once the state leaves
``normal``; a drop back below the threshold does not re-arm it. The exceeded
alert is edge-triggered on (previous spent, previous limit) -> (spent, limit)
and fires on every crossing into exceeded, never while already exceeded.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from models import (
    Alert,
    AlertSeverity,
    AlertState,
    AlertType,
    Budget,
    is_exceeded,
    reaches_threshold,
)
from money import format_amount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertIntent:
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    user_id: str
    budget_id: Optional[int]
    metadata: dict = field(default_factory=dict)


def _metadata(budget: Budget) -> dict:
    return {
        "budget_id": budget.id,
        "category": budget.category.value,
        "month": budget.month,
        "year": budget.year,
        "spent_cents": budget.spent_cents,
        "limit_cents": budget.limit_cents,
        "percentage": budget.percentage,
    }


def evaluate(
    budget: Budget,
    previous_spent_cents: int,
    *,
    previous_limit_cents: Optional[int] = None,
) -> list[AlertIntent]:
    """Return the alerts a recompute from ``previous_spent_cents`` should fire.

    Pure: reads the budget, writes nothing.
    """
    if previous_limit_cents is None:
        previous_limit_cents = budget.limit_cents
    category = budget.category.value
    intents: list[AlertIntent] = []

    if budget.alert_state == AlertState.normal and reaches_threshold(
        budget.spent_cents, budget.limit_cents, budget.alert_threshold
    ):
        intents.append(
            AlertIntent(
                type=AlertType.budget_warning,
                severity=AlertSeverity.warning,
                title=f"Budget Alert: {category}",
                message=(
                    f"You've used {budget.percentage}% of your {category} budget"
                ),
                user_id=budget.user_id,
                budget_id=budget.id,
                metadata=_metadata(budget),
            )
        )

    was_exceeded = is_exceeded(previous_spent_cents, previous_limit_cents)
    if budget.is_exceeded and not was_exceeded:
        over = format_amount(budget.spent_cents - budget.limit_cents)
        intents.append(
            AlertIntent(
                type=AlertType.budget_exceeded,
                severity=AlertSeverity.critical,
                title=f"Budget Exceeded: {category}",
                message=f"Your {category} budget has been exceeded by {over}",
                user_id=budget.user_id,
                budget_id=budget.id,
                metadata=_metadata(budget),
            )
        )
    return intents


def next_state(current: AlertState, intents: Sequence[AlertIntent]) -> AlertState:
    fired = {intent.type for intent in intents}
    if AlertType.budget_exceeded in fired:
        return AlertState.exceeded_sent
    if AlertType.budget_warning in fired:
        return AlertState.warning_sent
    return current


class AlertEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def apply(self, budget: Budget, intents: Sequence[AlertIntent]) -> list[Alert]:
        """Persist ``intents`` and advance the budget's alert state.

        Does not commit; the caller's unit of work owns the transaction.
        """
        alerts: list[Alert] = []
        for intent in intents:
            alert = Alert(
                user_id=intent.user_id,
                budget_id=intent.budget_id,
                type=intent.type,
                title=intent.title,
                message=intent.message,
                severity=intent.severity,
                details=dict(intent.metadata),
                created_at=datetime.utcnow(),
            )
            self.session.add(alert)
            alerts.append(alert)
            logger.info(
                f"alert_fired: type={intent.type.value} budget_id={intent.budget_id} "
                f"user={intent.user_id}"
            )
        state = next_state(budget.alert_state, intents)
        if state != budget.alert_state:
            budget.alert_state = state
        if alerts:
            self.session.flush()
        return alerts

    def evaluate_and_apply(
        self,
        budget: Budget,
        previous_spent_cents: int,
        *,
        previous_limit_cents: Optional[int] = None,
    ) -> list[Alert]:
        intents = evaluate(
            budget,
            previous_spent_cents,
            previous_limit_cents=previous_limit_cents,
        )
        return self.apply(budget, intents)
