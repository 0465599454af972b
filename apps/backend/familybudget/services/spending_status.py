from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from familybudget import models
from familybudget.core.config import settings
from familybudget.models import to_decimal
from familybudget.schemas import PersonSpendingStatus, SpendingStatus
from familybudget.utils.dates import month_start


def signed_amount_expr():
    """Charges count up, refunds count down.

    Amounts are stored as magnitudes, so a plain ``SUM(amount)`` would add a
    refund to the month's spend. The sign comes from ``is_refund``.
    """
    return case(
        (models.Transaction.is_refund.is_(True), -models.Transaction.amount),
        else_=models.Transaction.amount,
    )


def percent_of(spend: Decimal, limit: Decimal) -> float:
    return float(spend / limit * 100)


class SpendingStatusService:
    """Month-to-date spend against a person's configured monthly limit."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def month_to_date_spend(self, person_id: int, today: date | None = None) -> Decimal:
        today = today or models.today_local()
        stmt = (
            select(func.coalesce(func.sum(signed_amount_expr()), 0))
            .select_from(models.Transaction)
            .join(models.LinkedCard, models.LinkedCard.id == models.Transaction.card_id)
            .where(
                models.LinkedCard.person_id == person_id,
                models.Transaction.occurred_on >= month_start(today),
                models.Transaction.occurred_on <= today,
            )
        )
        return to_decimal(self.db.execute(stmt).scalar())

    def status_for(self, person_id: int, today: date | None = None) -> SpendingStatus | None:
        """``None`` when the person has no usable limit configured."""
        limit_row = self.db.execute(
            select(models.SpendingLimit).where(models.SpendingLimit.person_id == person_id)
        ).scalar_one_or_none()
        if limit_row is None:
            return None

        monthly_limit = to_decimal(limit_row.monthly_limit)
        if monthly_limit <= 0:
            return None

        spend = self.month_to_date_spend(person_id, today)
        return SpendingStatus(
            monthly_limit=monthly_limit,
            current_spend=spend,
            percent_used=percent_of(spend, monthly_limit),
            remaining=monthly_limit - spend,
        )

    def status_for_all(self, today: date | None = None) -> list[PersonSpendingStatus]:
        people = self.db.execute(select(models.Person).order_by(models.Person.id)).scalars().all()
        warning_at = Decimal(str(settings.LIMIT_WARNING_PERCENT))
        result: list[PersonSpendingStatus] = []
        for person in people:
            status = self.status_for(person.id, today)
            if status is None:
                result.append(
                    PersonSpendingStatus(
                        person_id=person.id,
                        name=person.name,
                        role=person.role,
                        current_spend=self.month_to_date_spend(person.id, today),
                    )
                )
                continue
            result.append(
                PersonSpendingStatus(
                    person_id=person.id,
                    name=person.name,
                    role=person.role,
                    monthly_limit=status.monthly_limit,
                    current_spend=status.current_spend,
                    percent_used=round(status.percent_used, 1),
                    remaining=status.remaining,
                    is_warning=status.current_spend >= status.monthly_limit * warning_at / 100,
                    is_over=status.current_spend > status.monthly_limit,
                )
            )
        return result
