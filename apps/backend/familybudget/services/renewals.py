from __future__ import annotations

import logging
from datetime import date, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from familybudget import models
from familybudget.core.config import settings
from familybudget.schemas import RenewalCheckResult, RolloverResult, RollupResult
from familybudget.services.notifier import Notifier, delivered
from familybudget.services.spending_status import SpendingStatusService
from familybudget.utils.dates import advance_cycle

logger = logging.getLogger(__name__)


class RenewalService:
    """Daily subscription upkeep: reminders ahead of a renewal, rollover after it."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def find_upcoming(self, today: date | None = None, days: int | None = None) -> list[models.Subscription]:
        """Active subscriptions renewing exactly ``days`` from ``today``.

        Exact date equality means each renewal is only picked up on one day.
        """
        today = today or models.today_local()
        days = settings.RENEWAL_REMINDER_DAYS if days is None else days
        stmt = (
            select(models.Subscription)
            .where(
                models.Subscription.is_active.is_(True),
                models.Subscription.next_renewal_date == today + timedelta(days=days),
            )
            .order_by(models.Subscription.id)
        )
        return list(self.db.execute(stmt).scalars())

    def check_upcoming_renewals(self, notifier: Notifier, today: date | None = None) -> RenewalCheckResult:
        subscriptions = self.find_upcoming(today)
        logger.info("Found %d subscriptions renewing in %d days", len(subscriptions), settings.RENEWAL_REMINDER_DAYS)

        result = RenewalCheckResult()
        for sub in subscriptions:
            try:
                push_result = notifier.send_renewal_reminder(sub)
            except Exception:
                logger.exception("Renewal reminder for subscription %s failed", sub.id)
                continue
            if not delivered(push_result):
                logger.warning("Renewal reminder for subscription %s not delivered: %s", sub.id, push_result.error)
                continue
            result.reminders_sent += 1
            result.subscription_ids.append(sub.id)
        return result

    def roll_forward_passed(self, today: date | None = None) -> RolloverResult:
        """Advance every passed renewal date by exactly one billing period.

        A subscription several periods behind catches up one period per run.
        """
        today = today or models.today_local()
        stmt = select(models.Subscription).where(
            models.Subscription.is_active.is_(True),
            models.Subscription.next_renewal_date.is_not(None),
            models.Subscription.next_renewal_date < today,
        )
        result = RolloverResult()
        for sub in self.db.execute(stmt).scalars():
            sub.next_renewal_date = advance_cycle(sub.next_renewal_date, sub.billing_cycle)
            result.advanced += 1
        self.db.commit()
        logger.info("Passed renewal dates updated: %d advanced", result.advanced)
        return result


def update_monthly_spending(db: Session, today: date | None = None) -> RollupResult:
    """Refresh the cached month-to-date spend on every spending limit."""
    resolver = SpendingStatusService(db)
    result = RollupResult()
    for limit_row in db.execute(select(models.SpendingLimit)).scalars():
        limit_row.current_spend = resolver.month_to_date_spend(limit_row.person_id, today)
        limit_row.updated_at = models.now_local_naive()
        result.updated += 1
    db.commit()
    logger.info("Monthly spending totals updated for %d people", result.updated)
    return result
