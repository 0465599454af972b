from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from familybudget import models
from familybudget.core.database import dialect_insert
from familybudget.models import BillingCycle, to_decimal
from familybudget.schemas import (
    CycleBreakdown,
    RecurringCharge,
    SubscriptionInsights,
    SubscriptionMatch,
    UpcomingRenewals,
)
from familybudget.utils.dates import add_months, month_start
from familybudget.utils.merchant_detection import match_subscription

logger = logging.getLogger(__name__)

RECURRING_LOOKBACK_MONTHS = 6
RECURRING_MIN_MONTHS = 3
UPCOMING_WINDOW_DAYS = 7


class SubscriptionService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def detect_recurring_charges(self, person_id: int, today: date | None = None) -> list[RecurringCharge]:
        """Merchants charged in at least three distinct months of the last six."""
        today = today or models.today_local()
        since = add_months(today, -RECURRING_LOOKBACK_MONTHS)
        rows = self.db.execute(
            select(models.Transaction.merchant_name, models.Transaction.occurred_on, models.Transaction.amount)
            .join(models.LinkedCard, models.LinkedCard.id == models.Transaction.card_id)
            .where(
                models.LinkedCard.person_id == person_id,
                models.Transaction.occurred_on >= since,
                models.Transaction.is_refund.is_(False),
                models.Transaction.merchant_name.is_not(None),
            )
        ).all()

        # merchant -> month -> amounts
        monthly: dict[str, dict[date, list[Decimal]]] = defaultdict(lambda: defaultdict(list))
        for merchant, occurred_on, amount in rows:
            monthly[merchant][month_start(occurred_on)].append(to_decimal(amount))

        charges: list[RecurringCharge] = []
        for merchant, months in monthly.items():
            if len(months) < RECURRING_MIN_MONTHS:
                continue
            month_avgs = [sum(vals) / len(vals) for vals in months.values()]
            charges.append(
                RecurringCharge(
                    merchant_name=merchant,
                    amount=to_decimal(sum(month_avgs) / len(month_avgs)),
                    months_appeared=len(months),
                )
            )
        charges.sort(key=lambda c: c.amount, reverse=True)
        return charges

    def auto_detect(self, person_id: int, today: date | None = None) -> list[models.Subscription]:
        """Create monthly subscriptions for recurring merchants not tracked yet.

        The renewal date is a guess: the 1st of next month.
        """
        today = today or models.today_local()
        next_renewal = add_months(month_start(today), 1)
        insert = dialect_insert(self.db)
        created: list[models.Subscription] = []
        for charge in self.detect_recurring_charges(person_id, today):
            stmt = (
                insert(models.Subscription)
                .values(
                    person_id=person_id,
                    merchant_name=charge.merchant_name,
                    amount=charge.amount,
                    billing_cycle=BillingCycle.MONTHLY,
                    next_renewal_date=next_renewal,
                    is_active=True,
                    created_at=models.now_local_naive(),
                    updated_at=models.now_local_naive(),
                )
                .on_conflict_do_nothing()
                .returning(models.Subscription.id)
            )
            new_id = self.db.execute(stmt).scalar()
            if new_id is not None:
                created.append(self.db.get(models.Subscription, new_id))
        self.db.commit()
        if created:
            logger.info("Auto-detected %d subscriptions for person %s", len(created), person_id)
        return created

    def match_transaction(
        self,
        person_id: int,
        merchant_name: str | None,
        amount: Decimal,
        today: date | None = None,
    ) -> SubscriptionMatch:
        """Refresh a tracked subscription when a known service charges again."""
        pattern = match_subscription(merchant_name)
        if pattern is None:
            return SubscriptionMatch(matched=False)

        existing = self.db.execute(
            select(models.Subscription)
            .where(
                models.Subscription.person_id == person_id,
                func.lower(models.Subscription.merchant_name).like(f"%{pattern.name.lower()}%"),
            )
            .order_by(models.Subscription.id)
            .limit(1)
        ).scalar_one_or_none()
        if existing is None:
            return SubscriptionMatch(matched=False)

        today = today or models.today_local()
        existing.next_renewal_date = add_months(today, 1)
        existing.amount = to_decimal(amount)
        self.db.flush()
        return SubscriptionMatch(matched=True, subscription_id=existing.id)

    def insights(self, person_id: int | None = None, today: date | None = None) -> SubscriptionInsights:
        today = today or models.today_local()
        stmt = select(models.Subscription).where(models.Subscription.is_active.is_(True))
        if person_id is not None:
            stmt = stmt.where(models.Subscription.person_id == person_id)
        subs = self.db.execute(stmt).scalars().all()

        monthly_total = Decimal("0.00")
        upcoming = UpcomingRenewals()
        cycles: dict[BillingCycle, CycleBreakdown] = {}
        window_end = today + timedelta(days=UPCOMING_WINDOW_DAYS)
        for sub in subs:
            amount = to_decimal(sub.amount)
            cycle = BillingCycle(sub.billing_cycle)
            if cycle is BillingCycle.YEARLY:
                monthly_total += amount / 12
            else:
                monthly_total += amount
            if sub.next_renewal_date and today <= sub.next_renewal_date <= window_end:
                upcoming.count += 1
                upcoming.total += amount
            bucket = cycles.setdefault(cycle, CycleBreakdown(billing_cycle=cycle, count=0, total=Decimal("0.00")))
            bucket.count += 1
            bucket.total += amount

        return SubscriptionInsights(
            monthly_total=to_decimal(monthly_total),
            subscription_count=len(subs),
            upcoming_renewals=upcoming,
            by_cycle=list(cycles.values()),
        )
