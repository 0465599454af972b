"""
Spending digests and reports

The weekly and monthly digests are the delivery path for parents on the
``weekly`` alert mode: they go out by SMS to every parent with a phone number,
independent of the per-transaction push alerts.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from familybudget import models
from familybudget.clients.transports import SmsTransport, send_many
from familybudget.core.config import settings
from familybudget.models import to_decimal
from familybudget.schemas import (
    FoodDeliveryBreakdown,
    NamedTotal,
    PersonTotal,
    SpendingReport,
    SummaryResult,
)
from familybudget.services.notifier import format_currency
from familybudget.services.spending_status import SpendingStatusService, signed_amount_expr
from familybudget.utils.dates import previous_month_window

logger = logging.getLogger(__name__)

WEEKLY_WINDOW_DAYS = 7
WEEKLY_TOP_MERCHANTS = 3
MONTHLY_TOP_CATEGORIES = 5
REPORT_TOP_N = 10


def short_date(value: date) -> str:
    """``Dec 23`` style label."""
    return f"{value:%b} {value.day}"


class SummaryService:
    def __init__(self, db: Session, sms: SmsTransport | None = None) -> None:
        self.db = db
        self.sms = sms

    # ---- queries ----------------------------------------------------------
    def person_totals(self, start: date, end: date, person_id: int | None = None) -> list[PersonTotal]:
        """Per-person signed spend in ``[start, end]``; people with no spend report zero."""
        signed = signed_amount_expr()
        stmt = (
            select(
                models.Person.id,
                models.Person.name,
                models.Person.role,
                func.coalesce(func.sum(signed), 0),
                func.count(models.Transaction.id),
            )
            .outerjoin(models.LinkedCard, models.LinkedCard.person_id == models.Person.id)
            .outerjoin(
                models.Transaction,
                and_(
                    models.Transaction.card_id == models.LinkedCard.id,
                    models.Transaction.occurred_on >= start,
                    models.Transaction.occurred_on <= end,
                ),
            )
            .group_by(models.Person.id, models.Person.name, models.Person.role)
            .order_by(models.Person.id)
        )
        if person_id is not None:
            stmt = stmt.where(models.Person.id == person_id)
        return [
            PersonTotal(person_id=pid, name=name, role=role, total=to_decimal(total), transaction_count=count)
            for pid, name, role, total, count in self.db.execute(stmt).all()
        ]

    def grouped_totals(
        self,
        column,
        start: date,
        end: date,
        *,
        person_id: int | None = None,
        limit: int | None = None,
        food_delivery_only: bool = False,
    ) -> list[NamedTotal]:
        signed = signed_amount_expr()
        total = func.sum(signed).label("total")
        stmt = (
            select(column, total, func.count(models.Transaction.id))
            .select_from(models.Transaction)
            .join(models.LinkedCard, models.LinkedCard.id == models.Transaction.card_id)
            .where(models.Transaction.occurred_on >= start, models.Transaction.occurred_on <= end)
            .group_by(column)
            .order_by(total.desc())
        )
        if person_id is not None:
            stmt = stmt.where(models.LinkedCard.person_id == person_id)
        if food_delivery_only:
            stmt = stmt.where(models.Transaction.is_food_delivery.is_(True))
        if limit is not None:
            stmt = stmt.limit(limit)
        return [
            NamedTotal(name=name, total=to_decimal(value), count=count)
            for name, value, count in self.db.execute(stmt).all()
        ]

    def parent_phone_numbers(self) -> list[str]:
        stmt = (
            select(models.Person.phone_number)
            .where(
                models.Person.role == models.PersonRole.PARENT,
                models.Person.phone_number.is_not(None),
            )
            .order_by(models.Person.id)
        )
        return [phone for phone in self.db.scalars(stmt) if phone]

    # ---- digests ----------------------------------------------------------
    def compose_weekly(self, today: date | None = None) -> str:
        today = today or models.today_local()
        start = today - timedelta(days=WEEKLY_WINDOW_DAYS)
        resolver = SpendingStatusService(self.db)

        lines = [f"[FamilyBudget] Weekly Summary ({short_date(start)} - {short_date(today)})"]
        grand_total = to_decimal(0)
        for person in self.person_totals(start, today):
            status = resolver.status_for(person.person_id, today)
            warning = " ⚠️" if status and status.percent_used >= settings.LIMIT_WARNING_PERCENT else ""
            lines.append(f"{person.name}: {format_currency(person.total)}{warning}")
            grand_total += person.total

        message = "\n".join(lines) + f"\n---\nTotal: {format_currency(grand_total)}"
        merchants = self.grouped_totals(models.Transaction.merchant_name, start, today, limit=WEEKLY_TOP_MERCHANTS)
        if merchants:
            top = ", ".join(f"{m.name} ({format_currency(m.total)})" for m in merchants)
            message += f"\nTop: {top}"
        return message

    def compose_monthly(self, today: date | None = None) -> str:
        today = today or models.today_local()
        start, end = previous_month_window(today)
        limits = {
            row.person_id: to_decimal(row.monthly_limit)
            for row in self.db.execute(select(models.SpendingLimit)).scalars()
        }

        lines = [f"[FamilyBudget] Monthly Summary - {start:%B %Y}", ""]
        grand_total = to_decimal(0)
        for person in self.person_totals(start, end):
            limit = limits.get(person.person_id)
            limit_info = f" (limit: {format_currency(limit)})" if limit else ""
            over = " 🚨" if limit and person.total > limit else ""
            lines.append(f"{person.name}: {format_currency(person.total)}{limit_info}{over}")
            grand_total += person.total

        message = "\n".join(lines) + f"\n\n📊 Total: {format_currency(grand_total)}"
        categories = self.grouped_totals(models.Transaction.category, start, end, limit=MONTHLY_TOP_CATEGORIES)
        if categories:
            message += "\n\nBy Category:"
            for cat in categories:
                message += f"\n• {cat.name}: {format_currency(cat.total)}"
        return message

    def _send_to_parents(self, message: str, label: str) -> SummaryResult:
        phones = self.parent_phone_numbers()
        result = SummaryResult(message=message, recipients=len(phones))
        if phones and self.sms is not None:
            fan_out = send_many(self.sms, phones, message)
            result.delivered = fan_out.succeeded
            result.failed = fan_out.failed
            logger.info("%s summary sent to parents", label)
        return result

    def weekly_summary(self, today: date | None = None) -> SummaryResult:
        return self._send_to_parents(self.compose_weekly(today), "Weekly")

    def monthly_summary(self, today: date | None = None) -> SummaryResult:
        return self._send_to_parents(self.compose_monthly(today), "Monthly")

    # ---- reports ----------------------------------------------------------
    def spending_report(self, start: date, end: date, person_id: int | None = None) -> SpendingReport:
        by_person = self.person_totals(start, end, person_id)
        by_person.sort(key=lambda p: p.total, reverse=True)
        food = self.grouped_totals(
            models.Transaction.merchant_name, start, end, person_id=person_id, food_delivery_only=True
        )
        return SpendingReport(
            start=start,
            end=end,
            total_spend=sum((p.total for p in by_person), to_decimal(0)),
            by_person=by_person,
            by_category=self.grouped_totals(
                models.Transaction.category, start, end, person_id=person_id, limit=REPORT_TOP_N
            ),
            top_merchants=self.grouped_totals(
                models.Transaction.merchant_name, start, end, person_id=person_id, limit=REPORT_TOP_N
            ),
            food_delivery=FoodDeliveryBreakdown(
                total=sum((f.total for f in food), to_decimal(0)),
                breakdown=food,
            ),
        )
