from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from familybudget import models
from familybudget.clients.transports import PushTransport, push_to_parents, push_to_person
from familybudget.core.config import settings
from familybudget.models import AlertMode, to_decimal
from familybudget.schemas import PushData, PushMessage, PushResult, SpendingStatus, TransactionSnapshot
from familybudget.services.alert_ledger import (
    CHILD_FOOD_DELIVERY,
    PARENT_PURCHASE,
    AlertLedger,
    limit_exceeded_kind,
    limit_warning_kind,
)
from familybudget.services.spending_status import SpendingStatusService
from familybudget.utils.merchant_detection import delivery_service_name

logger = logging.getLogger(__name__)


def format_currency(amount: Decimal | float | int | str | None) -> str:
    return f"${abs(to_decimal(amount)):.2f}"


def format_percent(percent: float) -> str:
    return str(Decimal(str(percent)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def should_send_purchase_alert(setting: models.NotificationSetting, amount: Decimal) -> bool:
    """Per-parent gate for individual purchase alerts.

    ``weekly`` parents hear about purchases only through the weekly digest.
    """
    mode = AlertMode(setting.alert_mode)
    if mode is AlertMode.ALL:
        return True
    if mode is AlertMode.THRESHOLD:
        return to_decimal(amount) >= to_decimal(setting.threshold_amount)
    return False


def delivered(result: PushResult) -> bool:
    """A push counts as sent unless the transport errored or every device rejected it.

    No registered devices (``sent == failed == 0``) still counts, so the alert
    is not retried forever for a person without the app.
    """
    if result.error is not None:
        return False
    return not (result.sent == 0 and result.failed > 0)


class Notifier:
    """Evaluates the alert rules for a freshly inserted transaction.

    Every rule is gated by the alert ledger, so replaying the same transaction
    never notifies the same (recipient, transaction, kind) twice.
    """

    def __init__(
        self,
        db: Session,
        push: PushTransport,
        ledger: AlertLedger | None = None,
        resolver: SpendingStatusService | None = None,
    ) -> None:
        self.db = db
        self.push = push
        self.ledger = ledger or AlertLedger(db)
        self.resolver = resolver or SpendingStatusService(db)

    def process_new_transaction(
        self,
        txn: models.Transaction,
        owner: models.Person,
        today: date | None = None,
    ) -> int:
        """Run the four rule checks in order and return how many alerts were sent."""
        today = today or models.today_local()
        status = self.resolver.status_for(owner.id, today)

        sent = 0
        sent += self._child_food_delivery(txn, owner)
        sent += self._parent_purchase(txn, owner, status)
        sent += self._limit_warning(txn, owner, status, today)
        sent += self._limit_exceeded(txn, owner, status, today)

        if sent:
            logger.info("[Alerts] Sent %d push notifications for transaction %s", sent, txn.id)
        return sent

    # ---- delivery ---------------------------------------------------------
    def _deliver(self, recipient_id: int, reference_id: int, kind: str, send: Callable[[], PushResult]) -> int:
        if self.ledger.was_sent(recipient_id, reference_id, kind):
            return 0
        try:
            result = send()
        except Exception:
            logger.exception("Alert %s for %s to person %s failed", kind, reference_id, recipient_id)
            return 0
        if not delivered(result):
            logger.warning(
                "Alert %s for %s to person %s not delivered: sent=%d failed=%d error=%s",
                kind,
                reference_id,
                recipient_id,
                result.sent,
                result.failed,
                result.error,
            )
            return 0
        self.ledger.record(recipient_id, reference_id, kind)
        return 1

    # ---- rules ------------------------------------------------------------
    def _child_food_delivery(self, txn: models.Transaction, owner: models.Person) -> int:
        if not (txn.is_food_delivery and owner.is_child):
            return 0
        service = delivery_service_name(txn.merchant_name) or "Food Delivery"
        message = PushMessage(
            title="🔴 Food Delivery Alert",
            body=f"You spent {format_currency(txn.amount)} at {service}",
            data=PushData(type="food_delivery", transaction_id=txn.id),
        )
        return self._deliver(
            owner.id,
            txn.id,
            CHILD_FOOD_DELIVERY,
            lambda: push_to_person(self.db, self.push, owner.id, message),
        )

    def _parent_settings(self) -> list[tuple[models.Person, models.NotificationSetting]]:
        stmt = (
            select(models.Person, models.NotificationSetting)
            .join(models.NotificationSetting, models.NotificationSetting.person_id == models.Person.id)
            .where(models.Person.role == models.PersonRole.PARENT)
            .order_by(models.Person.id)
        )
        return [(person, setting) for person, setting in self.db.execute(stmt).all()]

    def _purchase_message(
        self,
        txn: models.Transaction,
        owner: models.Person,
        status: SpendingStatus | None,
    ) -> PushMessage:
        amount = format_currency(txn.amount)
        if txn.is_refund:
            title = "💚 Refund"
            body = f"{owner.name} received {amount} from {txn.merchant_name}"
        else:
            title = "🔴 Food Delivery" if txn.is_food_delivery else "New Purchase"
            body = f"{owner.name} spent {amount} at {txn.merchant_name}"
            if status is not None:
                body += f" ({format_percent(status.percent_used)}% of limit)"

        return PushMessage(
            title=title,
            body=body,
            data=PushData(
                type="refund" if txn.is_refund else "purchase",
                transaction_id=txn.id,
                user_id=owner.id,
                transaction=TransactionSnapshot(
                    amount=float(to_decimal(txn.amount)),
                    merchant_name=txn.merchant_name,
                    cardholder_name=owner.name,
                    is_refund=txn.is_refund,
                    is_food_delivery=txn.is_food_delivery,
                ),
            ),
        )

    def _parent_purchase(
        self,
        txn: models.Transaction,
        owner: models.Person,
        status: SpendingStatus | None,
    ) -> int:
        sent = 0
        message: PushMessage | None = None
        for parent, setting in self._parent_settings():
            if not should_send_purchase_alert(setting, txn.amount):
                continue
            if message is None:
                message = self._purchase_message(txn, owner, status)
            outgoing = message
            sent += self._deliver(
                parent.id,
                txn.id,
                PARENT_PURCHASE,
                lambda pid=parent.id: push_to_person(self.db, self.push, pid, outgoing),
            )
        return sent

    def _limit_warning(
        self,
        txn: models.Transaction,
        owner: models.Person,
        status: SpendingStatus | None,
        today: date,
    ) -> int:
        if status is None:
            return 0
        if not (settings.LIMIT_WARNING_PERCENT <= status.percent_used < 100):
            return 0
        message = PushMessage(
            title="⚠️ Spending Limit Warning",
            body=(
                f"{owner.name} is at {format_percent(status.percent_used)}% of monthly limit "
                f"({format_currency(status.remaining)} remaining)"
            ),
            data=PushData(type="limit_warning", user_id=owner.id),
        )
        return self._deliver(
            owner.id,
            txn.id,
            limit_warning_kind(today),
            lambda: push_to_parents(self.db, self.push, message),
        )

    def _limit_exceeded(
        self,
        txn: models.Transaction,
        owner: models.Person,
        status: SpendingStatus | None,
        today: date,
    ) -> int:
        if status is None or status.percent_used < 100:
            return 0
        message = PushMessage(
            title="🚨 Limit Exceeded!",
            body=(
                f"{owner.name} has exceeded their monthly limit! "
                f"{format_currency(status.current_spend)} / {format_currency(status.monthly_limit)}"
            ),
            data=PushData(type="limit_exceeded", user_id=owner.id),
        )
        return self._deliver(
            owner.id,
            txn.id,
            limit_exceeded_kind(today),
            lambda: push_to_parents(self.db, self.push, message),
        )

    # ---- renewals ---------------------------------------------------------
    def send_renewal_reminder(self, subscription: models.Subscription) -> PushResult:
        cardholder = self.db.get(models.Person, subscription.person_id)
        name = cardholder.name if cardholder else "Unknown"
        days = settings.RENEWAL_REMINDER_DAYS
        message = PushMessage(
            title="📅 Subscription Renewal",
            body=(
                f"{subscription.merchant_name} ({format_currency(subscription.amount)}) "
                f"renews in {days} days - {name}'s card"
            ),
            data=PushData(type="subscription_renewal", subscription_id=subscription.id),
        )
        result = push_to_parents(self.db, self.push, message)
        logger.info("[Alerts] Sent renewal reminder for %s", subscription.merchant_name)
        return result
