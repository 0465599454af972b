from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import BillingCycle, PersonRole, to_decimal


# ---------------------------------------------------------------------------
# Aggregator sync contract
# ---------------------------------------------------------------------------

SUBSCRIPTION_DETAIL = "SUBSCRIPTION"


class AggregatorTransaction(BaseModel):
    """One added/modified record from the aggregator's delta sync.

    ``amount`` keeps the upstream sign: positive is a charge, negative is a
    refund or credit.
    """

    external_id: str = Field(min_length=1)
    amount: Decimal
    merchant_name: str | None = None
    name: str | None = None
    category: str | None = None
    detailed_category: str | None = None
    occurred_on: date

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Decimal:
        return to_decimal(value)

    @property
    def display_merchant(self) -> str | None:
        return self.merchant_name or self.name

    @property
    def is_refund(self) -> bool:
        return self.amount < 0

    @property
    def magnitude(self) -> Decimal:
        return abs(self.amount)

    @property
    def is_subscription(self) -> bool:
        return (self.detailed_category or "").upper() == SUBSCRIPTION_DETAIL


class SyncPage(BaseModel):
    added: list[AggregatorTransaction] = Field(default_factory=list)
    modified: list[AggregatorTransaction] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False


class LinkedAccount(BaseModel):
    """Account chosen when a public token from the link flow is exchanged."""

    access_token: str
    account_id: str
    mask: str | None = None
    name: str | None = None


# ---------------------------------------------------------------------------
# Notification transport contract
# ---------------------------------------------------------------------------

class TransactionSnapshot(BaseModel):
    """Transaction details carried in purchase pushes for the watch glance."""

    amount: float
    merchant_name: str | None = None
    cardholder_name: str
    is_refund: bool = False
    is_food_delivery: bool = False


class PushData(BaseModel):
    type: Literal[
        "food_delivery",
        "purchase",
        "refund",
        "limit_warning",
        "limit_exceeded",
        "subscription_renewal",
        "test",
    ]
    transaction_id: int | None = None
    user_id: int | None = None
    subscription_id: int | None = None
    transaction: TransactionSnapshot | None = None


class PushMessage(BaseModel):
    title: str
    body: str
    data: PushData
    badge: int | None = None
    sound: str = "default"


class PushResult(BaseModel):
    sent: int = 0
    failed: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SmsReceipt(BaseModel):
    sid: str
    to: str
    body: str


class FanOutResult(BaseModel):
    succeeded: int = 0
    failed: int = 0


# ---------------------------------------------------------------------------
# Spending status
# ---------------------------------------------------------------------------

class SpendingStatus(BaseModel):
    monthly_limit: Decimal
    current_spend: Decimal
    # Uncapped percentage: 140.0 means 40% over the limit
    percent_used: float
    remaining: Decimal


class PersonSpendingStatus(BaseModel):
    person_id: int
    name: str
    role: PersonRole
    monthly_limit: Decimal | None = None
    current_spend: Decimal
    percent_used: float = 0.0
    remaining: Decimal = Decimal("0.00")
    is_warning: bool = False
    is_over: bool = False


# ---------------------------------------------------------------------------
# Job results
# ---------------------------------------------------------------------------

class CardSyncResult(BaseModel):
    card_id: int
    added: int = 0
    modified: int = 0
    removed: int = 0
    inserted: int = 0
    notifications: int = 0
    pages: int = 0
    skipped: bool = False


class SyncAllResult(BaseModel):
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cards: list[CardSyncResult] = Field(default_factory=list)
    errors: dict[int, str] = Field(default_factory=dict)


class RolloverResult(BaseModel):
    advanced: int = 0


class RenewalCheckResult(BaseModel):
    reminders_sent: int = 0
    subscription_ids: list[int] = Field(default_factory=list)


class RollupResult(BaseModel):
    updated: int = 0


class SummaryResult(BaseModel):
    message: str
    recipients: int = 0
    delivered: int = 0
    failed: int = 0


# ---------------------------------------------------------------------------
# Subscriptions & reports
# ---------------------------------------------------------------------------

class RecurringCharge(BaseModel):
    merchant_name: str
    amount: Decimal
    months_appeared: int
    is_likely_subscription: bool = True


class CycleBreakdown(BaseModel):
    billing_cycle: BillingCycle
    count: int
    total: Decimal


class UpcomingRenewals(BaseModel):
    count: int = 0
    total: Decimal = Decimal("0.00")


class SubscriptionInsights(BaseModel):
    monthly_total: Decimal = Decimal("0.00")
    subscription_count: int = 0
    upcoming_renewals: UpcomingRenewals = Field(default_factory=UpcomingRenewals)
    by_cycle: list[CycleBreakdown] = Field(default_factory=list)


class SubscriptionMatch(BaseModel):
    matched: bool
    subscription_id: int | None = None


class NamedTotal(BaseModel):
    name: str | None
    total: Decimal
    count: int = 0


class PersonTotal(BaseModel):
    person_id: int
    name: str
    role: PersonRole
    total: Decimal
    transaction_count: int = 0


class FoodDeliveryBreakdown(BaseModel):
    total: Decimal = Decimal("0.00")
    breakdown: list[NamedTotal] = Field(default_factory=list)


class SpendingReport(BaseModel):
    start: date
    end: date
    total_spend: Decimal
    by_person: list[PersonTotal] = Field(default_factory=list)
    by_category: list[NamedTotal] = Field(default_factory=list)
    top_merchants: list[NamedTotal] = Field(default_factory=list)
    food_delivery: FoodDeliveryBreakdown = Field(default_factory=FoodDeliveryBreakdown)


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    card_id: int
    external_id: str
    amount: Decimal
    is_refund: bool
    merchant_name: str | None = None
    category: str | None = None
    occurred_on: date
    is_recurring: bool
    is_food_delivery: bool
    created_at: datetime


class PlaidWebhookIn(BaseModel):
    webhook_type: str
    webhook_code: str
    item_id: Optional[str] = None


class ExchangeTokenIn(BaseModel):
    public_token: str = Field(min_length=1)
    person_id: int


class LinkedCardOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    person_id: int
    mask: str | None = None
    nickname: str | None = None
    last_synced_at: datetime | None = None


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    person_id: int
    merchant_name: str
    amount: Decimal
    billing_cycle: BillingCycle
    next_renewal_date: date | None = None
    is_active: bool
