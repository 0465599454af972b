from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .core.config import settings
from .core.database import Base


try:
    LOCAL_ZONE = ZoneInfo(getattr(settings, "TIMEZONE", "America/New_York"))
except Exception:
    LOCAL_ZONE = ZoneInfo("America/New_York")


def now_local_naive() -> datetime:
    """Return naive datetime normalized to configured local timezone."""
    return datetime.now(LOCAL_ZONE).replace(tzinfo=None)


def today_local() -> date:
    return now_local_naive().date()


def to_decimal(value: Any) -> Decimal:
    """Coerce a stored or upstream numeric value into a 2-place ``Decimal``.

    Storage drivers may hand back ``str`` (Postgres NUMERIC via some drivers),
    ``float`` (SQLite) or ``None``; anything unparseable becomes zero.
    """
    if value is None or value == "":
        return Decimal("0.00")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        if not result.is_finite():
            return Decimal("0.00")
        # quantize raises for values wider than the context precision
        return result.quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return Decimal("0.00")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_local_naive, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_local_naive, onupdate=now_local_naive, nullable=False)


class PersonRole(str, Enum):
    PARENT = "parent"
    CHILD = "child"


class AlertMode(str, Enum):
    """How a parent wants to hear about individual purchases."""

    ALL = "all"
    WEEKLY = "weekly"
    THRESHOLD = "threshold"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    WEEKLY = "weekly"


class Person(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[PersonRole] = mapped_column(
        SAEnum(PersonRole, name="person_role", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    phone_number: Mapped[str | None] = mapped_column(String(20))

    cards: Mapped[list["LinkedCard"]] = relationship(back_populates="person", cascade="all, delete-orphan")
    spending_limit: Mapped["SpendingLimit | None"] = relationship(
        back_populates="person", uselist=False, cascade="all, delete-orphan"
    )
    notification_setting: Mapped["NotificationSetting | None"] = relationship(
        back_populates="person", uselist=False, cascade="all, delete-orphan"
    )
    device_tokens: Mapped[list["DeviceToken"]] = relationship(back_populates="person", cascade="all, delete-orphan")
    subscriptions: Mapped[list["Subscription"]] = relationship(back_populates="person", cascade="all, delete-orphan")

    @property
    def is_parent(self) -> bool:
        return self.role is PersonRole.PARENT

    @property
    def is_child(self) -> bool:
        return self.role is PersonRole.CHILD


class NotificationSetting(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    person_id: Mapped[int] = mapped_column(ForeignKey("person.id", ondelete="CASCADE"), unique=True, nullable=False)
    alert_mode: Mapped[AlertMode] = mapped_column(
        SAEnum(AlertMode, name="alert_mode", values_callable=lambda e: [m.value for m in e]),
        default=AlertMode.ALL,
        nullable=False,
    )
    threshold_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("25.00"), nullable=False)
    weekly_summary_day: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    person: Mapped[Person] = relationship(back_populates="notification_setting")


class DeviceToken(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    person_id: Mapped[int] = mapped_column(ForeignKey("person.id", ondelete="CASCADE"), nullable=False)
    token: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    platform: Mapped[str] = mapped_column(String(20), default="ios", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    person: Mapped[Person] = relationship(back_populates="device_tokens")


class LinkedCard(Base, TimestampMixin):
    """A card linked through the aggregator.

    ``sync_cursor`` is the aggregator's delta-sync position; ``None`` means the
    next sync starts from scratch.
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    person_id: Mapped[int] = mapped_column(ForeignKey("person.id", ondelete="CASCADE"), nullable=False)
    aggregator_account_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    access_token: Mapped[str | None] = mapped_column(String(255))
    mask: Mapped[str | None] = mapped_column(String(4))
    nickname: Mapped[str | None] = mapped_column(String(100))
    sync_cursor: Mapped[str | None] = mapped_column(Text)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime)

    person: Mapped[Person] = relationship(back_populates="cards")
    transactions: Mapped[list["Transaction"]] = relationship(back_populates="card", cascade="all, delete-orphan")


class Transaction(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    card_id: Mapped[int] = mapped_column(ForeignKey("linkedcard.id", ondelete="CASCADE"), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    # Always a positive magnitude; direction lives in ``is_refund``
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_refund: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    merchant_name: Mapped[str | None] = mapped_column(String(255))
    category: Mapped[str | None] = mapped_column(String(100))
    occurred_on: Mapped[date] = mapped_column(Date, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_food_delivery: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_local_naive, nullable=False)

    card: Mapped[LinkedCard] = relationship(back_populates="transactions")

    __table_args__ = (
        Index("ix_transaction_occurred_on", "occurred_on"),
        Index("ix_transaction_card_id", "card_id"),
    )


class SpendingLimit(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    person_id: Mapped[int] = mapped_column(ForeignKey("person.id", ondelete="CASCADE"), unique=True, nullable=False)
    monthly_limit: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    reset_day: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    # Denormalized month-to-date spend, refreshed by the rollup job
    current_spend: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_local_naive, onupdate=now_local_naive, nullable=False)

    person: Mapped[Person] = relationship(back_populates="spending_limit")


class Subscription(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    person_id: Mapped[int] = mapped_column(ForeignKey("person.id", ondelete="CASCADE"), nullable=False)
    merchant_name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        SAEnum(BillingCycle, name="billing_cycle", values_callable=lambda e: [m.value for m in e]),
        default=BillingCycle.MONTHLY,
        nullable=False,
    )
    next_renewal_date: Mapped[date | None] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    person: Mapped[Person] = relationship(back_populates="subscriptions")

    __table_args__ = (Index("ix_subscription_next_renewal", "next_renewal_date"),)


# One subscription per merchant per person, compared case-insensitively
Index(
    "uq_subscription_person_merchant",
    Subscription.person_id,
    func.lower(Subscription.merchant_name),
    unique=True,
)


class AlertLedgerEntry(Base):
    """One row per (recipient, reference, kind) that has already been notified."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    recipient_id: Mapped[int] = mapped_column(ForeignKey("person.id", ondelete="CASCADE"), nullable=False)
    reference_id: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime, default=now_local_naive, nullable=False)

    __table_args__ = (
        UniqueConstraint("recipient_id", "reference_id", "kind", name="uq_alert_ledger_triple"),
        Index("ix_alert_ledger_reference", "reference_id"),
    )
