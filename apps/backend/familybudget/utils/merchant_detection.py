"""
Merchant classification

Pure helpers that turn a merchant string (plus an optional upstream category)
into the flags the sync pipeline stores:

- food delivery detection with a normalized brand name
- known subscription service matching
- recurring-charge fallback (same merchant, near-identical amount)
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

FOOD_DELIVERY_CATEGORY = "Food Delivery"
DEFAULT_CATEGORY = "Other"
REFUND_CATEGORY = "Refund"

# Recurring fallback: amounts within this many dollars count as "the same charge"
RECURRING_AMOUNT_TOLERANCE = Decimal("1")
RECURRING_MIN_OCCURRENCES = 2


@dataclass(frozen=True)
class Classification:
    category: str
    is_food_delivery: bool
    service_name: str | None = None


@dataclass(frozen=True)
class SubscriptionPattern:
    pattern: re.Pattern[str]
    name: str

    def matches(self, merchant_name: str) -> bool:
        return bool(self.pattern.search(merchant_name))


@dataclass(frozen=True)
class SubscriptionHint:
    is_subscription: bool
    service_name: str | None = None


# Ordered: the first matching entry provides the normalized brand
FOOD_DELIVERY_SERVICES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"door\s*dash", re.IGNORECASE), "DoorDash"),
    (re.compile(r"grub\s*hub|seamless", re.IGNORECASE), "Grubhub"),
    (re.compile(r"uber\s*\**\s*eats", re.IGNORECASE), "Uber Eats"),
    (re.compile(r"postmates", re.IGNORECASE), "Postmates"),
    (re.compile(r"instacart", re.IGNORECASE), "Instacart"),
    (re.compile(r"caviar", re.IGNORECASE), "Caviar"),
)

SUBSCRIPTION_PATTERNS: tuple[SubscriptionPattern, ...] = (
    SubscriptionPattern(re.compile(r"netflix", re.IGNORECASE), "Netflix"),
    SubscriptionPattern(re.compile(r"spotify", re.IGNORECASE), "Spotify"),
    SubscriptionPattern(re.compile(r"hulu", re.IGNORECASE), "Hulu"),
    SubscriptionPattern(re.compile(r"disney\+|disney\s*plus", re.IGNORECASE), "Disney+"),
    SubscriptionPattern(re.compile(r"hbo\s*max|max\.com", re.IGNORECASE), "Max"),
    SubscriptionPattern(re.compile(r"amazon\s*prime", re.IGNORECASE), "Amazon Prime"),
    SubscriptionPattern(re.compile(r"apple\.com/bill|itunes", re.IGNORECASE), "Apple"),
    SubscriptionPattern(re.compile(r"google\s*play|google\s*storage", re.IGNORECASE), "Google"),
    SubscriptionPattern(re.compile(r"youtube\s*premium", re.IGNORECASE), "YouTube Premium"),
    SubscriptionPattern(re.compile(r"paramount\+|paramount\s*plus", re.IGNORECASE), "Paramount+"),
    SubscriptionPattern(re.compile(r"peacock", re.IGNORECASE), "Peacock"),
    SubscriptionPattern(re.compile(r"audible", re.IGNORECASE), "Audible"),
    SubscriptionPattern(re.compile(r"adobe", re.IGNORECASE), "Adobe"),
    SubscriptionPattern(re.compile(r"microsoft\s*365|office\s*365", re.IGNORECASE), "Microsoft 365"),
    SubscriptionPattern(re.compile(r"dropbox", re.IGNORECASE), "Dropbox"),
    SubscriptionPattern(re.compile(r"icloud", re.IGNORECASE), "iCloud"),
)


def delivery_service_name(merchant_name: str | None) -> str | None:
    """
    Normalized food-delivery brand for a merchant string

    Example:
        >>> delivery_service_name("DOORDASH*BURGER")
        'DoorDash'
        >>> delivery_service_name("Target Store #45") is None
        True
    """
    if not merchant_name:
        return None
    for pattern, name in FOOD_DELIVERY_SERVICES:
        if pattern.search(merchant_name):
            return name
    return None


def is_food_delivery(merchant_name: str | None) -> bool:
    return delivery_service_name(merchant_name) is not None


def classify(merchant_name: str | None, upstream_category: str | None = None) -> Classification:
    """
    Classify one transaction

    Food delivery wins over the upstream category; otherwise the upstream
    category passes through untouched, falling back to ``"Other"``.
    """
    service = delivery_service_name(merchant_name)
    if service:
        return Classification(category=FOOD_DELIVERY_CATEGORY, is_food_delivery=True, service_name=service)
    if upstream_category:
        return Classification(category=upstream_category, is_food_delivery=False)
    return Classification(category=DEFAULT_CATEGORY, is_food_delivery=False)


def match_subscription(merchant_name: str | None) -> SubscriptionPattern | None:
    if not merchant_name:
        return None
    for entry in SUBSCRIPTION_PATTERNS:
        if entry.matches(merchant_name):
            return entry
    return None


def _field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def is_likely_subscription(
    merchant_name: str | None,
    amount: Decimal | float | int,
    history: Iterable[Any] = (),
) -> SubscriptionHint:
    """
    Known service name, or the same merchant charged a near-identical amount
    at least twice before.

    ``history`` items only need ``merchant_name`` and ``amount`` (attribute or
    mapping key), so ORM rows and plain dicts both work.
    """
    if not merchant_name:
        return SubscriptionHint(False)

    known = match_subscription(merchant_name)
    if known:
        return SubscriptionHint(True, known.name)

    target = merchant_name.casefold()
    reference = Decimal(str(amount))
    similar = 0
    for item in history:
        other_name = _field(item, "merchant_name")
        if not other_name or other_name.casefold() != target:
            continue
        other_amount = Decimal(str(_field(item, "amount") or 0))
        if abs(other_amount - reference) < RECURRING_AMOUNT_TOLERANCE:
            similar += 1

    if similar >= RECURRING_MIN_OCCURRENCES:
        return SubscriptionHint(True, merchant_name)
    return SubscriptionHint(False)
