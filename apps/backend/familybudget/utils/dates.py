"""
Calendar helpers for month windows and billing cycles
"""

from __future__ import annotations

import calendar
from datetime import date, timedelta

from familybudget.models import BillingCycle


def month_start(value: date) -> date:
    return value.replace(day=1)


def previous_month_window(value: date) -> tuple[date, date]:
    """First and last day of the calendar month before ``value``."""
    last = month_start(value) - timedelta(days=1)
    return last.replace(day=1), last


def add_months(value: date, months: int) -> date:
    """
    Shift by whole months, clamping the day to the target month's length

    Example:
        >>> add_months(date(2025, 1, 31), 1)
        datetime.date(2025, 2, 28)
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance_cycle(value: date, cycle: BillingCycle | str) -> date:
    """Move a renewal date forward by exactly one billing period."""
    cycle = BillingCycle(cycle)
    if cycle is BillingCycle.YEARLY:
        return add_months(value, 12)
    if cycle is BillingCycle.WEEKLY:
        return value + timedelta(days=7)
    return add_months(value, 1)


def month_index(value: date) -> int:
    """0-based calendar month (January is 0)."""
    return value.month - 1
