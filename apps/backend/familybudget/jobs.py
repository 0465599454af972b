"""
Job boundary

Each job opens its own session, logs start and finish, and on failure logs
and re-raises so the caller (cron-driven HTTP trigger) records the failure.
There is no retry here; the next scheduled tick is the retry.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable

from sqlalchemy.orm import Session

from familybudget.clients.aggregator import Aggregator, PlaidAggregator
from familybudget.clients.transports import ApnsPushTransport, PushTransport, SmsTransport, TwilioSmsTransport
from familybudget.core.database import SessionLocal
from familybudget.schemas import RenewalCheckResult, RollupResult, SummaryResult, SyncAllResult
from familybudget.services.notifier import Notifier
from familybudget.services.renewals import RenewalService, update_monthly_spending
from familybudget.services.summaries import SummaryService
from familybudget.services.transaction_sync import sync_all

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def run_sync_all(
    session_factory: SessionFactory = SessionLocal,
    aggregator: Aggregator | None = None,
    push: PushTransport | None = None,
    today: date | None = None,
) -> SyncAllResult:
    logger.info("Running transaction sync...")
    try:
        result = sync_all(
            session_factory,
            aggregator or PlaidAggregator(),
            push or ApnsPushTransport(),
            today=today,
        )
    except Exception:
        logger.exception("Error syncing all transactions")
        raise
    return result


def run_spending_rollup(session_factory: SessionFactory = SessionLocal, today: date | None = None) -> RollupResult:
    try:
        with session_factory() as db:
            return update_monthly_spending(db, today)
    except Exception:
        logger.exception("Error updating monthly spending")
        raise


def run_renewal_check(
    session_factory: SessionFactory = SessionLocal,
    push: PushTransport | None = None,
    today: date | None = None,
) -> RenewalCheckResult:
    """Roll passed renewals forward, then remind parents about upcoming ones."""
    logger.info("Checking subscription renewals...")
    try:
        with session_factory() as db:
            service = RenewalService(db)
            service.roll_forward_passed(today)
            return service.check_upcoming_renewals(Notifier(db, push or ApnsPushTransport()), today)
    except Exception:
        logger.exception("Error checking renewals")
        raise


def run_weekly_summary(
    session_factory: SessionFactory = SessionLocal,
    sms: SmsTransport | None = None,
    today: date | None = None,
) -> SummaryResult:
    logger.info("Sending weekly summary...")
    try:
        with session_factory() as db:
            return SummaryService(db, sms or TwilioSmsTransport()).weekly_summary(today)
    except Exception:
        logger.exception("Error sending weekly summary")
        raise


def run_monthly_summary(
    session_factory: SessionFactory = SessionLocal,
    sms: SmsTransport | None = None,
    today: date | None = None,
) -> SummaryResult:
    logger.info("Sending monthly summary...")
    try:
        with session_factory() as db:
            return SummaryService(db, sms or TwilioSmsTransport()).monthly_summary(today)
    except Exception:
        logger.exception("Error sending monthly summary")
        raise
