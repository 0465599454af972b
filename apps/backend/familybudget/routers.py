from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Response
from sqlalchemy.orm import Session

from . import jobs, models
from .clients.aggregator import Aggregator, PlaidAggregator
from .clients.transports import ApnsPushTransport, PushTransport, SmsTransport, TwilioSmsTransport
from .core.config import settings
from .core.errors import AggregatorError
from .core.database import SessionLocal, get_db
from .schemas import (
    ExchangeTokenIn,
    LinkedCardOut,
    PersonSpendingStatus,
    PlaidWebhookIn,
    RenewalCheckResult,
    RollupResult,
    SpendingReport,
    SpendingStatus,
    SubscriptionInsights,
    SubscriptionOut,
    SummaryResult,
    SyncAllResult,
    TransactionOut,
)
from .services.spending_status import SpendingStatusService
from .services.subscriptions import SubscriptionService
from .services.summaries import SummaryService
from .services.transaction_sync import link_card

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Collaborators (overridable through app.dependency_overrides)
# ---------------------------------------------------------------------------

def get_session_factory():
    return SessionLocal


def get_aggregator() -> Aggregator:
    return PlaidAggregator()


def get_push_transport() -> PushTransport:
    return ApnsPushTransport()


def get_sms_transport() -> SmsTransport:
    return TwilioSmsTransport()


def verify_job_token(x_job_token: str | None = Header(None)) -> None:
    """Shared-secret check for cron-driven job triggers; open when no token is configured."""
    if settings.JOB_TRIGGER_TOKEN and x_job_token != settings.JOB_TRIGGER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid or missing X-Job-Token header")


# ---------------------------------------------------------------------------
# Job triggers
# ---------------------------------------------------------------------------

@router.post("/jobs/sync", response_model=SyncAllResult, dependencies=[Depends(verify_job_token)])
def trigger_sync(
    session_factory=Depends(get_session_factory),
    aggregator: Aggregator = Depends(get_aggregator),
    push: PushTransport = Depends(get_push_transport),
):
    return jobs.run_sync_all(session_factory, aggregator, push)


@router.post("/jobs/rollup", response_model=RollupResult, dependencies=[Depends(verify_job_token)])
def trigger_rollup(session_factory=Depends(get_session_factory)):
    return jobs.run_spending_rollup(session_factory)


@router.post("/jobs/renewals", response_model=RenewalCheckResult, dependencies=[Depends(verify_job_token)])
def trigger_renewals(
    session_factory=Depends(get_session_factory),
    push: PushTransport = Depends(get_push_transport),
):
    return jobs.run_renewal_check(session_factory, push)


@router.post("/jobs/weekly-summary", response_model=SummaryResult, dependencies=[Depends(verify_job_token)])
def trigger_weekly_summary(
    session_factory=Depends(get_session_factory),
    sms: SmsTransport = Depends(get_sms_transport),
):
    return jobs.run_weekly_summary(session_factory, sms)


@router.post("/jobs/monthly-summary", response_model=SummaryResult, dependencies=[Depends(verify_job_token)])
def trigger_monthly_summary(
    session_factory=Depends(get_session_factory),
    sms: SmsTransport = Depends(get_sms_transport),
):
    return jobs.run_monthly_summary(session_factory, sms)


@router.post("/plaid/webhook")
def plaid_webhook(
    payload: PlaidWebhookIn,
    background_tasks: BackgroundTasks,
    session_factory=Depends(get_session_factory),
    aggregator: Aggregator = Depends(get_aggregator),
    push: PushTransport = Depends(get_push_transport),
):
    logger.info("Plaid webhook: %s - %s", payload.webhook_type, payload.webhook_code)
    triggered = payload.webhook_type == "TRANSACTIONS" and payload.webhook_code == "SYNC_UPDATES_AVAILABLE"
    if triggered:
        def _run() -> None:
            try:
                jobs.run_sync_all(session_factory, aggregator, push)
            except Exception:
                logger.warning("Webhook-triggered sync failed; the next scheduled sync retries")

        background_tasks.add_task(_run)
    return {"received": True, "sync_triggered": triggered}


@router.post("/plaid/exchange-token", response_model=LinkedCardOut)
def exchange_token(
    payload: ExchangeTokenIn,
    db: Session = Depends(get_db),
    aggregator: Aggregator = Depends(get_aggregator),
):
    if db.get(models.Person, payload.person_id) is None:
        raise HTTPException(status_code=404, detail="Person not found")
    try:
        account = aggregator.exchange_public_token(payload.public_token)
    except AggregatorError as exc:
        raise HTTPException(status_code=502, detail="Failed to link card") from exc
    return link_card(
        db,
        person_id=payload.person_id,
        aggregator_account_id=account.account_id,
        access_token=account.access_token,
        mask=account.mask,
        nickname=account.name,
    )


# ---------------------------------------------------------------------------
# Read accessors
# ---------------------------------------------------------------------------

@router.get("/limits/status", response_model=list[PersonSpendingStatus])
def limits_status(db: Session = Depends(get_db)):
    return SpendingStatusService(db).status_for_all()


@router.get("/limits/{person_id}", response_model=SpendingStatus)
def person_limit(person_id: int, db: Session = Depends(get_db)):
    if db.get(models.Person, person_id) is None:
        raise HTTPException(status_code=404, detail="Person not found")
    status = SpendingStatusService(db).status_for(person_id)
    if status is None:
        raise HTTPException(status_code=404, detail="No spending limit configured")
    return status


@router.get("/transactions", response_model=list[TransactionOut])
def list_transactions(
    response: Response,
    person_id: int | None = Query(None),
    card_id: int | None = Query(None),
    start: date | None = Query(None),
    end: date | None = Query(None),
    food_delivery: bool | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    q = db.query(models.Transaction).join(models.LinkedCard, models.LinkedCard.id == models.Transaction.card_id)
    if person_id is not None:
        q = q.filter(models.LinkedCard.person_id == person_id)
    if card_id is not None:
        q = q.filter(models.Transaction.card_id == card_id)
    if start:
        q = q.filter(models.Transaction.occurred_on >= start)
    if end:
        q = q.filter(models.Transaction.occurred_on <= end)
    if food_delivery is not None:
        q = q.filter(models.Transaction.is_food_delivery.is_(food_delivery))
    total = q.count()
    response.headers["X-Total-Count"] = str(total)
    return (
        q.order_by(models.Transaction.occurred_on.desc(), models.Transaction.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )


@router.get("/subscriptions/insights", response_model=SubscriptionInsights)
def subscription_insights(person_id: int | None = Query(None), db: Session = Depends(get_db)):
    return SubscriptionService(db).insights(person_id)


@router.post("/subscriptions/auto-detect/{person_id}", response_model=list[SubscriptionOut])
def auto_detect_subscriptions(person_id: int, db: Session = Depends(get_db)):
    if db.get(models.Person, person_id) is None:
        raise HTTPException(status_code=404, detail="Person not found")
    return SubscriptionService(db).auto_detect(person_id)


@router.get("/reports/spending", response_model=SpendingReport)
def spending_report(
    start: date = Query(...),
    end: date = Query(...),
    person_id: int | None = Query(None),
    db: Session = Depends(get_db),
):
    if end < start:
        raise HTTPException(status_code=400, detail="end must not be before start")
    return SummaryService(db).spending_report(start, end, person_id)
