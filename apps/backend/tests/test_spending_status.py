from datetime import date
from decimal import Decimal

import pytest

from familybudget import models
from familybudget.services.spending_status import SpendingStatusService

TODAY = date(2025, 3, 20)


def test_month_to_date_spend_window(db_session, card, add_txn):
    add_txn(card, "100.00", date(2025, 3, 1))
    add_txn(card, "50.00", TODAY)
    # previous month and future-dated rows are outside the window
    add_txn(card, "999.00", date(2025, 2, 28))
    add_txn(card, "999.00", date(2025, 3, 21))

    spend = SpendingStatusService(db_session).month_to_date_spend(card.person_id, TODAY)
    assert spend == Decimal("150.00")


def test_refunds_reduce_spend(db_session, card, add_txn):
    add_txn(card, "80.00", date(2025, 3, 5))
    add_txn(card, "15.00", date(2025, 3, 6), is_refund=True, category="Refund")

    status = SpendingStatusService(db_session).status_for(card.person_id, TODAY)
    assert status.current_spend == Decimal("65.00")
    assert status.remaining == Decimal("435.00")
    assert status.percent_used == pytest.approx(13.0)


def test_percent_used_is_not_capped(db_session, card, add_txn):
    add_txn(card, "700.00", date(2025, 3, 10))
    status = SpendingStatusService(db_session).status_for(card.person_id, TODAY)
    assert status.percent_used == pytest.approx(140.0)
    assert status.remaining == Decimal("-200.00")


def test_missing_limit_is_unknown(db_session, card):
    db_session.query(models.SpendingLimit).filter_by(person_id=card.person_id).delete()
    db_session.commit()
    assert SpendingStatusService(db_session).status_for(card.person_id, TODAY) is None


def test_zero_limit_is_unknown(db_session, card):
    limit = db_session.query(models.SpendingLimit).filter_by(person_id=card.person_id).one()
    limit.monthly_limit = Decimal("0")
    db_session.commit()
    assert SpendingStatusService(db_session).status_for(card.person_id, TODAY) is None


def test_status_for_all_flags(db_session, family, card, add_txn):
    add_txn(card, "460.00", date(2025, 3, 2))
    statuses = {s.name: s for s in SpendingStatusService(db_session).status_for_all(TODAY)}

    assert set(statuses) == {"Terry", "CJ", "Paige", "Haley"}
    paige = statuses["Paige"]
    assert paige.is_warning is True
    assert paige.is_over is False
    assert paige.percent_used == pytest.approx(92.0)
    assert statuses["Haley"].current_spend == Decimal("0.00")
    assert statuses["Haley"].is_warning is False
