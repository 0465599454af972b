"""
Transaction sync tests: ingest, cursor handling, alerts and fan-out
"""

from datetime import date
from decimal import Decimal

from familybudget import models
from familybudget.schemas import SyncPage
from familybudget.services.notifier import Notifier
from familybudget.services.transaction_sync import (
    CardLockRegistry,
    TransactionSyncService,
    link_card,
    sync_all,
)

TODAY = date(2025, 3, 20)


def _service(db_session, aggregator, push, **kwargs) -> TransactionSyncService:
    return TransactionSyncService(db_session, aggregator, Notifier(db_session, push), **kwargs)


def _stored(db_session) -> dict[str, models.Transaction]:
    db_session.expire_all()
    return {t.external_id: t for t in db_session.query(models.Transaction).all()}


def test_added_batch_is_idempotent(db_session, card, aggregator, push, make_record):
    batch = [
        make_record("t1", "12.50", "Target", TODAY, category="GENERAL_MERCHANDISE"),
        make_record("t2", "8.00", "Starbucks", TODAY, category="FOOD_AND_DRINK"),
    ]
    aggregator.queue("access-paige", SyncPage(added=batch, next_cursor="c1"))
    aggregator.queue("access-paige", SyncPage(added=batch, next_cursor="c2"))
    service = _service(db_session, aggregator, push)

    first = service.sync_card(card, TODAY)
    sent_after_first = len(push.sent)
    second = service.sync_card(card, TODAY)

    assert first.inserted == 2
    assert second.added == 2
    assert second.inserted == 0
    assert second.notifications == 0
    assert len(push.sent) == sent_after_first
    assert sorted(_stored(db_session)) == ["t1", "t2"]


def test_refund_sign_handling(db_session, card, aggregator, push, make_record):
    aggregator.queue(
        "access-paige",
        SyncPage(
            added=[
                make_record("refund", "-15.00", "Target", TODAY, category="GENERAL_MERCHANDISE"),
                make_record("charge", "15.00", "Target", TODAY, category="GENERAL_MERCHANDISE"),
            ],
            next_cursor="c1",
        ),
    )
    _service(db_session, aggregator, push).sync_card(card, TODAY)

    stored = _stored(db_session)
    assert stored["refund"].amount == Decimal("15.00")
    assert stored["refund"].is_refund is True
    assert stored["refund"].category == "Refund"
    assert stored["charge"].amount == Decimal("15.00")
    assert stored["charge"].is_refund is False
    assert stored["charge"].category == "GENERAL_MERCHANDISE"


def test_classification_flags_are_stored(db_session, card, aggregator, push, make_record):
    aggregator.queue(
        "access-paige",
        SyncPage(
            added=[
                make_record("dd", "22.00", "DOORDASH*BURGER", TODAY, category="FOOD_AND_DRINK"),
                make_record("nf", "15.49", "Netflix", TODAY, detailed_category="SUBSCRIPTION"),
            ],
        ),
    )
    _service(db_session, aggregator, push).sync_card(card, TODAY)

    stored = _stored(db_session)
    assert stored["dd"].is_food_delivery is True
    assert stored["dd"].category == "Food Delivery"
    assert stored["nf"].is_recurring is True
    assert stored["nf"].is_food_delivery is False


def test_drains_pages_and_persists_cursor(db_session, card, aggregator, push, make_record):
    aggregator.queue(
        "access-paige",
        SyncPage(added=[make_record("p1", "5.00", "Target", TODAY)], next_cursor="c1", has_more=True),
        SyncPage(added=[make_record("p2", "6.00", "Target", TODAY)], next_cursor="c2", has_more=False),
    )
    service = _service(db_session, aggregator, push)

    result = service.sync_card(card, TODAY)

    assert result.pages == 2
    assert aggregator.calls == [("access-paige", None), ("access-paige", "c1")]
    db_session.expire_all()
    assert card.sync_cursor == "c2"
    assert card.last_synced_at is not None

    # the next pass resumes from the stored cursor
    service.sync_card(card, TODAY)
    assert aggregator.calls[-1] == ("access-paige", "c2")


def test_modified_and_removed(db_session, card, aggregator, push, make_record):
    aggregator.queue(
        "access-paige",
        SyncPage(
            added=[
                make_record("t1", "12.50", "Target", TODAY),
                make_record("t2", "8.00", "Starbucks", TODAY),
            ],
            next_cursor="c1",
        ),
        SyncPage(
            modified=[make_record("t1", "14.00", "Target #45", TODAY, category="GENERAL_MERCHANDISE")],
            removed=["t2", "never-seen"],
            next_cursor="c2",
        ),
    )
    service = _service(db_session, aggregator, push)
    service.sync_card(card, TODAY)
    sent_before = len(push.sent)

    result = service.sync_card(card, TODAY)

    stored = _stored(db_session)
    assert list(stored) == ["t1"]
    assert stored["t1"].amount == Decimal("14.00")
    assert stored["t1"].merchant_name == "Target #45"
    assert stored["t1"].category == "GENERAL_MERCHANDISE"
    assert result.modified == 1
    assert result.removed == 2
    # modifications and removals never notify
    assert len(push.sent) == sent_before


def test_over_limit_end_to_end(db_session, family, card, aggregator, push, add_txn, make_record):
    add_txn(card, "480.00", date(2025, 3, 2))
    record = make_record("big", "30.00", "Target", TODAY, category="GENERAL_MERCHANDISE")
    aggregator.queue("access-paige", SyncPage(added=[record], next_cursor="c1"))
    aggregator.queue("access-paige", SyncPage(added=[record], next_cursor="c2"))
    service = _service(db_session, aggregator, push)

    first = service.sync_card(card, TODAY)

    assert first.inserted == 1
    # two parents on "all" plus one over-limit push
    assert first.notifications == 3
    assert "🚨 Limit Exceeded!" in push.titles()
    db_session.expire_all()
    kinds = {row.kind for row in db_session.query(models.AlertLedgerEntry).all()}
    assert kinds == {"parent_purchase", "limit_exceeded_2"}

    replay = service.sync_card(card, TODAY)
    assert replay.inserted == 0
    assert replay.notifications == 0
    assert len(push.sent) == 3


def test_notification_failure_does_not_block_ingest(db_session, card, aggregator, push, make_record):
    push.fail = True
    aggregator.queue(
        "access-paige",
        SyncPage(added=[make_record("t1", "30.00", "Target", TODAY)], next_cursor="c1"),
    )

    result = _service(db_session, aggregator, push).sync_card(card, TODAY)

    assert result.inserted == 1
    assert result.notifications == 0
    assert "t1" in _stored(db_session)
    assert card.sync_cursor == "c1"


def test_overlapping_sync_is_skipped(db_session, card, aggregator, push, make_record):
    locks = CardLockRegistry()
    aggregator.queue("access-paige", SyncPage(added=[make_record("t1", "3.00", "Target", TODAY)]))
    held = locks.lock_for(card.id)
    held.acquire()
    try:
        result = _service(db_session, aggregator, push, locks=locks).sync_card(card, TODAY)
    finally:
        held.release()

    assert result.skipped is True
    assert aggregator.calls == []
    assert _stored(db_session) == {}


def test_known_subscription_is_refreshed(db_session, family, card, aggregator, push, make_record):
    sub = models.Subscription(
        person_id=family["Paige"].id,
        merchant_name="Netflix",
        amount=Decimal("15.49"),
        next_renewal_date=date(2025, 3, 1),
    )
    db_session.add(sub)
    db_session.commit()
    aggregator.queue(
        "access-paige",
        SyncPage(added=[make_record("nf", "17.99", "NETFLIX.COM", TODAY)], next_cursor="c1"),
    )

    _service(db_session, aggregator, push).sync_card(card, TODAY)

    db_session.expire_all()
    assert sub.next_renewal_date == date(2025, 4, 20)
    assert sub.amount == Decimal("17.99")


def test_sync_all_isolates_failures(db_session, session_factory, family, card, aggregator, push, make_record):
    haley_card = models.LinkedCard(
        person_id=family["Haley"].id,
        aggregator_account_id="acct-haley",
        access_token="access-haley",
        mask="9876",
    )
    unlinked = models.LinkedCard(person_id=family["Haley"].id, aggregator_account_id="acct-old", access_token=None)
    db_session.add_all([haley_card, unlinked])
    db_session.commit()
    aggregator.failing.add("access-haley")
    aggregator.queue(
        "access-paige",
        SyncPage(added=[make_record("t1", "9.99", "Target", TODAY)], next_cursor="c1"),
    )

    result = sync_all(session_factory, aggregator, push, max_workers=1, today=TODAY)

    assert result.succeeded == 1
    assert result.failed == 1
    assert list(result.errors) == [haley_card.id]
    assert [r.card_id for r in result.cards] == [card.id]
    assert "t1" in _stored(db_session)
    # cards without a credential are not synced at all
    assert {token for token, _ in aggregator.calls} == {"access-paige", "access-haley"}


class TestLinkCard:
    def test_new_card(self, db_session, family):
        linked = link_card(
            db_session,
            person_id=family["Haley"].id,
            aggregator_account_id="acct-new",
            access_token="access-new",
            mask="5555",
        )
        assert linked.id is not None
        assert linked.sync_cursor is None

    def test_relink_reuses_row_and_resets_cursor(self, db_session, card):
        card.sync_cursor = "stale"
        db_session.commit()

        relinked = link_card(
            db_session,
            person_id=card.person_id,
            aggregator_account_id="acct-paige-2",
            access_token="access-paige-2",
            mask="1234",
        )

        assert relinked.id == card.id
        assert relinked.sync_cursor is None
        assert relinked.access_token == "access-paige-2"
        assert relinked.aggregator_account_id == "acct-paige-2"
        assert db_session.query(models.LinkedCard).count() == 1
