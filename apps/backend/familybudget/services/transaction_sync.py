"""
Transaction sync

Drives the aggregator's cursor-based delta sync for linked cards:

- added records are inserted with insert-or-ignore on ``external_id``; only
  rows that were genuinely new reach the notifier
- modified records are updated in place by ``external_id``
- removed records are deleted by ``external_id``
- the cursor is persisted on the card after each page, and pages are drained
  while the aggregator reports ``has_more``
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date
from threading import Lock
from typing import Callable

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from familybudget import models
from familybudget.clients.aggregator import Aggregator
from familybudget.clients.transports import PushTransport
from familybudget.core.config import settings
from familybudget.core.database import dialect_insert
from familybudget.schemas import AggregatorTransaction, CardSyncResult, SyncAllResult, SyncPage
from familybudget.services.notifier import Notifier
from familybudget.services.subscriptions import SubscriptionService
from familybudget.utils.merchant_detection import REFUND_CATEGORY, classify

logger = logging.getLogger(__name__)


class CardLockRegistry:
    """One lock per card so overlapping syncs of the same card never interleave."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[int, Lock] = {}

    def lock_for(self, card_id: int) -> Lock:
        with self._guard:
            lock = self._locks.get(card_id)
            if lock is None:
                lock = self._locks[card_id] = Lock()
            return lock


CARD_LOCKS = CardLockRegistry()


def stored_values(record: AggregatorTransaction) -> dict:
    """Column values shared by inserts and in-place updates."""
    classification = classify(record.display_merchant, record.category)
    return {
        "amount": record.magnitude,
        "is_refund": record.is_refund,
        "merchant_name": record.display_merchant,
        "category": REFUND_CATEGORY if record.is_refund else classification.category,
        "occurred_on": record.occurred_on,
        "is_food_delivery": classification.is_food_delivery,
    }


class TransactionSyncService:
    def __init__(
        self,
        db: Session,
        aggregator: Aggregator,
        notifier: Notifier | None = None,
        subscriptions: SubscriptionService | None = None,
        locks: CardLockRegistry | None = None,
    ) -> None:
        self.db = db
        self.aggregator = aggregator
        self.notifier = notifier
        self.subscriptions = subscriptions or SubscriptionService(db)
        self.locks = locks or CARD_LOCKS

    def sync_card(self, card: models.LinkedCard | int, today: date | None = None) -> CardSyncResult:
        """Drain every pending page for one card.

        A second caller for a card that is already syncing gets back a result
        with ``skipped=True`` instead of waiting.
        """
        if isinstance(card, int):
            card = self.db.get(models.LinkedCard, card)
            if card is None:
                raise LookupError("Linked card not found")

        lock = self.locks.lock_for(card.id)
        if not lock.acquire(blocking=False):
            logger.warning("Card %s is already syncing, skipping", card.id)
            return CardSyncResult(card_id=card.id, skipped=True)
        try:
            return self._drain(card, today)
        except Exception:
            self.db.rollback()
            logger.exception("Error syncing card %s", card.id)
            raise
        finally:
            lock.release()

    def _drain(self, card: models.LinkedCard, today: date | None) -> CardSyncResult:
        result = CardSyncResult(card_id=card.id)
        owner = card.person
        has_more = True
        while has_more:
            page = self.aggregator.sync(card.access_token, card.sync_cursor)
            result.pages += 1
            logger.info(
                "Card %s: %d new, %d modified, %d removed",
                card.id,
                len(page.added),
                len(page.modified),
                len(page.removed),
            )
            self.apply_page(card, owner, page, result, today)

            card.sync_cursor = page.next_cursor
            card.last_synced_at = models.now_local_naive()
            self.db.commit()
            has_more = page.has_more
        return result

    def apply_page(
        self,
        card: models.LinkedCard,
        owner: models.Person,
        page: SyncPage,
        result: CardSyncResult,
        today: date | None = None,
    ) -> None:
        for record in page.added:
            new_id = self._insert_if_absent(card.id, record)
            result.added += 1
            if new_id is None:
                continue
            result.inserted += 1
            # Make the row durable before any alert goes out for it
            self.db.commit()
            result.notifications += self._after_insert(new_id, owner, today)

        for record in page.modified:
            self.db.execute(
                update(models.Transaction)
                .where(models.Transaction.external_id == record.external_id)
                .values(**stored_values(record))
                .execution_options(synchronize_session=False)
            )
            result.modified += 1

        if page.removed:
            self.db.execute(
                delete(models.Transaction)
                .where(models.Transaction.external_id.in_(page.removed))
                .execution_options(synchronize_session=False)
            )
            result.removed += len(page.removed)

    def _insert_if_absent(self, card_id: int, record: AggregatorTransaction) -> int | None:
        insert = dialect_insert(self.db)
        stmt = (
            insert(models.Transaction)
            .values(
                card_id=card_id,
                external_id=record.external_id,
                is_recurring=record.is_subscription,
                created_at=models.now_local_naive(),
                **stored_values(record),
            )
            .on_conflict_do_nothing()
            .returning(models.Transaction.id)
        )
        return self.db.execute(stmt).scalar()

    def _after_insert(self, txn_id: int, owner: models.Person, today: date | None) -> int:
        txn = self.db.get(models.Transaction, txn_id)
        sent = 0
        try:
            if self.notifier is not None:
                sent = self.notifier.process_new_transaction(txn, owner, today)
            if not txn.is_refund:
                self.subscriptions.match_transaction(owner.id, txn.merchant_name, txn.amount, today)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("Post-insert processing failed for transaction %s", txn_id)
        return sent


def link_card(
    db: Session,
    *,
    person_id: int,
    aggregator_account_id: str,
    access_token: str,
    mask: str | None = None,
    nickname: str | None = None,
) -> models.LinkedCard:
    """Create or re-link a card.

    Re-linking the same physical card (same person and mask) reuses the row
    and resets its cursor, so the next sync starts fresh instead of leaving an
    orphaned duplicate card behind.
    """
    card = None
    if mask:
        card = db.execute(
            select(models.LinkedCard).where(
                models.LinkedCard.person_id == person_id,
                models.LinkedCard.mask == mask,
            )
        ).scalar_one_or_none()
    if card is None:
        card = db.execute(
            select(models.LinkedCard).where(models.LinkedCard.aggregator_account_id == aggregator_account_id)
        ).scalar_one_or_none()

    if card is None:
        card = models.LinkedCard(
            person_id=person_id,
            aggregator_account_id=aggregator_account_id,
            access_token=access_token,
            mask=mask,
            nickname=nickname,
        )
        db.add(card)
    else:
        logger.info("Re-linking card %s; cursor reset", card.id)
        card.aggregator_account_id = aggregator_account_id
        card.access_token = access_token
        card.sync_cursor = None
        if nickname:
            card.nickname = nickname
    db.commit()
    db.refresh(card)
    return card


def sync_all(
    session_factory: Callable[[], Session],
    aggregator: Aggregator,
    push: PushTransport,
    *,
    max_workers: int | None = None,
    locks: CardLockRegistry | None = None,
    today: date | None = None,
) -> SyncAllResult:
    """Sync every card with a credential; failures are tallied, never propagated."""
    with session_factory() as db:
        card_ids = list(
            db.scalars(
                select(models.LinkedCard.id)
                .where(models.LinkedCard.access_token.is_not(None))
                .order_by(models.LinkedCard.id)
            )
        )
    logger.info("Syncing %d cards...", len(card_ids))

    def _run(card_id: int) -> CardSyncResult:
        with session_factory() as db:
            service = TransactionSyncService(db, aggregator, Notifier(db, push), locks=locks)
            return service.sync_card(card_id, today)

    result = SyncAllResult()
    if not card_ids:
        return result

    workers = max(1, min(max_workers or settings.SYNC_MAX_WORKERS, len(card_ids)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="card-sync") as pool:
        futures = {pool.submit(_run, card_id): card_id for card_id in card_ids}
        for future in as_completed(futures):
            card_id = futures[future]
            try:
                card_result = future.result()
            except Exception as exc:
                result.failed += 1
                result.errors[card_id] = str(exc)
                continue
            if card_result.skipped:
                result.skipped += 1
            else:
                result.succeeded += 1
            result.cards.append(card_result)

    result.cards.sort(key=lambda r: r.card_id)
    logger.info(
        "Transaction sync complete: %d succeeded, %d failed, %d skipped",
        result.succeeded,
        result.failed,
        result.skipped,
    )
    return result
