from __future__ import annotations

from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from familybudget import models
from familybudget.core.database import dialect_insert
from familybudget.utils.dates import month_index

CHILD_FOOD_DELIVERY = "child_food_delivery"
PARENT_PURCHASE = "parent_purchase"


def limit_warning_kind(on: date) -> str:
    """Warning kind re-arms every calendar month: ``limit_warning_90_<m>``."""
    return f"limit_warning_90_{month_index(on)}"


def limit_exceeded_kind(on: date) -> str:
    return f"limit_exceeded_{month_index(on)}"


class AlertLedger:
    """Duplicate-suppression record of (recipient, reference, kind) triples.

    Rows are only ever inserted (insert-or-ignore) and read.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def was_sent(self, recipient_id: int, reference_id: int, kind: str) -> bool:
        stmt = select(models.AlertLedgerEntry.id).where(
            models.AlertLedgerEntry.recipient_id == recipient_id,
            models.AlertLedgerEntry.reference_id == reference_id,
            models.AlertLedgerEntry.kind == kind,
        )
        return self.db.execute(stmt.limit(1)).first() is not None

    def record(self, recipient_id: int, reference_id: int, kind: str) -> bool:
        """Insert the triple unless it already exists.

        Returns ``True`` when this call created the row. A concurrent writer
        that got there first is not an error.
        """
        insert = dialect_insert(self.db)
        stmt = (
            insert(models.AlertLedgerEntry)
            .values(
                recipient_id=recipient_id,
                reference_id=reference_id,
                kind=kind,
                sent_at=models.now_local_naive(),
            )
            .on_conflict_do_nothing()
            .returning(models.AlertLedgerEntry.id)
        )
        created = self.db.execute(stmt).first() is not None
        self.db.flush()
        return created
