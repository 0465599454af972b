from __future__ import annotations

from decimal import Decimal

from sqlalchemy.orm import Session

from .core.config import settings
from .core.database import SessionLocal
from .models import AlertMode, NotificationSetting, Person, PersonRole, SpendingLimit

FAMILY = (
    ("Terry", PersonRole.PARENT),
    ("CJ", PersonRole.PARENT),
    ("Paige", PersonRole.CHILD),
    ("Haley", PersonRole.CHILD),
)


def seed_family(db: Session) -> list[Person]:
    """Fixed family roster with default limits; safe to run repeatedly."""
    people: list[Person] = []
    default_limit = Decimal(str(settings.DEFAULT_MONTHLY_LIMIT))
    for name, role in FAMILY:
        person = db.query(Person).filter_by(name=name).first()
        if not person:
            person = Person(name=name, role=role)
            db.add(person)
            db.flush()
        if not db.query(SpendingLimit).filter_by(person_id=person.id).first():
            db.add(SpendingLimit(person_id=person.id, monthly_limit=default_limit))
        # parents hear about every purchase until they choose otherwise
        if role is PersonRole.PARENT and not db.query(NotificationSetting).filter_by(person_id=person.id).first():
            db.add(NotificationSetting(person_id=person.id, alert_mode=AlertMode.ALL))
        people.append(person)
    db.flush()
    return people


def seed() -> None:
    db: Session = SessionLocal()
    try:
        seed_family(db)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed()
