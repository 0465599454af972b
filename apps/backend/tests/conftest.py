from __future__ import annotations

import os
import tempfile
from datetime import date
from decimal import Decimal
from typing import Generator, Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from familybudget.core.database import Base, get_db
from familybudget.core.errors import AggregatorError, TransportError
from familybudget.main import app
from familybudget import models, routers
from familybudget.schemas import AggregatorTransaction, LinkedAccount, PushMessage, PushResult, SmsReceipt, SyncPage
from familybudget.seed import seed_family


# ---------------------------------------------------------------------------
# Fakes for the external collaborators
# ---------------------------------------------------------------------------

class FakeAggregator:
    """Serves queued pages per access token; an empty queue means nothing new."""

    def __init__(self) -> None:
        self.pages: dict[str, list[SyncPage]] = {}
        self.failing: set[str] = set()
        self.calls: list[tuple[str, str | None]] = []
        self.linked: dict[str, LinkedAccount] = {}

    def queue(self, access_token: str, *pages: SyncPage) -> None:
        self.pages.setdefault(access_token, []).extend(pages)

    def sync(self, access_token: str, cursor: str | None) -> SyncPage:
        self.calls.append((access_token, cursor))
        if access_token in self.failing:
            raise AggregatorError("ITEM_LOGIN_REQUIRED", status=400, code="ITEM_LOGIN_REQUIRED")
        queued = self.pages.get(access_token) or []
        if not queued:
            return SyncPage(next_cursor=cursor, has_more=False)
        return queued.pop(0)

    def exchange_public_token(self, public_token: str) -> LinkedAccount:
        if public_token not in self.linked:
            raise AggregatorError("INVALID_PUBLIC_TOKEN", status=400, code="INVALID_PUBLIC_TOKEN")
        return self.linked[public_token]


class FakePushTransport:
    def __init__(self) -> None:
        self.sent: list[tuple[list[str], PushMessage]] = []
        self.fail = False

    def send(self, tokens: list[str], message: PushMessage) -> PushResult:
        if self.fail:
            raise TransportError("push down")
        self.sent.append((list(tokens), message))
        return PushResult(sent=len(tokens))

    def titles(self) -> list[str]:
        return [message.title for _, message in self.sent]


class FakeSmsTransport:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.failing: set[str] = set()

    def send(self, to: str, text: str) -> SmsReceipt:
        if to in self.failing:
            raise TransportError(f"SMS to {to} failed")
        self.sent.append((to, text))
        return SmsReceipt(sid=f"SM{len(self.sent)}", to=to, body=text)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def test_db_url() -> Generator[str, Any, Any]:
    # temp-file SQLite so the developer database is never touched
    fd, path = tempfile.mkstemp(prefix="familybudget_test_", suffix=".sqlite3")
    os.close(fd)
    url = f"sqlite:///{path}"
    yield url
    try:
        os.remove(path)
    except OSError:
        pass


@pytest.fixture(scope="session")
def engine(test_db_url: str):
    eng = create_engine(test_db_url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture(scope="session")
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture(scope="function")
def db_session(engine, session_factory) -> Generator[Any, Any, Any]:
    session = session_factory()
    # every test starts from the seeded family: Terry/CJ (parents), Paige/Haley (children)
    people = seed_family(session)
    for person in people:
        if person.is_parent:
            person.phone_number = f"+1555000{person.id:04d}"
        session.add(models.DeviceToken(person_id=person.id, token=f"device-{person.name.lower()}"))
    session.commit()

    try:
        yield session
    finally:
        session.close()
        with engine.begin() as conn:
            if engine.dialect.name == "sqlite":
                conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
            for tbl in Base.metadata.tables.values():
                conn.execute(tbl.delete())
            if engine.dialect.name == "sqlite":
                conn.exec_driver_sql("PRAGMA foreign_keys=ON")


@pytest.fixture()
def family(db_session) -> dict[str, models.Person]:
    return {p.name: p for p in db_session.query(models.Person).all()}


@pytest.fixture()
def card(db_session, family) -> models.LinkedCard:
    """Paige's card, linked and never synced."""
    linked = models.LinkedCard(
        person_id=family["Paige"].id,
        aggregator_account_id="acct-paige",
        access_token="access-paige",
        mask="1234",
        nickname="Paige Visa",
    )
    db_session.add(linked)
    db_session.commit()
    return linked


@pytest.fixture()
def add_txn(db_session):
    """Insert a stored transaction directly, bypassing sync."""
    counter = {"n": 0}

    def _add(
        card: models.LinkedCard,
        amount: str | Decimal,
        occurred_on: date,
        merchant_name: str = "Target",
        *,
        is_refund: bool = False,
        is_food_delivery: bool = False,
        category: str | None = "Shopping",
    ) -> models.Transaction:
        counter["n"] += 1
        txn = models.Transaction(
            card_id=card.id,
            external_id=f"seed-{counter['n']}",
            amount=Decimal(str(amount)),
            is_refund=is_refund,
            merchant_name=merchant_name,
            category=category,
            occurred_on=occurred_on,
            is_food_delivery=is_food_delivery,
        )
        db_session.add(txn)
        db_session.commit()
        return txn

    return _add


@pytest.fixture()
def make_record():
    def _make(
        external_id: str,
        amount: str | float,
        merchant_name: str | None,
        occurred_on: date,
        *,
        category: str | None = None,
        detailed_category: str | None = None,
    ) -> AggregatorTransaction:
        return AggregatorTransaction(
            external_id=external_id,
            amount=amount,
            merchant_name=merchant_name,
            category=category,
            detailed_category=detailed_category,
            occurred_on=occurred_on,
        )

    return _make


# ---------------------------------------------------------------------------
# Fakes and API client
# ---------------------------------------------------------------------------

@pytest.fixture()
def aggregator() -> FakeAggregator:
    return FakeAggregator()


@pytest.fixture()
def push() -> FakePushTransport:
    return FakePushTransport()


@pytest.fixture()
def sms() -> FakeSmsTransport:
    return FakeSmsTransport()


@pytest.fixture(autouse=True)
def override_dependency(db_session, session_factory, aggregator, push, sms):
    # FastAPI DI override
    def _get_db_override():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db_override
    app.dependency_overrides[routers.get_session_factory] = lambda: session_factory
    app.dependency_overrides[routers.get_aggregator] = lambda: aggregator
    app.dependency_overrides[routers.get_push_transport] = lambda: push
    app.dependency_overrides[routers.get_sms_transport] = lambda: sms
    yield
    app.dependency_overrides.clear()


@pytest.fixture()
def client(db_session):
    from fastapi.testclient import TestClient
    with TestClient(app) as c:
        yield c
