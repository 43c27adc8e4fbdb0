from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from billo import config, models
from billo.api import app
from billo.database import Base, get_db, make_engine
from billo.notifications import get_email_sender

API_KEY = "test-api-key"


class RecordingSender:
    """Collects emails instead of sending them."""

    def __init__(self):
        self.sent = []

    def send(self, message):
        self.sent.append(message)

    def subjects_for(self, email):
        return [m.subject for m in self.sent if m.to == email]


class FailingSender:
    def send(self, message):
        raise RuntimeError("mail provider down")


def auth_headers(user_id):
    return {"Authorization": f"Bearer {API_KEY}", "X-User-Id": user_id}


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    """
    Alice paid for dinner in "Trip" (members Alice, Bob, Carol). Dave is a
    registered user outside the group.

    Pizza 30.00 and Wine 20.00, tax 5.00.
    """
    alice = models.User(id="user_alice", email="alice@example.com", name="Alice")
    bob = models.User(id="user_bob", email="bob@example.com", name="Bob")
    carol = models.User(id="user_carol", email="carol@example.com", name=None)
    dave = models.User(id="user_dave", email="dave@example.com", name="Dave")
    db.add_all([alice, bob, carol, dave])
    db.flush()

    group = models.Group(name="Trip", emoji="🏖️", created_by=alice.id)
    db.add(group)
    db.flush()
    db.add_all([
        models.GroupMember(group_id=group.id, user_id=alice.id, role="admin"),
        models.GroupMember(group_id=group.id, user_id=bob.id),
        models.GroupMember(group_id=group.id, user_id=carol.id),
    ])

    receipt = models.Receipt(
        user_id=alice.id,
        group_id=group.id,
        merchant_name="Luigi's",
        total_amount=Decimal("55.00"),
        tax=Decimal("5.00"),
        status="completed",
    )
    db.add(receipt)
    db.flush()
    pizza = models.ReceiptItem(
        receipt_id=receipt.id, name="Pizza", quantity=Decimal("1"),
        unit_price=Decimal("30.00"), total_price=Decimal("30.00"), line_number=1,
    )
    wine = models.ReceiptItem(
        receipt_id=receipt.id, name="Wine", quantity=Decimal("2"),
        unit_price=Decimal("10.00"), total_price=Decimal("20.00"), line_number=2,
    )
    db.add_all([pizza, wine])
    db.commit()

    return SimpleNamespace(
        alice=alice, bob=bob, carol=carol, dave=dave,
        group=group, receipt=receipt, pizza=pizza, wine=wine,
    )


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def client(session_factory, sender, monkeypatch):
    monkeypatch.setattr(config, "API_KEY", API_KEY)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_email_sender] = lambda: sender
    yield TestClient(app)
    app.dependency_overrides.clear()
