import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("XENDIT_API_KEY", "xnd_development_test")
os.environ.setdefault("XENDIT_WEBHOOK_TOKEN", "callback-token-test")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from locker_rental import config
from locker_rental.broker import get_publisher
from locker_rental.ledger.db import get_session
from locker_rental.hardware.app import app as hardware_app
from locker_rental.payment.app import app as payment_app
from locker_rental.rental.api import get_gateway
from locker_rental.rental.app import app as rental_app
from tests.helpers import CALLBACK_TOKEN, FakeGateway, RecordingPublisher


@pytest.fixture(autouse=True)
def callback_token(monkeypatch):
    monkeypatch.setattr(config, "XENDIT_WEBHOOK_TOKEN", CALLBACK_TOKEN)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def gateway():
    return FakeGateway()


# Les apps partagent la session de test, le publisher enregistreur
# et la fausse gateway. TestClient n'est pas utilisé comme context
# manager : les threads de démarrage (consumer, scheduler) ne partent pas.
@pytest.fixture
def client(session, publisher, gateway):
    apps = (rental_app, payment_app, hardware_app)
    for a in apps:
        a.dependency_overrides[get_session] = lambda: session
        a.dependency_overrides[get_publisher] = lambda: publisher
        a.dependency_overrides[get_gateway] = lambda: gateway
    yield {
        "rental": TestClient(rental_app),
        "payment": TestClient(payment_app),
        "hardware": TestClient(hardware_app),
    }
    for a in apps:
        a.dependency_overrides.clear()
