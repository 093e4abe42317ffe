"""Shared fixtures: per-test SQLite database, fake gateway, seed helpers."""

import os

os.environ["POSTGRES_DSN"] = "sqlite://"
os.environ["API_KEY"] = "test-key"
os.environ["GATEWAY_KEY_ID"] = "rzp_test_key"
os.environ["GATEWAY_KEY_SECRET"] = "test_secret"
os.environ["GATEWAY_WEBHOOK_SECRET"] = "whsec_test"
os.environ["OTEL_ENABLED"] = "false"
os.environ["OUTBOX_ENABLED"] = "false"
os.environ["RATE_LIMIT_PER_MINUTE"] = "0"

import hashlib
import hmac
from datetime import datetime
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from learnpay.common.db import Base
from learnpay.common.errors import GatewayUnavailable
from learnpay.services.enrollment.models import Course, Learner
from learnpay.services.gateway_adapter.service import RazorpayGateway, RemoteOrder
from learnpay.services.reconciliation.models import Obligation
from learnpay.services.reconciliation.service import FEE_INSTALLMENT, ReconciliationService


KEY_SECRET = "test_secret"
WEBHOOK_SECRET = "whsec_test"


def sign(remote_order_id: str, remote_payment_id: str, secret: str = KEY_SECRET) -> str:
    message = f"{remote_order_id}|{remote_payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_body(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class FakeGateway(RazorpayGateway):
    """Issues `ro_1`, `ro_2`, ... without network; signatures use the real HMAC check."""

    def __init__(self) -> None:
        super().__init__(key_id="rzp_test_key", key_secret=KEY_SECRET, webhook_secret=WEBHOOK_SECRET)
        self.calls: list[dict] = []
        self.unavailable = False

    async def create_remote_order(self, amount_minor: int, currency: str, idempotency_key: str) -> RemoteOrder:
        if self.unavailable:
            raise GatewayUnavailable("payment gateway timed out")
        self.calls.append({"amount_minor": amount_minor, "currency": currency, "idempotency_key": idempotency_key})
        return RemoteOrder(remote_order_id=f"ro_{len(self.calls)}", amount_minor=amount_minor, currency=currency)


class Seeder:
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def learner(self, learner_id: str = "learner-1", role: str = "student") -> str:
        with self.session_factory() as db:
            db.add(Learner(learner_id=learner_id, name=learner_id, email=f"{learner_id}@example.com", role=role))
            db.commit()
        return learner_id

    def course(self, course_id: str = "course-1", creator_id: str = "creator-1", price_minor: int = 1000) -> str:
        with self.session_factory() as db:
            db.add(Course(course_id=course_id, title="Algebra", creator_id=creator_id, price_minor=price_minor, currency="INR"))
            db.commit()
        return course_id

    def obligation(
        self,
        total_minor: int = 1000,
        learner_id: str = "learner-1",
        kind: str = FEE_INSTALLMENT,
        course_id: str | None = None,
        due_date: datetime | None = None,
        status: str = "pending",
    ) -> str:
        obligation_id = str(uuid4())
        with self.session_factory() as db:
            db.add(
                Obligation(
                    obligation_id=obligation_id,
                    kind=kind,
                    learner_id=learner_id,
                    course_id=course_id,
                    title="Coaching Fee",
                    total_amount_minor=total_minor,
                    amount_paid_minor=0,
                    due_amount_minor=total_minor,
                    status=status,
                    currency="INR",
                    due_date=due_date,
                )
            )
            db.commit()
        return obligation_id


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'learnpay.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def service(session_factory, gateway):
    return ReconciliationService(session_factory, gateway)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)
