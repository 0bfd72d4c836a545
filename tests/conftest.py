from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.pool import StaticPool

from settlement import create_app
from settlement.events import OrderCompletedEvent
from settlement.models import EntryReason, PartyType, db
from settlement.money import Money
from settlement.services.ledger import Posting
from settlement.services.transaction import tx

ORDER_SECRET = "order-secret"
TRANSFER_SECRET = "transfer-secret"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw: Any) -> datetime:
        self.now = self.now + timedelta(**kw)
        return self.now


class FakeGateway:
    """
    script: lista de resultados por llamada (str = transfer ref, Exception = se lanza).
    Sin script => éxito con ref incremental.
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.script: List[Any] = []

    def create_transfer(self, destination_account, amount, idempotency_key, metadata=None) -> str:
        self.calls.append(
            {
                "destination": destination_account,
                "amount": amount,
                "idempotency_key": idempotency_key,
                "metadata": dict(metadata or {}),
            }
        )
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return f"tr_test_{len(self.calls)}"


class Seeder:
    """Arma marcas/afiliados/referidos/saldos vía los servicios reales."""

    def __init__(self, services):
        self.s = services

    def brand(self, brand_id: str = "brand-1", owner: str = "owner-1", rate: Any = "0.50"):
        self.s.brands.register(brand_id, owner, name=f"Brand {brand_id}", commission_rate=rate)
        return self.s.brands.approve(brand_id)

    def affiliate(
        self,
        brand_id: str = "brand-1",
        user_id: str = "aff-user-1",
        rate: Any = "0.20",
        affiliate_id: str = "aff-1",
        approve: bool = True,
    ):
        a = self.s.affiliates.apply(brand_id, user_id, commission_rate=rate, affiliate_id=affiliate_id)
        if approve:
            a = self.s.affiliates.approve(a.id, by="admin")
        return a

    def referral(self, referrer: str = "referrer-1", referred: str = "owner-1", complete: bool = True):
        ref = self.s.referrals.issue_code(referrer)
        ref = self.s.referrals.attach_signup(ref.code, referred)
        if complete:
            ref = self.s.referrals.complete(referred)
        return ref

    def account(self, party_type: str = "brand", party_id: str = "brand-1", ref: str = "acct_brand_1", active: bool = True):
        return self.s.accounts.link(party_type, party_id, ref, active=active)

    def credit(self, party_type: Any, party_id: str, minor: int, key: str):
        with tx(db.session):
            return self.s.ledger.post(
                [
                    Posting(
                        party_type=PartyType(party_type) if isinstance(party_type, str) else party_type,
                        party_id=party_id,
                        amount=Money(minor),
                        reason=EntryReason.COMMISSION_CREDIT,
                        idempotency_key=key,
                        order_id=key,
                    )
                ]
            )

    def order(self, order_id: str = "order-1", brand_id: str = "brand-1", total: str = "100.00", ref: Optional[str] = None):
        payload: Dict[str, Any] = {"orderId": order_id, "brandId": brand_id, "totalAmount": total, "currency": "USD"}
        if ref:
            payload["affiliateClickRef"] = ref
        return self.s.ingestion.ingest(OrderCompletedEvent.from_payload(payload))


@pytest.fixture(scope="session")
def _env():
    os.environ.setdefault("ENV", "testing")
    os.environ.setdefault("FLASK_ENV", "testing")
    os.environ.setdefault("SECRET_KEY", "dev-secret")
    yield


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def app(_env, clock, gateway, sleeps):
    # sqlite:// + StaticPool => una sola conexión viva para toda la prueba
    app = create_app(
        "testing",
        overrides={
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "SQLALCHEMY_ENGINE_OPTIONS": {
                "connect_args": {"check_same_thread": False},
                "poolclass": StaticPool,
            },
            "ORDER_WEBHOOK_SECRET": ORDER_SECRET,
            "TRANSFER_WEBHOOK_SECRET": TRANSFER_SECRET,
            "STRIPE_WEBHOOK_SECRET": STRIPE_WEBHOOK_SECRET,
            "PAYOUT_MIN_AMOUNT_CENTS": 100,
            "PAYOUT_MAX_ATTEMPTS": 3,
            "PROPAGATE_EXCEPTIONS": True,
        },
        gateway=gateway,
        clock=clock,
        sleep=sleeps.append,
    )

    with app.app_context():
        db.drop_all()
        db.create_all()

        yield app

        db.session.rollback()
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def services(app):
    return app.extensions["settlement"]


@pytest.fixture()
def seed(services):
    return Seeder(services)
