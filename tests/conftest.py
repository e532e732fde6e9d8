import hashlib
import hmac
import json
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from core.db import Base, get_db
from core import config as core_config
from models.enums import WebhookEventKind
from models.fee_tier import PlatformFeeTier
from models.tenant import Tenant
from schemas.order import OrderCreate
from security import jwt as jwt_utils
from security.actor import Actor
from services.checkout import create_order
from services.fees import seed_default_tiers
from services.gateways import GatewayRegistry, get_gateway_registry
from services.gateways.base import GatewayAdapter, GatewayEvent, GatewayRefundResult, GatewayResult
from services.ledger import PaymentLedger


@pytest.fixture(scope="session", autouse=True)
def test_settings():
    core_config.settings.JWT_SECRET = "test-secret"
    core_config.settings.TESTING = True
    core_config.settings.WEBHOOK_PROCESS_ASYNC = False
    yield


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, now: datetime = datetime(2024, 3, 1, 12, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeGateway(GatewayAdapter):
    """In-process gateway; tests script declines and timeouts per operation."""

    name = "fake"
    EVENT_KINDS = {
        "payment.authorized": WebhookEventKind.PAYMENT_AUTHORIZED,
        "payment.succeeded": WebhookEventKind.PAYMENT_SUCCEEDED,
        "payment.failed": WebhookEventKind.PAYMENT_FAILED,
        "payment.cancelled": WebhookEventKind.PAYMENT_CANCELLED,
        "refund.succeeded": WebhookEventKind.REFUND_SUCCEEDED,
        "refund.failed": WebhookEventKind.REFUND_FAILED,
        "refund.updated": WebhookEventKind.REFUND_UPDATED,
        "dispute.opened": WebhookEventKind.DISPUTE_OPENED,
        "dispute.closed": WebhookEventKind.DISPUTE_CLOSED,
    }

    def __init__(self, secret: str = "whsec_fake", fee_cents: int = 320):
        self.secret = secret
        self.fee_cents = fee_cents
        self.calls = []
        self._scripted = {}
        self._seq = 0

    def fail_next(self, operation: str, exc: Exception) -> None:
        self._scripted[operation] = exc

    def _call(self, operation: str, **kwargs) -> str:
        self.calls.append((operation, kwargs))
        exc = self._scripted.pop(operation, None)
        if exc is not None:
            raise exc
        self._seq += 1
        return f"fake_{operation}_{self._seq}"

    def calls_for(self, operation: str):
        return [kwargs for op, kwargs in self.calls if op == operation]

    def authorize(self, amount_cents, currency, payment_method, metadata, idempotency_key):
        ref = self._call("authorize", amount_cents=amount_cents, metadata=metadata, idempotency_key=idempotency_key)
        return GatewayResult(transaction_id=ref, authorization_id=ref, gateway_fee_cents=self.fee_cents,
                             amount_cents=amount_cents, status="requires_capture", raw={"id": ref})

    def capture(self, authorization_id, amount_cents, currency, idempotency_key):
        self._call("capture", authorization_id=authorization_id, amount_cents=amount_cents, idempotency_key=idempotency_key)
        return GatewayResult(transaction_id=authorization_id, authorization_id=authorization_id,
                             gateway_fee_cents=self.fee_cents, amount_cents=amount_cents, status="succeeded",
                             raw={"id": authorization_id})

    def charge(self, amount_cents, currency, payment_method, metadata, idempotency_key):
        ref = self._call("charge", amount_cents=amount_cents, metadata=metadata, idempotency_key=idempotency_key)
        return GatewayResult(transaction_id=ref, gateway_fee_cents=self.fee_cents, amount_cents=amount_cents,
                             status="succeeded", raw={"id": ref})

    def refund(self, transaction_id, amount_cents, reason, idempotency_key):
        ref = self._call("refund", transaction_id=transaction_id, amount_cents=amount_cents, idempotency_key=idempotency_key)
        return GatewayRefundResult(refund_id=ref, amount_cents=amount_cents, status="succeeded", raw={"id": ref})

    def sign(self, body: bytes) -> str:
        return hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()

    def verify_webhook(self, body, headers):
        signature = {k.lower(): v for k, v in headers.items()}.get("x-fake-signature", "")
        return bool(signature) and hmac.compare_digest(self.sign(body), signature)

    def parse_event(self, payload):
        if not payload.get("id") or not payload.get("type"):
            raise ValueError("Fake event must carry 'id' and 'type'")
        data = payload.get("data") or {}
        return GatewayEvent(
            event_id=payload["id"],
            event_type=payload["type"],
            kind=self.event_kind(payload["type"]),
            transaction_reference=data.get("reference"),
            payment_id=data.get("payment_id"),
            amount_cents=data.get("amount"),
            refund_reference=data.get("refund_reference"),
            refund_status=data.get("refund_status"),
            refunded_total_cents=data.get("refunded_total"),
            gateway_fee_cents=data.get("fee"),
            failure_code=data.get("failure_code"),
            failure_message=data.get("failure_message"),
            dispute=data.get("dispute"),
        )


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db(engine):
    """Fresh database per test with the default fee tiers seeded."""
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    session = TestingSessionLocal()
    seed_default_tiers(session)
    session.commit()
    yield session
    session.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def fake_gateway():
    return FakeGateway()


@pytest.fixture()
def gateways(fake_gateway):
    return GatewayRegistry([fake_gateway])


@pytest.fixture()
def ledger(db, gateways, clock):
    return PaymentLedger(db, gateways, clock=clock)


def _tier(db, name: str) -> PlatformFeeTier:
    return db.query(PlatformFeeTier).filter(PlatformFeeTier.name == name).one()


@pytest.fixture()
def tier(db):
    """Look up a seeded fee tier by name."""
    return lambda name: _tier(db, name)


@pytest.fixture()
def tenant(db):
    """Tenant on the 1.5% enterprise tier."""
    tenant = Tenant(
        name="Acme Outfitters",
        domain="acme.example.com",
        subdomain="acme",
        fee_tier_id=_tier(db, "enterprise").id,
        is_active=True,
        is_suspended=False,
    )
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return tenant


@pytest.fixture()
def other_tenant(db):
    tenant = Tenant(name="Globex", domain="globex.example.com", subdomain="globex", is_active=True)
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return tenant


@pytest.fixture()
def actor(tenant):
    return Actor(id="7", name="Dana Merchant", role="owner", tenant_id=tenant.id)


@pytest.fixture()
def make_order(db, tenant, actor, clock):
    """Create a committed draft order totalling ``total_cents``."""

    def _make(total_cents: int = 10000, for_tenant: Tenant = None, **overrides):
        data = OrderCreate(
            customer_email=overrides.pop("customer_email", "buyer@example.com"),
            customer_name="Bo Buyer",
            currency=overrides.pop("currency", "USD"),
            items=[{"sku": "SKU-1", "name": "Trail Jacket", "quantity": 1, "unit_price_cents": total_cents}],
            shipping_address={"line1": "1 Main St", "city": "Lagos", "country": "NG"},
            **overrides,
        )
        order = create_order(db, for_tenant or tenant, data, actor, clock=clock)
        db.commit()
        db.refresh(order)
        return order

    return _make


@pytest.fixture()
def order(make_order):
    return make_order(10000)


@pytest.fixture()
def card():
    return {"type": "card", "token": "tok_visa"}


@pytest.fixture()
def deliver(fake_gateway):
    """Build a signed fake-gateway delivery: returns (body, headers)."""

    def _deliver(event_id: str, event_type: str, **data):
        body = json.dumps({"id": event_id, "type": event_type, "data": data}).encode()
        return body, {"X-Fake-Signature": fake_gateway.sign(body), "Content-Type": "application/json"}

    return _deliver


@pytest.fixture()
def client(db, gateways):
    def _get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway_registry] = lambda: gateways
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers(tenant, actor):
    """Bearer token for ``actor`` plus the tenant domain header."""
    token = jwt_utils.create_access_token(actor.id, {"name": actor.name, "role": actor.role, "tenant_id": tenant.id})
    return {"Authorization": f"Bearer {token}", "X-Tenant-Domain": tenant.domain}
