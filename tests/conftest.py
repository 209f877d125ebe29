"""
Fixtures compartidas
tests/conftest.py

SQLite en memoria (StaticPool) para que la app y los tests vean la misma
base. Pasarela y notificaciones van contra httpx.MockTransport: ningún
test sale a la red.
"""

import json
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("REDIS_URL", None)

from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.main import app
from app.middleware.authorization import create_access_token
from app.models import (
    CategoryKind, ContributionType, Due, Member, MonthlyDueSetting, Organization,
    Payment, PaymentStatus,
)
from app.services.balance_tracker import BalanceTracker
from app.services.gateway import API_KEY_HEADER, PaymentGateway, set_gateway
from app.services.locks import reset_locks
from app.services.notifications import NotificationDispatcher, set_dispatcher
from app.services.rate_limit import rate_limiter
from app.services.settlement import money, status_for

GATEWAY_KEY = "test-gateway-key"

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


# ══════════════════════════════════════════════════════════
# BASE DE DATOS
# ══════════════════════════════════════════════════════════

@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ══════════════════════════════════════════════════════════
# ESTADO DE PROCESO
# ══════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def reset_process_state():
    reset_locks()
    rate_limiter.reset()
    yield
    reset_locks()
    rate_limiter.reset()


class NotificationSink:
    """Guarda cada notificación que el dispatcher postea."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail:
            return httpx.Response(503, json={"message": "unavailable"})
        self.sent.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    def kinds(self):
        return [n["notification_type"] for n in self.sent]


@pytest.fixture(autouse=True)
def notifications():
    sink = NotificationSink()
    set_dispatcher(NotificationDispatcher(
        webhook_url="https://notify.test/hook",
        client=httpx.Client(transport=httpx.MockTransport(sink.handler)),
    ))
    yield sink
    set_dispatcher(NotificationDispatcher(webhook_url=""))


class FakeGateway:
    """Respuestas de la pasarela por endpoint; registra lo que se le envió."""

    def __init__(self):
        self.requests = []
        self.responses = {
            "checkout-v2": (200, {
                "status": True,
                "invoice_id": "INV-1001",
                "payment_url": "https://pay.test/checkout/INV-1001",
            }),
            "verify-payment": (200, {
                "invoice_id": "INV-1001",
                "status": "COMPLETED",
                "transaction_id": "TX-9001",
                "payment_method": "bkash",
                "amount": "100.00",
                "fee": "1.50",
            }),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.rsplit("/", 1)[-1]
        self.requests.append({
            "endpoint": endpoint,
            "body": json.loads(request.content),
            "api_key": request.headers.get(API_KEY_HEADER),
        })
        status, body = self.responses[endpoint]
        return httpx.Response(status, json=body)


@pytest.fixture(autouse=True)
def gateway():
    fake = FakeGateway()
    set_gateway(PaymentGateway(
        api_key=GATEWAY_KEY,
        base_url="https://gateway.test/api",
        client=httpx.Client(transport=httpx.MockTransport(fake.handler)),
    ))
    yield fake
    set_gateway(PaymentGateway(api_key=""))


# ══════════════════════════════════════════════════════════
# DATOS
# ══════════════════════════════════════════════════════════

class LedgerFactory:
    """Crea filas con commit inmediato."""

    def __init__(self, db):
        self.db = db
        self._ref = 0

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def organization(self, name="Somiti Uttara", status="active", config=None):
        slug = name.lower().replace(" ", "-")
        return self._save(Organization(name=name, slug=slug, status=status, config=config or {}))

    def member(self, org, name="Member", status="active", joined_at=None, email=None):
        return self._save(Member(
            organization_id=org.id,
            name=name,
            email=email,
            status=status,
            joined_at=joined_at or datetime(2024, 1, 1, tzinfo=timezone.utc),
        ))

    def category(self, org, name="Monthly Contribution", kind=CategoryKind.MONTHLY.value,
                 default_amount=100, is_active=True):
        return self._save(ContributionType(
            organization_id=org.id,
            name=name,
            kind=kind,
            is_active=is_active,
            default_amount=Decimal(str(default_amount)) if default_amount is not None else None,
        ))

    def due(self, member, category, period, amount, paid=0):
        return self._save(Due(
            organization_id=member.organization_id,
            member_id=member.id,
            contribution_type_id=category.id,
            period=period,
            amount=money(amount),
            paid_amount=money(paid),
            status=status_for(paid, amount),
        ))

    def payment(self, member, amount, status=PaymentStatus.PAID.value, payment_date=None,
                category=None, **extra):
        self._ref += 1
        return self._save(Payment(
            organization_id=member.organization_id,
            member_id=member.id,
            contribution_type_id=category.id if category else None,
            amount=money(amount),
            status=status,
            reference=f"TEST-{self._ref}",
            payment_date=payment_date,
            **extra,
        ))

    def monthly_setting(self, org, category, fixed_amount=100, generation_day=1,
                        start_month="2025-01", include_late=False, is_enabled=True):
        return self._save(MonthlyDueSetting(
            organization_id=org.id,
            contribution_type_id=category.id,
            fixed_amount=money(fixed_amount),
            generation_day=generation_day,
            start_month=start_month,
            is_enabled=is_enabled,
            include_members_joined_after_generation=include_late,
        ))

    def advance(self, member, amount):
        BalanceTracker(self.db, member.organization_id).credit(member.id, amount, "TEST_SEED")
        self.db.commit()

    def balance(self, member) -> Decimal:
        self.db.expire_all()
        return BalanceTracker(self.db, member.organization_id).balance_of(member.id)


@pytest.fixture
def make(db):
    return LedgerFactory(db)


@pytest.fixture
def org(make):
    return make.organization()


@pytest.fixture
def other_org(make):
    return make.organization(name="Somiti Mirpur")


@pytest.fixture
def category(make, org):
    return make.category(org)


@pytest.fixture
def member(make, org):
    return make.member(org, name="Rahim Uddin", email="rahim@example.org")


# ══════════════════════════════════════════════════════════
# AUTENTICACIÓN
# ══════════════════════════════════════════════════════════

@pytest.fixture
def auth_headers(org):
    def build(role="admin", user_id=1, member_id=None, organization_id=None):
        token = create_access_token(
            user_id=user_id,
            organization_id=organization_id or org.id,
            role=role,
            member_id=member_id,
        )
        return {"Authorization": f"Bearer {token}"}
    return build

