import os
import time
from datetime import datetime

# Keep the module-level engine off disk; tests bring their own database.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from ajo.config import get_settings
from ajo.database import ServiceContext, build_engine, get_db, get_service_context, init_db
from ajo.main import app
from ajo.models import Group, GroupMembership, MembershipStatus, PaymentRecord
from ajo.services.activation_service import ActivationService
from ajo.services.paystack_client import GatewayVerification, VerificationStatus, get_gateway
from ajo.utils.hashing import compute_signature
from ajo.utils.rate_limiter import reset_rate_limits

settings = get_settings()


class FakeGateway:
    """Scriptable stand-in for the Paystack verification client."""

    def __init__(self):
        self.responses: dict[str, GatewayVerification] = {}
        self.calls: list[str] = []
        self.on_verify = None

    def confirm(self, reference: str, amount: int, channel: str = "card") -> None:
        self.responses[reference] = GatewayVerification(
            reference=reference,
            status=VerificationStatus.CONFIRMED,
            amount=amount,
            currency="NGN",
            channel=channel,
            paid_at=datetime(2026, 1, 15, 9, 30),
            gateway_response="Approved",
            fees=150,
            email="member@example.com",
            customer_code="CUS_test",
            authorization_code="AUTH_test",
        )

    def set_status(self, reference: str, status: VerificationStatus, message: str = "") -> None:
        self.responses[reference] = GatewayVerification(
            reference=reference, status=status, message=message, gateway_response=message or None,
        )

    def verify(self, reference: str) -> GatewayVerification:
        self.calls.append(reference)
        if self.on_verify is not None:
            hook, self.on_verify = self.on_verify, None
            hook(reference)
        return self.responses.get(
            reference,
            GatewayVerification(reference, VerificationStatus.NOT_FOUND, message="Transaction reference not found"),
        )


@pytest.fixture(autouse=True)
def reset_limits():
    reset_rate_limits()
    yield
    reset_rate_limits()


@pytest.fixture()
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ajo_test.db'}")
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def service_context(session_factory):
    return ServiceContext(session_factory)


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def activation(service_context, gateway):
    return ActivationService(service_context, gateway, max_attempts=3)


@pytest.fixture()
def client(session_factory, service_context, gateway):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_service_context] = lambda: service_context
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


# ─── Builders ───────────────────────────────────────────────────────

def make_token(
    user_id: str = "user-a",
    email: str | None = "member@example.com",
    expires_in: int = 3600,
    is_admin: bool = False,
    secret: str | None = None,
    audience: str = "authenticated",
    **extra,
) -> str:
    claims = {"sub": user_id, "aud": audience, "exp": int(time.time()) + expires_in, **extra}
    if email:
        claims["email"] = email
    if is_admin:
        claims["app_metadata"] = {"is_admin": True}
    return jwt.encode(claims, secret or settings.JWT_SECRET, algorithm="HS256")


def auth_headers(user_id: str = "user-a", **kwargs) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, **kwargs)}"}


def sign(raw_body: bytes) -> str:
    return compute_signature(settings.PAYSTACK_SECRET_KEY, raw_body)


@pytest.fixture()
def make_group(db):
    def _make_group(capacity=5, created_by="creator", contribution_amount=500000,
                    security_deposit_amount=50000, **fields) -> Group:
        group = Group(
            name=fields.pop("name", "Lekki Market Women"),
            created_by=created_by,
            contribution_amount=contribution_amount,
            security_deposit_amount=security_deposit_amount,
            frequency=fields.pop("frequency", "monthly"),
            capacity=capacity,
            **fields,
        )
        db.add(group)
        db.commit()
        db.refresh(group)
        return group
    return _make_group


@pytest.fixture()
def make_member(db):
    def _make_member(group: Group, user_id: str, slot: int | None = None,
                     status: str = MembershipStatus.ACTIVE.value, has_paid_deposit: bool = True,
                     preferred_slot: int | None = None) -> GroupMembership:
        """Seed a membership. Active members also bump the group count to keep it consistent."""
        member = GroupMembership(
            group_id=group.id, user_id=user_id, rotation_position=slot,
            status=status, has_paid_deposit=has_paid_deposit, preferred_slot=preferred_slot,
        )
        db.add(member)
        if status == MembershipStatus.ACTIVE.value:
            db.query(Group).filter(Group.id == group.id).update(
                {Group.current_member_count: Group.current_member_count + 1}, synchronize_session=False,
            )
        db.commit()
        db.refresh(member)
        return member
    return _make_member


@pytest.fixture()
def make_payment(db):
    def _make_payment(group: Group, user_id: str = "user-a", payment_type: str = "group_join",
                      reference: str = "AJO-REF-0001", amount: int | None = None,
                      preferred_slot: int | None = None, cycle_number: int | None = None,
                      metadata: dict | None = None) -> PaymentRecord:
        if metadata is None:
            metadata = {"app": settings.APP_IDENTIFIER, "user_id": user_id,
                        "purpose": payment_type, "entity_id": group.id}
            if preferred_slot is not None:
                metadata["preferred_slot"] = preferred_slot
            if cycle_number is not None:
                metadata["cycle_number"] = cycle_number
        record = PaymentRecord(
            reference=reference,
            user_id=user_id,
            group_id=group.id,
            payment_type=payment_type,
            amount=amount or group.contribution_amount + group.security_deposit_amount,
            payment_metadata=metadata,
        )
        db.add(record)
        db.commit()
        db.refresh(record)
        return record
    return _make_payment


def active_member_count(session, group_id: str) -> int:
    return session.query(func.count(GroupMembership.id)).filter(
        GroupMembership.group_id == group_id,
        GroupMembership.status == MembershipStatus.ACTIVE.value,
    ).scalar()


def reload_group(session, group_id: str) -> Group:
    session.expire_all()
    return session.query(Group).filter(Group.id == group_id).one()
