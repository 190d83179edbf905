import os
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RATE_LIMIT", "10000/minute")
os.environ.setdefault("TZ_DEFAULT", "UTC")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gearshift.auth.security import create_access_token
from gearshift.db import Base, get_db
from gearshift.main import app
from gearshift.services import rental_service
from gearshift.services.equipment_service import register_equipment
from gearshift.services.time_rules import today_local


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def today():
    return today_local()


@pytest.fixture
def owner_id():
    return uuid.uuid4()


@pytest.fixture
def renter_id():
    return uuid.uuid4()


@pytest.fixture
def auth_headers():
    def _headers(user_id):
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _headers


@pytest.fixture
def make_equipment(db, owner_id, today):
    def _make(**overrides):
        kwargs = dict(
            owner_id=owner_id,
            name="Cordless hammer drill",
            price_per_day=Decimal("100.00"),
            service_fee_percent=Decimal("10"),
            available_ranges=[(today, today + timedelta(days=180))],
            today=today,
        )
        kwargs.update(overrides)
        return register_equipment(db, **kwargs)

    return _make


@pytest.fixture
def make_rental(db, renter_id, today):
    def _make(equipment, start_offset, end_offset, renter=None):
        return rental_service.create_rental_request(
            db,
            equipment_id=equipment.id,
            renter_id=renter or renter_id,
            start_date=today + timedelta(days=start_offset),
            end_date=today + timedelta(days=end_offset),
            today=today,
        )

    return _make


@pytest.fixture
def active_rental(db, make_equipment, make_rental, owner_id, renter_id, today):
    """A rental for days 5..7 that has been approved and picked up."""
    equipment = make_equipment()
    rental = make_rental(equipment, 5, 7)
    rental_service.approve(db, rental.id, owner_id, today=today)
    rental_service.begin_pickup(db, rental.id, renter_id)
    return rental
