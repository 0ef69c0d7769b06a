import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_qr_checkout.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ["RETRY_BASE_DELAY"] = "0"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from qr_checkout.database import Base
from qr_checkout.main import app as fastapi_app
from qr_checkout.models import MenuItem, Restaurant

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_qr_checkout_session.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def client(monkeypatch):
    # Route handlers and the webhook open their own sessions
    monkeypatch.setattr("qr_checkout.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("qr_checkout.main.SessionLocal", TestingSessionLocal)
    with TestClient(fastapi_app) as c:
        yield c


@pytest.fixture
def restaurant(db):
    r = Restaurant(
        id="rest-1",
        name="Bistro Central",
        email="owner@bistro.test",
        phone="+41 44 000 00 00",
        address="Bahnhofstrasse 1",
        currency="CHF",
        stripe_account_id="acct_123",
        stripe_account_enabled=True,
        stripe_customer_id="cus_123",
        subscription_status="active",
    )
    db.add(r)
    db.add_all([
        MenuItem(id="itemA", restaurant_id="rest-1", name="Burger", price=12.5, preparation_time=10),
        MenuItem(id="itemB", restaurant_id="rest-1", name="Salad", price=9.0, preparation_time=20),
    ])
    db.commit()
    return r


@pytest.fixture
def cart():
    """The burger cart: 2 x 12.50 + 2.00 tax + 3.00 tip = 30.00."""
    return {
        "restaurant_id": "rest-1",
        "table_id": "table-7",
        "items": [{"id": "itemA", "name": "Burger", "price": 12.50, "quantity": 2}],
        "subtotal": 25.00,
        "tax": 2.00,
        "tip": 3.00,
        "total": 30.00,
        "email": "guest@example.com",
        "customer_name": "Alex",
    }
