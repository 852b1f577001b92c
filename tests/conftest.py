"""
Pytest configuration and fixtures
"""
import pytest
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

import httpx
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add project root and src to path
root_path = Path(__file__).parent.parent
sys.path.insert(0, str(root_path))
sys.path.insert(0, str(root_path / "src"))

# Set test environment variables before importing
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENCRYPTION_KEY"] = "test-master-key-for-credential-vault-min-32-chars"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce log noise in tests

# Import after setting env vars
from credibill.db import Base, get_db
from credibill.db.models import (
    App,
    Customer,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from credibill.services.credential_vault import CredentialEncryption, CredentialVault
from credibill.services.metrics import get_metrics_collector
from credibill.services.subscription_lifecycle import build_plan_snapshot

TEST_ENCRYPTION_KEY = os.environ["ENCRYPTION_KEY"]
FLUTTERWAVE_WEBHOOK_SECRET = "flw-webhook-hash-test"


@pytest.fixture(scope="function")
def test_engine():
    """In-memory SQLite engine with working SAVEPOINTs"""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )

    # pysqlite emits its own BEGIN; hand transaction control to SQLAlchemy
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine):
    """Create a database session for each test"""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    """Reset metrics before each test"""
    get_metrics_collector().reset()
    yield


@pytest.fixture
def encryption():
    return CredentialEncryption(TEST_ENCRYPTION_KEY)


@pytest.fixture
def vault(db_session, encryption):
    return CredentialVault(db_session, encryption)


@pytest.fixture
def make_app(db_session):
    """Factory for tenant apps"""
    def _make(**overrides) -> App:
        values = {
            "organization_id": "org_test",
            "name": "Test App",
            "environment": "test",
            "default_currency": "UGX",
            "grace_period_days": 3,
        }
        values.update(overrides)
        app = App(**values)
        db_session.add(app)
        db_session.commit()
        return app
    return _make


@pytest.fixture
def app_record(make_app):
    return make_app()


@pytest.fixture
def flutterwave_app(make_app, vault, db_session):
    """App bound to Flutterwave with stored credentials"""
    app = make_app(name="Flutterwave App")
    vault.save_credentials(
        app,
        "flutterwave",
        "FLWSECK_TEST-secret",
        public_key="FLWPUBK_TEST-public",
        webhook_secret=FLUTTERWAVE_WEBHOOK_SECRET,
    )
    db_session.commit()
    return app


@pytest.fixture
def make_customer(db_session):
    counter = {"n": 0}

    def _make(app: App, **overrides) -> Customer:
        counter["n"] += 1
        values = {
            "app_id": app.id,
            "email": f"customer{counter['n']}@example.com",
            "first_name": "Jane",
            "last_name": "Doe",
            "phone": "+256700000001",
            "status": "active",
        }
        values.update(overrides)
        customer = Customer(**values)
        db_session.add(customer)
        db_session.commit()
        return customer
    return _make


@pytest.fixture
def make_plan(db_session):
    def _make(app: App, **overrides) -> Plan:
        values = {
            "app_id": app.id,
            "name": "Pro Plan",
            "pricing_model": "flat",
            "base_amount": 50000,
            "currency": "UGX",
            "interval": "monthly",
            "trial_days": 0,
            "status": "active",
        }
        values.update(overrides)
        plan = Plan(**values)
        db_session.add(plan)
        db_session.commit()
        return plan
    return _make


@pytest.fixture
def make_subscription(db_session):
    """
    Factory for subscriptions in any state

    Active subscriptions default to a period that started 10 days ago.
    """
    def _make(customer: Customer, plan: Plan, status: str = SubscriptionStatus.ACTIVE.value, **overrides) -> Subscription:
        now = datetime.utcnow()
        values = {
            "app_id": customer.app_id,
            "customer_id": customer.id,
            "plan_id": plan.id,
            "plan_snapshot": build_plan_snapshot(plan),
            "status": status,
            "failed_payment_attempts": 0,
            "cancel_at_period_end": False,
        }
        if status == SubscriptionStatus.ACTIVE.value:
            values["current_period_start"] = now - timedelta(days=10)
            values["current_period_end"] = now + timedelta(days=20)
            values["next_payment_date"] = values["current_period_end"]
        values.update(overrides)
        subscription = Subscription(**values)
        db_session.add(subscription)
        db_session.commit()
        return subscription
    return _make


@pytest.fixture
def mock_http():
    """
    httpx client backed by a MockTransport

    Tests register handlers with mock_http.handler = fn(request) -> httpx.Response
    and inspect mock_http.requests afterwards.
    """
    class _MockHttp:
        def __init__(self):
            self.requests = []
            self.handler = lambda request: httpx.Response(404, json={"message": "no handler"})

        def _dispatch(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return self.handler(request)

    mock = _MockHttp()
    mock.client = httpx.Client(transport=httpx.MockTransport(mock._dispatch))
    yield mock
    mock.client.close()


@pytest.fixture
def dispatched(monkeypatch):
    """Capture delivery ids scheduled for background dispatch"""
    scheduled = []
    monkeypatch.setattr(
        "credibill.dependencies.dispatch_enqueued_deliveries",
        lambda delivery_ids: scheduled.extend(delivery_ids)
    )
    return scheduled


@pytest.fixture(scope="function")
def client(db_session, dispatched):
    """Create test client bound to the test session"""
    from api_server import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
