import uuid
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base
from app.models.contracts import Address, Contract, ContractStatus, Customer, ServicePlan
from app.models.network import BandwidthProfile, Device, DeviceProtocol
from app.services import device_outbox
from tests.mocks import FakeDeviceAdapter


# Monkey-patch PostgreSQL JSONB type for SQLite compatibility
# SQLite uses JSON instead of JSONB
def _patch_jsonb_for_sqlite():
    """Make JSONB compile as JSON for SQLite dialect."""
    from sqlalchemy.dialects.sqlite.base import SQLiteTypeCompiler

    if not hasattr(SQLiteTypeCompiler, "visit_JSONB"):

        def visit_JSONB(self, type_, **kw):
            return self.visit_JSON(type_, **kw)

        SQLiteTypeCompiler.visit_JSONB = visit_JSONB


_patch_jsonb_for_sqlite()

# Modules that bind get_adapter at import time.
_ADAPTER_CONSUMERS = (
    "app.services.bandwidth_profiles",
    "app.services.contracts",
    "app.services.credentials",
    "app.services.device_outbox",
    "app.services.monitoring",
    "app.services.reconciliation",
)


@pytest.fixture()
def engine():
    """Fresh in-memory database per test; services commit for real."""
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        # Let SQLAlchemy emit BEGIN so SAVEPOINT works with pysqlite.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db_session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def published_outbox():
    """Collect outbox message ids published after commit instead of calling Celery."""
    published: list[uuid.UUID] = []
    device_outbox.set_publisher(published.append)
    yield published
    device_outbox.set_publisher(None)


@pytest.fixture()
def fake_adapter(monkeypatch):
    adapter = FakeDeviceAdapter()
    for module in _ADAPTER_CONSUMERS:
        monkeypatch.setattr(f"{module}.get_adapter", lambda device: adapter)
    return adapter


@pytest.fixture()
def commit_fails_after_device_create(db_session, fake_adapter, monkeypatch):
    """Make the first commit following a device secret create raise once."""
    real_commit = db_session.commit
    failures = []

    def commit():
        if fake_adapter.called("create_credential") and not failures:
            failures.append(True)
            raise RuntimeError("database connection lost")
        real_commit()

    monkeypatch.setattr(db_session, "commit", commit)
    return failures


@pytest.fixture()
def device(db_session):
    device = Device(
        name="BRAS Centro",
        host="10.0.0.1",
        protocol=DeviceProtocol.api,
        admin_user="admin",
        admin_secret="admin-secret",
    )
    db_session.add(device)
    db_session.commit()
    db_session.refresh(device)
    return device


@pytest.fixture()
def other_device(db_session):
    device = Device(
        name="BRAS Norte",
        host="10.0.0.2",
        protocol=DeviceProtocol.ssh,
        admin_user="admin",
        admin_secret="admin-secret",
    )
    db_session.add(device)
    db_session.commit()
    db_session.refresh(device)
    return device


@pytest.fixture()
def profile(db_session, device):
    profile = BandwidthProfile(
        device_id=device.id,
        name="50M",
        upload_bps=25_000_000,
        download_bps=50_000_000,
    )
    db_session.add(profile)
    db_session.commit()
    db_session.refresh(profile)
    return profile


@pytest.fixture()
def plan(db_session, profile):
    plan = ServicePlan(name="Fibra 50", profile_id=profile.id, price=Decimal("99.90"))
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture()
def customer(db_session):
    customer = Customer(name="José da Silva")
    db_session.add(customer)
    db_session.commit()
    db_session.refresh(customer)
    return customer


@pytest.fixture()
def address(db_session, customer):
    address = Address(
        customer_id=customer.id,
        street="Rua das Flores",
        number="42",
        district="Centro",
        city="Campinas",
        state="SP",
    )
    db_session.add(address)
    db_session.commit()
    db_session.refresh(address)
    return address


@pytest.fixture()
def contract(db_session, customer, plan, address):
    contract = Contract(
        customer_id=customer.id,
        plan_id=plan.id,
        installation_address_id=address.id,
        status=ContractStatus.draft,
    )
    db_session.add(contract)
    db_session.commit()
    db_session.refresh(contract)
    return contract
