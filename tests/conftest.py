import os
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event, TypeDecorator, String
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


class SQLiteUUID(TypeDecorator):
    """UUID type that works with SQLite by storing as string."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            if isinstance(value, uuid.UUID):
                return str(value)
            return value
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            if not isinstance(value, uuid.UUID):
                return uuid.UUID(value)
            return value
        return None


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)


# Monkey-patch PostgreSQL JSONB type for SQLite compatibility
# SQLite uses JSON instead of JSONB
def _patch_jsonb_for_sqlite():
    """Make JSONB compile as JSON for SQLite dialect."""
    from sqlalchemy.dialects.sqlite.base import SQLiteTypeCompiler

    if not hasattr(SQLiteTypeCompiler, '_original_visit_JSONB'):
        if hasattr(SQLiteTypeCompiler, 'visit_JSONB'):
            SQLiteTypeCompiler._original_visit_JSONB = SQLiteTypeCompiler.visit_JSONB

        def visit_JSONB(self, type_, **kw):
            return self.visit_JSON(type_, **kw)

        SQLiteTypeCompiler.visit_JSONB = visit_JSONB


_patch_jsonb_for_sqlite()

import app.models  # noqa: E402,F401  (register every table on Base.metadata)
from app.models.catalog import AllowanceType, Entitlement, Feature, FreeTrial, Price, Product  # noqa: E402
from app.models.organization import AppEnv, Customer, Organization  # noqa: E402
from app.services.attach_params import BillingContext  # noqa: E402
from app.services.credential_crypto import set_processor_credentials  # noqa: E402
from tests.mocks import WEBHOOK_SECRET, FakeProcessorGateway, fixed_config  # noqa: E402


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        # Use PostgreSQL for tests (recommended)
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={
                "check_same_thread": False,
            },
            poolclass=StaticPool,
        )

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, _connection_record):
            # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest correctly.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_sqlite(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)

    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    # Services commit their own units of work; those become savepoints here.
    SessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        autocommit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def org(db_session):
    organization = Organization(
        slug=f"acme-{uuid.uuid4().hex[:8]}",
        name="Acme",
        default_currency="usd",
        success_url="https://acme.test/billing",
    )
    set_processor_credentials(organization, AppEnv.sandbox, "sk_test_acme", WEBHOOK_SECRET)
    db_session.add(organization)
    db_session.commit()
    return organization


@pytest.fixture()
def customer(db_session, org):
    record = Customer(
        org_id=org.id,
        env=AppEnv.sandbox,
        external_id=f"cust-{uuid.uuid4().hex[:8]}",
        name="Ada Lovelace",
        email="ada@example.com",
        fingerprint="fp-ada",
    )
    db_session.add(record)
    db_session.commit()
    return record


@pytest.fixture()
def feature(db_session, org):
    record = Feature(org_id=org.id, env=AppEnv.sandbox, feature_key="api_calls", name="API calls")
    db_session.add(record)
    db_session.commit()
    return record


@pytest.fixture()
def product_factory(db_session, org):
    """Create a catalog product; ``prices`` are raw price configs in order."""

    def _create(
        key,
        prices=None,
        *,
        group="main",
        is_add_on=False,
        is_default=False,
        entitlements=(),
        trial_days=None,
        unique_fingerprint=False,
        provisioned=True,
    ):
        product = Product(
            org_id=org.id,
            env=AppEnv.sandbox,
            product_key=key,
            name=key.replace("_", " ").title(),
            group=group,
            is_add_on=is_add_on,
            is_default=is_default,
            processor_product_id=f"prod_{key}" if provisioned else None,
        )
        base = datetime.now(timezone.utc)
        for index, config in enumerate(prices if prices is not None else [fixed_config("10")]):
            product.prices.append(
                Price(name=f"{key}-{index}", config=config, created_at=base + timedelta(seconds=index))
            )
        for feature, allowance_type, allowance in entitlements:
            product.entitlements.append(
                Entitlement(
                    feature_id=feature.id,
                    allowance_type=allowance_type,
                    allowance=allowance,
                    interval="month",
                )
            )
        if trial_days:
            product.free_trial = FreeTrial(
                length_days=trial_days, unique_fingerprint=unique_fingerprint
            )
        db_session.add(product)
        db_session.commit()
        return product

    return _create


@pytest.fixture()
def metered(feature):
    """Entitlement tuple: 100 included units with overage allowed."""
    return (feature, AllowanceType.fixed, 100)


@pytest.fixture()
def gateway():
    return FakeProcessorGateway()


@pytest.fixture()
def checkout_reasons():
    return []


@pytest.fixture()
def ctx(org, gateway, checkout_reasons):
    def _checkout(context, params, reason="card_declined"):
        checkout_reasons.append((params.product.product_key, reason))
        return f"https://checkout.test/{params.product.product_key}"

    return BillingContext(org=org, env=AppEnv.sandbox, gateway=gateway, checkout=_checkout)


@pytest.fixture(autouse=True)
def mirror_retries(monkeypatch):
    """Capture invoice mirror retries instead of enqueuing Celery tasks."""
    scheduled = []

    def _record(ctx, customer_id, invoice_id, customer_products):
        scheduled.append(invoice_id)

    monkeypatch.setattr("app.services.invoices.schedule_mirror_retry", _record)
    return scheduled
