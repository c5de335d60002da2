"""Pytest configuration for adsync tests

WHAT: Shared fixtures for database, Redis and seeded organizations/accounts
WHY: Every component test needs the same in-memory sqlite schema and a
    fake Redis with Lua support, without external services
REFERENCES:
    - adsync/database.py: Engine configuration
    - adsync/models.py: Schema
    - adsync/state.py: Redis client
"""

import os
import uuid
from datetime import timedelta
from typing import Generator

import fakeredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before adsync modules read settings
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "test-token-encryption-key")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("GOOGLE_DEVELOPER_TOKEN", "test-dev-token")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory engine shared across threads (workers run handlers in threads)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from adsync.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(bind=test_db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Redis Fixtures
# ============================================================================

@pytest.fixture
def redis_server():
    """One in-memory Redis shared by the sync and asyncio clients of a test."""
    return fakeredis.FakeServer()


@pytest.fixture
def fake_redis(redis_server):
    """FakeRedis with Lua scripting (fakeredis[lua])."""
    client = fakeredis.FakeRedis(server=redis_server, decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def arq_pool_factory(redis_server):
    """Coroutine function returning an ArqRedis on the test's fake server.

    arq reads raw bytes, so this client must not decode responses.
    """
    from arq.connections import ArqRedis
    from fakeredis import aioredis

    async def factory():
        return ArqRedis(connection_pool=aioredis.FakeRedis(server=redis_server).connection_pool)

    return factory


@pytest.fixture
def settings():
    from adsync.config import Settings

    return Settings(
        INITIAL_SYNC_DAYS=90,
        SYNC_CHUNK_DAYS=30,
        SYNC_STALE_JOB_MINUTES=15,
        SYNC_JOB_BACKOFF_MS=5000,
        DIMENSIONS_JOB_BACKOFF_MS=3000,
        INTRADAY_SYNC_ENABLED=True,
    )


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_org(test_db_session):
    from adsync.models import Organization

    org = Organization(id=uuid.uuid4(), name="Test Org")
    test_db_session.add(org)
    test_db_session.commit()
    return org


@pytest.fixture
def test_connection(test_db_session, test_org):
    """ACTIVE Google Ads connection with encrypted tokens valid for an hour."""
    from adsync.models import Connection, ConnectionStatusEnum, ProviderEnum
    from adsync.security import encrypt_secret
    from adsync.utils.dates import utcnow

    connection = Connection(
        id=uuid.uuid4(),
        organization_id=test_org.id,
        provider=ProviderEnum.google_ads,
        provider_email="ads@example.com",
        access_token_enc=encrypt_secret("access-token-1", context="test:access"),
        refresh_token_enc=encrypt_secret("refresh-token-1", context="test:refresh"),
        access_token_expiry=utcnow() + timedelta(hours=1),
        token_version=1,
        status=ConnectionStatusEnum.active,
    )
    test_db_session.add(connection)
    test_db_session.commit()
    return connection


@pytest.fixture
def test_account(test_db_session, test_org, test_connection):
    from adsync.models import AccountSyncStatusEnum, AdAccount, ProviderEnum

    account = AdAccount(
        id=uuid.uuid4(),
        organization_id=test_org.id,
        connection_id=test_connection.id,
        provider=ProviderEnum.google_ads,
        external_id="1234567890",
        name="Test Google Ads Account",
        currency="USD",
        timezone="UTC",
        is_enabled=True,
        sync_status=AccountSyncStatusEnum.pending,
    )
    test_db_session.add(account)
    test_db_session.commit()
    return account


# ============================================================================
# Helpers
# ============================================================================

class FakeQueue:
    """Records enqueues instead of touching Redis."""

    def __init__(self, name="ads-sync"):
        self.name = name
        self.enqueued = []

    def enqueue(self, job_type, payload, *, job_id=None, priority=5, delay_ms=0):
        if any(existing["job_id"] == job_id for existing in self.enqueued):
            return None
        self.enqueued.append({"type": job_type, "payload": payload, "job_id": job_id, "priority": int(priority)})
        return job_id

    def get_job(self, job_id):
        from adsync.workers.job_queue import QueuedJob

        if any(existing["job_id"] == job_id for existing in self.enqueued):
            return QueuedJob(id=job_id, status="queued", function="run_sync_job", attempts=0, enqueued_at=None)
        return None

    def get_stats(self):
        return {"waiting": len(self.enqueued), "delayed": 0, "active": 0, "completed": 0, "failed": 0}


@pytest.fixture
def fake_queue():
    return FakeQueue()
