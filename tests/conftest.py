"""
Pytest configuration and fixtures.
"""
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from biopay.config import Settings
from biopay.core.accounts import AccountRef, SqlAccountDirectory
from biopay.core.orchestrator import PaymentOrchestrator
from biopay.core.token_store import PaymentTokenStore
from biopay.database.models import Base
from biopay.integrations.audit_relay_client import AuditRelayClient
from biopay.integrations.identity_client import IdentityClient
from biopay.integrations.ledger_client import LedgerClient, TransferReceipt

MERCHANT = AccountRef.merchant(7)
PAYER = AccountRef.user(42)
MERCHANT_TOKEN = "tok_merchant_0007"
PAYER_TOKEN = "tok_user_0042"
PLATFORM_TOKEN = "tok_platform_0001"


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        banking_service_url="http://bank.test",
        biometric_service_url="http://biometric.test",
        audit_relay_url="http://relay.test",
        platform_payment_token=PLATFORM_TOKEN,
        platform_fee_rate=Decimal("0.03"),
        app_name="biopay-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def test_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a file-backed SQLite engine with all tables."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'biopay_test.db'}",
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def ledger_client() -> AsyncMock:
    """Banking client whose transfers succeed."""
    client = AsyncMock(spec=LedgerClient)
    client.submit_transfer.return_value = TransferReceipt(success=True, reference="bank-tx-1")
    client.verify_card.return_value = None
    return client


@pytest.fixture
def identity_client() -> AsyncMock:
    """Biometric client that matches every sample to account 42."""
    client = AsyncMock(spec=IdentityClient)
    client.search_face.return_value = PAYER.account_id
    return client


@pytest.fixture
def audit_client() -> MagicMock:
    """Audit relay client recording fire-and-forget calls."""
    client = MagicMock(spec=AuditRelayClient)
    client.record_async.return_value = True
    return client


@pytest.fixture
def accounts() -> SqlAccountDirectory:
    return SqlAccountDirectory()


@pytest.fixture
def token_store(accounts: SqlAccountDirectory, ledger_client: AsyncMock) -> PaymentTokenStore:
    return PaymentTokenStore(accounts=accounts, ledger_client=ledger_client)


@pytest.fixture
def orchestrator(
    test_settings: Settings,
    ledger_client: AsyncMock,
    identity_client: AsyncMock,
    audit_client: MagicMock,
    accounts: SqlAccountDirectory,
    token_store: PaymentTokenStore,
) -> PaymentOrchestrator:
    """Orchestrator wired to mocked external services."""
    return PaymentOrchestrator(
        ledger_client=ledger_client,
        identity_client=identity_client,
        audit_client=audit_client,
        token_store=token_store,
        accounts=accounts,
        settings=test_settings,
    )


@pytest_asyncio.fixture
async def funded_accounts(
    test_db: AsyncSession,
    accounts: SqlAccountDirectory,
    token_store: PaymentTokenStore,
) -> None:
    """Merchant 7 and user 42, both with a default token; user 42 has a face profile."""
    await accounts.register(MERCHANT, test_db, display_name="Corner Cafe")
    await accounts.register(PAYER, test_db, display_name="Alice", face_id="face-42")
    await test_db.commit()

    await token_store.link_token(MERCHANT, MERCHANT_TOKEN, test_db)
    await token_store.link_token(PAYER, PAYER_TOKEN, test_db)
