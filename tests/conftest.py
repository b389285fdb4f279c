"""Pytest configuration and fixtures."""

import os
import tempfile

import pytest
import pytest_asyncio

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["ENCRYPTION_KEY_FILE"] = "/tmp/test_encryption.key"
os.environ["PUBLIC_URL"] = "http://localhost:3000"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"
os.environ["SYNC_RETRY_BACKOFF_SECONDS"] = "0"
os.environ["RATE_LIMIT_PER_MINUTE"] = "100000"
os.environ["WEBHOOK_RATE_LIMIT_PER_MINUTE"] = "100000"

from helpers import FakeCalendarProvider, FakeOAuthClient  # noqa: E402


@pytest.fixture(scope="function")
def test_encryption_key():
    """Create a temporary encryption key for tests."""
    from labcal.encryption import generate_encryption_key

    key = generate_encryption_key()

    # Write to temp file
    with tempfile.NamedTemporaryFile(mode="wb", delete=False, suffix=".key") as f:
        f.write(key)
        key_path = f.name

    os.environ["ENCRYPTION_KEY_FILE"] = key_path

    yield key

    # Cleanup
    if os.path.exists(key_path):
        os.remove(key_path)


@pytest_asyncio.fixture
async def test_db():
    """Create a test database."""
    import labcal.database as db_module
    from labcal.database import close_database, get_database

    # Reset the global connection
    db_module._db_connection = None

    # Create in-memory database
    db = await get_database()

    yield db

    await close_database()
    db_module._db_connection = None


@pytest.fixture
def fake_oauth():
    return FakeOAuthClient()


@pytest.fixture
def fake_provider():
    return FakeCalendarProvider()


@pytest.fixture
def settings():
    from labcal.config import get_settings

    return get_settings()


@pytest_asyncio.fixture
async def services(test_db, test_encryption_key, fake_oauth, fake_provider, settings):
    """Fully wired components on the test database with fake provider clients."""
    from labcal.encryption import EncryptionManager
    from labcal.services import Services

    from helpers import create_user, drain_background_tasks

    await create_user(test_db)

    container = Services(
        test_db,
        EncryptionManager(test_encryption_key),
        settings,
        oauth_client=fake_oauth,
        calendar_client_factory=fake_provider.client,
    )
    yield container

    await drain_background_tasks()
