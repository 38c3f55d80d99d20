"""Shared test fixtures for the invoice review test suite."""

import pytest
from pathlib import Path

from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
# override=True ensures .env takes precedence over shell env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module._vault_client_instance = None
vault_module._secret_cache.clear()

from utils.user_context import Actor, ActorRole, actor_context, clear_current_actor


# =============================================================================
# TEST USER CONSTANTS
# =============================================================================

# Primary test user - use for single-user tests
TEST_USER_ID = "user-0001"

# Secondary test user - use for isolation tests
TEST_USER_B_ID = "user-0002"

TEST_ORG_ID = "org-test"


# =============================================================================
# ACTOR FIXTURES
# =============================================================================


@pytest.fixture(autouse=True)
def reset_actor_context():
    """Ensure clean actor context before and after each test."""
    clear_current_actor()
    yield
    clear_current_actor()


@pytest.fixture
def reviewer() -> Actor:
    """Primary test user with the default reviewer role."""
    return Actor(id=TEST_USER_ID, role=ActorRole.REVIEWER)


@pytest.fixture
def admin() -> Actor:
    """Primary test user with the admin role."""
    return Actor(id=TEST_USER_ID, role=ActorRole.ADMIN)


@pytest.fixture
def viewer() -> Actor:
    """Read-only user."""
    return Actor(id=TEST_USER_B_ID, role=ActorRole.VIEWER)


@pytest.fixture
def as_reviewer(reviewer):
    """Signed in as the reviewer."""
    with actor_context(reviewer):
        yield reviewer


@pytest.fixture
def as_admin(admin):
    """Signed in as the admin."""
    with actor_context(admin):
        yield admin


# =============================================================================
# STORE AND SERVICE FIXTURES
# =============================================================================


@pytest.fixture
def config():
    from core.config import LedgerConfig
    return LedgerConfig()


@pytest.fixture
def store(config):
    """Fresh in-memory tree store."""
    from clients.memory_store import InMemoryStore
    return InMemoryStore(timeout_seconds=config.operation_timeout_seconds)


@pytest.fixture
def blobs():
    """Fresh in-memory blob storage."""
    from clients.blob_client import InMemoryBlobStorage
    return InMemoryBlobStorage()


@pytest.fixture
def audit(store):
    from core.audit import ActivityLogger
    return ActivityLogger(store, TEST_ORG_ID)


@pytest.fixture
def invoice_service(store, audit, blobs, config):
    from core.services.invoice_service import InvoiceService
    return InvoiceService(store, audit, blobs, config)


@pytest.fixture
def client_service(store, audit, config):
    from core.services.client_service import ClientService
    return ClientService(store, audit, config)


@pytest.fixture
def invoice_data() -> dict:
    """Valid invoice input: subtotal 200.00, 10% tax, 5% discount -> total 210.00."""
    return {
        "userId": TEST_USER_ID,
        "clientId": "client-1",
        "issueDate": "2024-01-01",
        "dueDate": "2024-01-31",
        "items": [
            {"description": "Consulting", "quantity": 2, "price": "50.00"},
            {"description": "Support", "quantity": 1, "price": "100.00"},
        ],
        "taxRate": "10",
        "discountRate": "5",
        "notes": "Thanks for your business",
    }
