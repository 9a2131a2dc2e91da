"""Root test configuration for ParcelGate.

Shared fixtures:
  - key_store:   KeyStore on a tmp_path database (initialized, closed after)
  - users:       InMemoryUserDirectory seeded with one user per role/status
  - meter:       UsageMeter over key_store (drained and stopped after)
  - resolver:    CredentialResolver wired to the three above
  - make_token:  factory for signed session tokens
  - sign_claims: signs an arbitrary claim set with the test secret
  - app/client:  create_app() with state set directly (no lifespan) and an
                 httpx AsyncClient over ASGITransport
"""

from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, Callable

import jwt
import pytest
from httpx import ASGITransport, AsyncClient

from parcelgate.auth.metering import UsageMeter
from parcelgate.auth.models import Role
from parcelgate.auth.resolver import CredentialResolver
from parcelgate.auth.sessions import issue_session_token
from parcelgate.auth.store import KeyStore
from parcelgate.auth.users import InMemoryUserDirectory, UserAccount
from parcelgate.config import Config
from parcelgate.main import create_app

TEST_JWT_SECRET = "test-secret-0123456789-abcdefghijklmnop"

ADMIN = UserAccount(id="u-admin", email="admin@example.com", role=Role.ADMIN)
STAFF = UserAccount(
    id="u-staff",
    email="staff@example.com",
    role=Role.WAREHOUSE_STAFF,
    warehouse_id="WH-MIAMI",
)
CUSTOMER = UserAccount(id="u-customer", email="customer@example.com", role=Role.CUSTOMER)
PENDING = UserAccount(
    id="u-pending",
    email="pending@example.com",
    role=Role.CUSTOMER,
    account_status="pending",
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer environment overrides out of the test suite."""
    for name in (
        "PARCELGATE_CONFIG",
        "PARCELGATE_PORT",
        "PARCELGATE_JWT_SECRET",
        "PARCELGATE_KEYS_DB_PATH",
        "PARCELGATE_USERS_DB_PATH",
        "PARCELGATE_BASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
async def key_store(tmp_path: Path) -> AsyncIterator[KeyStore]:
    store = KeyStore(tmp_path / "keys.db")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def users() -> InMemoryUserDirectory:
    return InMemoryUserDirectory([ADMIN, STAFF, CUSTOMER, PENDING])


@pytest.fixture
async def meter(key_store: KeyStore) -> AsyncIterator[UsageMeter]:
    usage_meter = UsageMeter(key_store)
    usage_meter.start()
    yield usage_meter
    await usage_meter.close()


@pytest.fixture
def resolver(
    key_store: KeyStore, users: InMemoryUserDirectory, meter: UsageMeter
) -> CredentialResolver:
    return CredentialResolver(key_store, users, meter, jwt_secret=TEST_JWT_SECRET)


@pytest.fixture
def make_token() -> Callable[..., str]:
    def _make(user_id: str = ADMIN.id, **kwargs) -> str:
        return issue_session_token(user_id, TEST_JWT_SECRET, **kwargs)

    return _make


@pytest.fixture
def sign_claims() -> Callable[[dict], str]:
    """Sign an arbitrary claim set, as the login flow does."""

    def _sign(claims: dict) -> str:
        return jwt.encode(claims, TEST_JWT_SECRET, algorithm="HS256")

    return _sign


@pytest.fixture
def config(tmp_path: Path) -> Config:
    cfg = Config.defaults()
    cfg.auth.jwt_secret = TEST_JWT_SECRET
    cfg.keys.db_path = str(tmp_path / "keys.db")
    cfg.integration.base_url = "https://api.example.com"
    return cfg


@pytest.fixture
def app(config, key_store, users, meter, resolver):
    """Application with state set directly, as the lifespan would."""
    application = create_app()
    application.state.config = config
    application.state.key_store = key_store
    application.state.user_directory = users
    application.state.usage_meter = meter
    application.state.resolver = resolver
    application.state.ready = True
    return application


@pytest.fixture
async def client(app) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def admin_headers(make_token) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(ADMIN.id)}"}
