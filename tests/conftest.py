"""
Test configuration and fixtures.

Provides:
- SQLite-backed session factory that understands set_config/current_setting
  (wrapper and context tests without PostgreSQL)
- Fake identity provider and principal fixtures
- HTTPX AsyncClient against apps built with create_app(...)
- PostgreSQL engine for the row-level security tests (TEST_DATABASE_URL)
"""
import os
import uuid
from dataclasses import dataclass
from typing import AsyncGenerator, Generator

# Must be set before orgscope modules read settings.
os.environ["TESTING"] = "1"
os.environ["ENV"] = "test"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from orgscope.core.identity import Principal
from orgscope.main import create_app


# =============================================================================
# Identity
# =============================================================================

class FakeIdentityProvider:
    """Returns a fixed principal (or None) for every request."""

    def __init__(self, principal: Principal | None = None):
        self.principal = principal
        self.calls = 0

    def get_current_principal(self, request):
        self.calls += 1
        return self.principal


@dataclass
class AuthContext:
    """Test authentication context."""
    principal: Principal
    provider: FakeIdentityProvider


@pytest.fixture(scope="function")
def make_provider():
    """Factory for identity providers returning a given principal (or None)."""
    return FakeIdentityProvider


@pytest.fixture(scope="function")
def principal() -> Principal:
    suffix = uuid.uuid4().hex[:8]
    return Principal(id=f"user_{suffix}", email=f"user-{suffix}@example.org", name="Test User")


@pytest.fixture(scope="function")
def test_auth(principal: Principal) -> AuthContext:
    return AuthContext(principal=principal, provider=FakeIdentityProvider(principal))


# =============================================================================
# SQLite session factory
# =============================================================================

def _register_session_functions(dbapi_connection, connection_record) -> None:
    """Emulate PostgreSQL's set_config/current_setting on a SQLite connection."""
    values: dict[str, str] = {}

    def set_config(name, value, is_local):
        values[name] = value
        return value

    def current_setting(name, missing_ok):
        return values.get(name)

    dbapi_connection.create_function("set_config", 3, set_config)
    dbapi_connection.create_function("current_setting", 2, current_setting)


def make_sqlite_engine(with_session_functions: bool = True) -> Engine:
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    if with_session_functions:
        event.listen(engine, "connect", _register_session_functions)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE notes (id INTEGER PRIMARY KEY, body TEXT NOT NULL)"))
    return engine


@pytest.fixture(scope="function")
def sqlite_engine() -> Generator[Engine, None, None]:
    engine = make_sqlite_engine()
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(sqlite_engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=sqlite_engine)


@pytest.fixture(scope="function")
def note_count(sqlite_engine: Engine):
    """Callable returning the committed number of rows in the notes table."""
    def count() -> int:
        with sqlite_engine.connect() as conn:
            return conn.execute(text("SELECT count(*) FROM notes")).scalar()
    return count


@pytest.fixture(scope="function")
def broken_session_factory() -> Generator[sessionmaker, None, None]:
    """Sessions on a database without set_config: binding a principal fails."""
    engine = make_sqlite_engine(with_session_functions=False)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def app(test_auth: AuthContext, session_factory: sessionmaker):
    """Full application with a fake identity provider and SQLite sessions."""
    return create_app(
        identity_provider=test_auth.provider,
        session_factory=session_factory,
        app_role="",
    )


@pytest.fixture(scope="function")
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c


# =============================================================================
# PostgreSQL (row-level security)
# =============================================================================

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "")

def _drop_schema(engine: Engine) -> None:
    from orgscope.db.base import Base
    import orgscope.db.models  # noqa: F401

    with engine.begin() as conn:
        Base.metadata.drop_all(conn)
        conn.execute(text("DROP FUNCTION IF EXISTS accept_invitation(text)"))
        for name in (
            "current_principal_id",
            "current_principal_role",
            "current_principal_site_id",
            "current_principal_small_group_id",
            "current_principal_email",
        ):
            conn.execute(text(f"DROP FUNCTION IF EXISTS {name}()"))


@pytest.fixture(scope="module")
def pg_engine() -> Generator[Engine, None, None]:
    """
    Owner engine on a disposable database with schema and policies applied.

    Rows inserted through this engine bypass row-level security (ENABLE
    without FORCE); principal sessions assume the application role.
    """
    if not TEST_DATABASE_URL:
        pytest.skip("TEST_DATABASE_URL not set")

    from orgscope.db.base import Base
    from orgscope.db.rls import render_rls_sql
    from orgscope.db.session import install_pool_guard

    engine = install_pool_guard(
        create_engine(TEST_DATABASE_URL, pool_size=12, max_overflow=4, pool_pre_ping=True)
    )
    _drop_schema(engine)
    with engine.begin() as conn:
        Base.metadata.create_all(conn)
        for statement in render_rls_sql():
            conn.execute(text(statement))
    yield engine
    _drop_schema(engine)
    engine.dispose()


@pytest.fixture(scope="module")
def pg_session_factory(pg_engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=pg_engine)
