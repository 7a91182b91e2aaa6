"""Tests for principal-bound data sessions and the pool checkout guard."""
import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import QueuePool

from orgscope.core.errors import ContextEstablishmentError, ContextTeardownError
from orgscope.db.context import ContextScope, principal_context, with_context
from orgscope.db.session import RLS_PRINCIPAL_KEY, install_pool_guard

CURRENT_SETTING = text("SELECT current_setting('app.current_user_id', true)")


def test_open_binds_principal_and_marks_connection(session_factory):
    scope = ContextScope("user_a", session_factory, app_role="")
    session = scope.open()
    try:
        assert session.execute(CURRENT_SETTING).scalar() == "user_a"
        assert session.connection().info[RLS_PRINCIPAL_KEY] == "user_a"
        info = session.connection().info
        scope.commit()
        assert RLS_PRINCIPAL_KEY not in info
    finally:
        scope.close()


def test_no_new_transaction_after_teardown(session_factory):
    scope = ContextScope("user_a", session_factory, app_role="")
    session = scope.open()
    scope.commit()
    with pytest.raises(ContextTeardownError):
        session.execute(text("SELECT 1"))
    scope.close()


def test_commit_before_open_is_refused(session_factory):
    scope = ContextScope("user_a", session_factory, app_role="")
    with pytest.raises(ContextTeardownError):
        scope.commit()


def test_principal_context_commits_on_success(session_factory, note_count):
    with principal_context("user_a", session_factory, app_role="") as db:
        db.execute(text("INSERT INTO notes (body) VALUES ('kept')"))
    assert note_count() == 1


def test_principal_context_rolls_back_on_exception(session_factory, note_count):
    with pytest.raises(RuntimeError):
        with principal_context("user_a", session_factory, app_role="") as db:
            db.execute(text("INSERT INTO notes (body) VALUES ('discarded')"))
            raise RuntimeError("boom")
    assert note_count() == 0


def test_with_context_returns_result(session_factory):
    bound = with_context(
        "user_b",
        lambda db: db.execute(CURRENT_SETTING).scalar(),
        session_factory,
        app_role="",
    )
    assert bound == "user_b"


@pytest.mark.parametrize("principal_id", ["", "   ", " padded", 42, None, "a" * 65, "nul\x00byte"])
def test_malformed_principal_ids_are_rejected(principal_id, session_factory):
    with pytest.raises(ContextEstablishmentError):
        ContextScope(principal_id, session_factory, app_role="")


def test_bind_failure_is_context_establishment_error(broken_session_factory):
    scope = ContextScope("user_a", broken_session_factory, app_role="")
    with pytest.raises(ContextEstablishmentError):
        scope.open()
    assert scope.tearing_down


def test_invalid_application_role_is_rejected(session_factory):
    scope = ContextScope("user_a", session_factory, app_role="bad role; drop")
    with pytest.raises(ContextEstablishmentError):
        scope.open()


def test_pool_guard_replaces_connection_still_marked():
    engine = install_pool_guard(
        create_engine("sqlite://", poolclass=QueuePool, pool_size=1, max_overflow=0)
    )
    try:
        with engine.connect() as conn:
            leaked = conn.connection.dbapi_connection
            conn.info[RLS_PRINCIPAL_KEY] = "user_a"

        with engine.connect() as conn:
            assert RLS_PRINCIPAL_KEY not in conn.info
            assert conn.connection.dbapi_connection is not leaked
            assert conn.execute(text("SELECT 1")).scalar() == 1
    finally:
        engine.dispose()


def test_pool_guard_reuses_clean_connection():
    engine = install_pool_guard(
        create_engine("sqlite://", poolclass=QueuePool, pool_size=1, max_overflow=0)
    )
    try:
        with engine.connect() as conn:
            first = conn.connection.dbapi_connection
        with engine.connect() as conn:
            assert conn.connection.dbapi_connection is first
    finally:
        engine.dispose()


def test_install_pool_guard_is_idempotent():
    engine = create_engine("sqlite://", poolclass=QueuePool)
    assert install_pool_guard(install_pool_guard(engine)) is engine
    engine.dispose()
