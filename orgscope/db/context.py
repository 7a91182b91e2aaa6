"""Context-scoped data sessions.

Every statement issued through a ``ContextScope`` runs inside one transaction
in which the acting principal is bound with a transaction-local
``set_config(..., true)`` and the non-owner application role is assumed with
``SET LOCAL ROLE``. Both vanish on COMMIT or ROLLBACK, so nothing of the
principal survives once the connection is handed back to the pool.

Usage:
    with principal_context(principal.id) as db:
        db.execute(select(Report))

    with_context(principal.id, lambda db: report_service.list_reports(db))
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy import event, text
from sqlalchemy.orm import Session, sessionmaker

from orgscope.core.config import settings
from orgscope.core.errors import ContextEstablishmentError, ContextTeardownError
from orgscope.db.session import RLS_PRINCIPAL_KEY, SessionLocal

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PRINCIPAL_ID_LENGTH = 64
_ROLE_NAME_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


def validate_principal_id(principal_id: object) -> str:
    if not isinstance(principal_id, str):
        raise ContextEstablishmentError(internal="principal id must be a string")
    if not principal_id.strip() or principal_id != principal_id.strip():
        raise ContextEstablishmentError(internal="principal id is empty or padded")
    if len(principal_id) > MAX_PRINCIPAL_ID_LENGTH or "\x00" in principal_id:
        raise ContextEstablishmentError(internal="principal id is malformed")
    return principal_id


def validate_role_name(role: str) -> str:
    if not _ROLE_NAME_RE.match(role):
        raise ContextEstablishmentError(internal="invalid application role name")
    return role


def bind_principal(session: Session, principal_id: str, app_role: str | None = None) -> None:
    """Bind ``principal_id`` to the session's current transaction.

    Starts the transaction if needed. Raises ContextEstablishmentError unless
    the bound value reads back exactly.
    """
    role = settings.DB_APP_ROLE if app_role is None else app_role
    connection = session.connection()
    connection.info[RLS_PRINCIPAL_KEY] = principal_id

    if role:
        quoted = connection.dialect.identifier_preparer.quote(validate_role_name(role))
        session.execute(text(f"SET LOCAL ROLE {quoted}"))
    session.execute(
        text("SELECT set_config(:name, :value, true)"),
        {"name": settings.RLS_SETTING_NAME, "value": principal_id},
    )
    bound = session.execute(
        text("SELECT current_setting(:name, true)"),
        {"name": settings.RLS_SETTING_NAME},
    ).scalar()
    if bound != principal_id:
        raise ContextEstablishmentError(internal="session variable did not round-trip")


class ContextScope:
    """One principal-bound unit of work.

    ``open()`` returns the bound session; ``commit()`` or ``rollback()`` ends
    the unit of work and ``close()`` releases the connection. Once teardown has
    started, the session refuses to begin another transaction.
    """

    def __init__(
        self,
        principal_id: str,
        session_factory: sessionmaker | Callable[[], Session] | None = None,
        app_role: str | None = None,
    ):
        self.principal_id = validate_principal_id(principal_id)
        self._session_factory = session_factory or SessionLocal
        self._app_role = app_role
        self._connection_info: dict | None = None
        self.session: Session | None = None
        self.tearing_down = False

    def _refuse_after_teardown(self, session, transaction, connection) -> None:
        if self.tearing_down:
            raise ContextTeardownError(internal="statement issued after context teardown")

    def open(self) -> Session:
        session = self._session_factory()
        try:
            self._connection_info = session.connection().info
            bind_principal(session, self.principal_id, self._app_role)
        except Exception as exc:
            self._abandon(session)
            logger.warning(
                "Context establishment failed",
                extra={"principal_id": self.principal_id, "error_type": type(exc).__name__},
            )
            if isinstance(exc, ContextEstablishmentError):
                raise
            raise ContextEstablishmentError(internal="could not bind principal") from exc
        except BaseException:
            self._abandon(session)
            raise
        event.listen(session, "after_begin", self._refuse_after_teardown)
        self.session = session
        return session

    def _clear_mark(self) -> None:
        if self._connection_info is not None:
            self._connection_info.pop(RLS_PRINCIPAL_KEY, None)

    def _abandon(self, session: Session) -> None:
        self.tearing_down = True
        self._clear_mark()
        try:
            session.rollback()
        finally:
            session.close()

    def _begin_teardown(self) -> Session:
        if self.session is None:
            raise ContextTeardownError(internal="scope was never opened")
        self.tearing_down = True
        self._clear_mark()
        return self.session

    def commit(self) -> None:
        session = self._begin_teardown()
        try:
            session.commit()
        except BaseException:
            session.rollback()
            raise

    def rollback(self) -> None:
        self._begin_teardown().rollback()

    def close(self) -> None:
        if self.session is None:
            return
        self.tearing_down = True
        self._clear_mark()
        self.session.close()


@contextmanager
def principal_context(
    principal_id: str,
    session_factory: sessionmaker | Callable[[], Session] | None = None,
    app_role: str | None = None,
) -> Iterator[Session]:
    """Yield a session bound to ``principal_id``; commit on success, roll back on any exception."""
    scope = ContextScope(principal_id, session_factory, app_role)
    session = scope.open()
    try:
        yield session
    except BaseException:
        scope.rollback()
        raise
    else:
        scope.commit()
    finally:
        scope.close()


def with_context(
    principal_id: str,
    fn: Callable[[Session], T],
    session_factory: sessionmaker | Callable[[], Session] | None = None,
    app_role: str | None = None,
) -> T:
    """Run ``fn`` with a principal-bound session and return its result."""
    with principal_context(principal_id, session_factory, app_role) as session:
        return fn(session)
