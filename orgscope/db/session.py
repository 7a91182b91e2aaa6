import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import DisconnectionError
from sqlalchemy.orm import sessionmaker

from orgscope.core.config import Settings, settings

logger = logging.getLogger(__name__)

# Key in the pooled connection's info dict while a principal is bound to it.
RLS_PRINCIPAL_KEY = "rls_principal_id"


def _refuse_bound_connection(dbapi_connection, connection_record, connection_proxy) -> None:
    """Pool checkout hook: a connection still marked as bound never leaves the pool.

    Raising DisconnectionError makes the pool invalidate the connection and
    hand out a fresh one instead.
    """
    if RLS_PRINCIPAL_KEY in connection_record.info:
        logger.error("Pooled connection still bound to a principal; invalidating")
        connection_record.info.pop(RLS_PRINCIPAL_KEY, None)
        raise DisconnectionError("connection returned to pool with a bound principal")


def install_pool_guard(engine: Engine) -> Engine:
    if not event.contains(engine, "checkout", _refuse_bound_connection):
        event.listen(engine, "checkout", _refuse_bound_connection)
    return engine


def create_engine_with_settings(config: Settings) -> Engine:
    """Build the shared pooled engine from settings."""
    connect_args = {}
    if make_url(config.DATABASE_URL).get_backend_name().startswith("postgresql"):
        connect_args["options"] = "-c timezone=utc"

    engine = create_engine(
        config.DATABASE_URL,
        pool_pre_ping=True,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        pool_timeout=config.DB_POOL_TIMEOUT,
        pool_recycle=config.DB_POOL_RECYCLE,
        connect_args=connect_args,
    )
    return install_pool_guard(engine)


engine = create_engine_with_settings(settings)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
