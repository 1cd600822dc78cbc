from sqlmodel import create_engine, SQLModel, Session
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.logging_config import get_logger

logger = get_logger(__name__)


def build_engine(database_url: str, timeout_seconds: int = 10) -> Engine:
    """
    Create the engine for the event store.

    SQLite is used for local development and tests; PostgreSQL in production.
    Both get a bounded wait so a stuck admission surfaces as a store error
    instead of hanging the worker thread.
    """
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": timeout_seconds}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(database_url, connect_args=connect_args)

    engine = create_engine(
        database_url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Recycle connections every 5 min (poolers drop idle connections)
        pool_timeout=timeout_seconds,
        connect_args={
            "connect_timeout": timeout_seconds,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
    )

    @event.listens_for(engine, "connect")
    def set_statement_timeout(dbapi_connection, connection_record):
        """Bound query time so store timeouts surface as errors."""
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(f"SET statement_timeout = '{int(timeout_seconds)}s'")
        except Exception as e:
            logger.warning("Could not set statement timeout", error=str(e))
        finally:
            cursor.close()

    return engine


engine = build_engine(settings.DATABASE_URL, settings.STORE_TIMEOUT_SECONDS)


def get_session():
    with Session(engine) as session:
        yield session


def create_db_and_tables(bind: Engine | None = None):
    # Import models so they are registered with SQLModel metadata
    from app import models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)
