from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from mediaqueue.utils.logger import logger

# Base class for models
Base = declarative_base()


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; SQLite files get their directory created first."""
    url = make_url(database_url)
    kwargs = {"echo": echo, "future": True}

    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if not url.database or url.database == ":memory:":
            # One shared connection so every session sees the same in-memory DB
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    else:
        kwargs["pool_pre_ping"] = True  # Detect and recycle stale/broken connections
        kwargs["pool_recycle"] = 300

    return create_engine(database_url, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all database tables"""
    # Import models to register them with Base
    from mediaqueue.models import queue_snapshot  # noqa: F401

    Base.metadata.create_all(engine)
    logger.info("database.initialized", extra={"store": engine.url.get_backend_name()})
