"""Database connection and session management."""

from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Global engine instance, created on first use
_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None

# Base class for all database models
Base = declarative_base()


def build_engine(database_url: str, echo: bool = False, connect_args: Optional[dict] = None) -> Engine:
    """Create an engine; SQLite URLs share one connection through StaticPool."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args=connect_args if connect_args is not None else {"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )
    return create_engine(database_url, echo=echo, connect_args=connect_args or {})


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None) -> Engine:
    """Get or create the process-wide engine."""
    global _engine

    if _engine is None:
        if database_url is None:
            from ..config import get_config
            config = get_config()
            database_url = config.database_url
            echo = config.database_echo
        _engine = build_engine(database_url, echo=echo, connect_args=connect_args)
    return _engine


def get_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    """Session factory bound to the given (or global) engine."""
    global _session_factory

    if engine is not None:
        return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    if _session_factory is None:
        _session_factory = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=get_database_engine()
        )
    return _session_factory


def create_tables(engine: Optional[Engine] = None):
    """Create all database tables."""
    from . import models  # noqa: F401  registers the mappers
    Base.metadata.create_all(bind=engine or get_database_engine())


def drop_tables(engine: Optional[Engine] = None):
    """Drop all database tables."""
    Base.metadata.drop_all(bind=engine or get_database_engine())
