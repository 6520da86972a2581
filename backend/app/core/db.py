"""
Relational store connection.

Builds the SQLAlchemy engine and session factory from the configured
database URL. In-memory SQLite shares one connection across threads so
that work pushed through asyncio.to_thread sees the same database.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models.query import Base


def get_engine(database_url: str) -> Engine:
    """Return an engine for the URL, creating tables if they are missing."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
    else:
        engine = create_engine(database_url, pool_pre_ping=True)

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)
