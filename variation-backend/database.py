# database.py

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from config import DATABASE_URL


def make_engine(url: str = DATABASE_URL):
    """Create an engine; in-memory SQLite must share one connection or every session sees an empty database."""
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url)


def make_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


# Create the engine to connect to the database
engine = make_engine()

# Create a session factory
SessionLocal = make_session_factory(engine)

# Base class for our database models
Base = declarative_base()
