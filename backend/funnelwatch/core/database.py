"""
Database configuration and session management.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from funnelwatch.core.config import settings

# Keep sync runs from hanging on an unreachable DB host.
# (psycopg2 honors connect_timeout in seconds)
_connect_args = {}
_engine_kwargs = {}
if str(getattr(settings, "DATABASE_URL", "")).startswith(("postgresql://", "postgres://")):
    _connect_args = {"connect_timeout": 5}
    _engine_kwargs = {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
    }

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    pool_pre_ping=True,  # Verify connections before use
    **_engine_kwargs,
)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def get_db():
    """Dependency for getting database sessions."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
