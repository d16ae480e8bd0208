"""
Database Engine & Session Management
SQLAlchemy setup with dependency injection for FastAPI.
"""
import os
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, declarative_base

from coursepay.config import get_settings

settings = get_settings()

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

if _is_sqlite:
    # Ensure data directory exists
    os.makedirs(os.path.dirname(settings.DATABASE_URL.replace("sqlite:///", "")) or ".", exist_ok=True)

engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if _is_sqlite else {},  # Required for SQLite
    pool_pre_ping=not _is_sqlite,
    echo=settings.DEBUG,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency: yields a database session, auto-closes on finish."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ping_db() -> None:
    """Round-trip a trivial query. Raises on connectivity failure."""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    finally:
        db.close()


def init_db():
    """Create all tables. Called once at application startup."""
    from coursepay.models import transaction as _transaction_model        # noqa: F401
    from coursepay.models import reconciliation as _reconciliation_model  # noqa: F401
    from coursepay.models import gateway_config as _config_model          # noqa: F401
    from coursepay.models import audit as _audit_model                    # noqa: F401
    from coursepay.models import course as _course_model                  # noqa: F401

    Base.metadata.create_all(bind=engine)
