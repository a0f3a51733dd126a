from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from app.core.config import settings


is_sqlite = settings.DATABASE_URL.startswith("sqlite")

engine = create_engine(
    settings.DATABASE_URL,
    echo=settings.DATABASE_ECHO,
    future=True,
    connect_args={"check_same_thread": False} if is_sqlite else {},
    pool_pre_ping=not is_sqlite,
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Yield a session per request"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def load_models() -> None:
    """Import every model module so relationships resolve and metadata is complete"""
    from app.models import (  # noqa: F401
        audit_log,
        client,
        commission,
        commission_plan,
        commission_rule,
        organization,
        sales_transaction,
    )


def init_db(bind=None) -> None:
    """Create missing tables. Production deployments run migrations instead."""
    load_models()
    Base.metadata.create_all(bind=bind or engine)
