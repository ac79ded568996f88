from collections.abc import Callable

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from chatmeter.core.config import get_settings

settings = get_settings()

# Defaults to SQLite for development
SQLALCHEMY_DATABASE_URL = settings.database_url

# Configure engine based on database type
connect_args = {}
engine_kwargs = {}

if SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    connect_args["check_same_thread"] = False
    # For in-memory SQLite, use StaticPool to share connection across threads
    if ":memory:" in SQLALCHEMY_DATABASE_URL:
        engine_kwargs["poolclass"] = StaticPool
else:
    # PostgreSQL/MySQL connection pool settings for production
    engine_kwargs.update({
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,  # Enable connection health checks
        "pool_recycle": 3600,  # Recycle connections after 1 hour
    })

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args=connect_args,
    **engine_kwargs
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> Callable[[], Session]:
    """Session factory for work that outlives the request scope.

    Streaming responses keep running after request-scoped dependencies have
    been torn down, so they open their own sessions from this factory.
    """
    return SessionLocal
