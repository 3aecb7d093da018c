import os

from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import NullPool

from freight_escrow.config import settings

connect_args = {}
# Avoid long hangs on DB outages (psycopg3 supports connect_timeout in seconds).
if str(settings.database_url).startswith("postgresql"):
    connect_args = {"connect_timeout": int(os.getenv("DB_CONNECT_TIMEOUT_SECONDS", "10"))}
elif str(settings.database_url).startswith("sqlite"):
    connect_args = {"check_same_thread": False}

db_url = str(settings.database_url)
is_postgres = db_url.startswith("postgresql")


def _env_bool(key: str, default: str = "false") -> bool:
    v = os.getenv(key, default)
    return str(v).strip().lower() in {"1", "true", "yes", "y", "on"}


engine_kwargs: dict = {"future": True, "connect_args": connect_args}

if is_postgres:
    engine_kwargs["pool_pre_ping"] = True

    # Serverless handlers behind a transaction pooler should not hold connections.
    if _env_bool("DB_USE_NULL_POOL", "false"):
        engine_kwargs["poolclass"] = NullPool
    else:
        engine_kwargs.update(
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT_SECONDS", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE_SECONDS", "1800")),
        )

engine = create_engine(db_url, **engine_kwargs)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        if is_postgres:
            timeout_ms = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000"))
            if timeout_ms > 0:
                db.execute(text(f"SET statement_timeout = {timeout_ms}"))
        yield db
    finally:
        db.close()
