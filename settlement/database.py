from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from settlement.config import settings


def engine_options(database_url: str) -> dict:
    """Keyword arguments for ``create_engine`` for the given backend."""
    if database_url.startswith("sqlite"):
        # Sessions cross threadpool workers and the daily runner thread.
        return {"future": True, "connect_args": {"check_same_thread": False}}

    options: dict = {
        "future": True,
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
    }
    if database_url.startswith("postgresql"):
        # Fail fast on DB outages instead of hanging a worker.
        options["connect_args"] = {"connect_timeout": settings.db_connect_timeout_seconds}
    return options


db_url = str(settings.database_url)
engine_kwargs = engine_options(db_url)
POOL_CONFIG = {
    "pool_size": engine_kwargs.get("pool_size"),
    "max_overflow": engine_kwargs.get("max_overflow"),
}

engine = create_engine(db_url, **engine_kwargs)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
