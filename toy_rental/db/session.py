from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from toy_rental.config import get_settings


def _engine_options(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    options: dict = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in url or url.rstrip("/").endswith("sqlite:"):
        # In-memory databases live on a single shared connection.
        options["poolclass"] = StaticPool
    return options


TOY_RENTAL_DB_URL = get_settings().database_url

engine = create_engine(TOY_RENTAL_DB_URL, **_engine_options(TOY_RENTAL_DB_URL))

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
)
