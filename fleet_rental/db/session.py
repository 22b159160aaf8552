import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _engine_options(url: str) -> dict:
    options: dict = {"future": True}
    if url.startswith("sqlite"):
        # One shared connection so an in-memory database survives across sessions and threads.
        options["connect_args"] = {"check_same_thread": False}
        options["poolclass"] = StaticPool
    else:
        options["pool_pre_ping"] = True
    return options


FLEET_RENTAL_DB_URL = _require_env("FLEET_RENTAL_DB_URL")

engine_rental = create_engine(FLEET_RENTAL_DB_URL, **_engine_options(FLEET_RENTAL_DB_URL))

SessionLocalRental = sessionmaker(
    bind=engine_rental,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
