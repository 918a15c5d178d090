import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


RENTAL_DB_URL = _require_env("RENTAL_DB_URL")

_connect_args = {"check_same_thread": False} if RENTAL_DB_URL.startswith("sqlite") else {}

engine_rental = create_engine(
    RENTAL_DB_URL,
    pool_pre_ping=True,
    connect_args=_connect_args,
    future=True,
)

SessionLocalRental = sessionmaker(
    bind=engine_rental,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
