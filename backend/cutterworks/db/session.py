import os
from functools import lru_cache

from sqlmodel import SQLModel, create_engine

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./cutterworks.db")
SQL_ECHO = os.getenv("SQL_ECHO", "0").strip().lower() in {"1", "true", "yes"}


@lru_cache(maxsize=None)
def get_engine():
    connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
    return create_engine(DATABASE_URL, echo=SQL_ECHO, connect_args=connect_args)


def create_tables(engine=None) -> None:
    # import so the table is registered on the metadata
    from cutterworks.models.order import OrderRecord  # noqa: F401

    SQLModel.metadata.create_all(engine or get_engine())
