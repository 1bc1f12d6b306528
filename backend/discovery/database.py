from __future__ import annotations

import math
from functools import lru_cache

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings


class Base(DeclarativeBase):
    pass


def _null_safe(fn):
    def wrapper(*args):
        if any(arg is None for arg in args):
            return None
        return fn(*args)

    return wrapper


def _register_sqlite_math(dbapi_connection, _connection_record) -> None:
    # The spatial predicate is plain SQL math; PostgreSQL ships these natively.
    for name, nargs, fn in (
        ("radians", 1, math.radians),
        ("sin", 1, math.sin),
        ("cos", 1, math.cos),
        ("asin", 1, math.asin),
        ("sqrt", 1, math.sqrt),
        ("power", 2, math.pow),
        ("least", 2, min),
    ):
        dbapi_connection.create_function(name, nargs, _null_safe(fn), deterministic=True)


def make_engine(database_url: str | None = None) -> Engine:
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if url in {"sqlite://", "sqlite+pysqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, future=True, **kwargs)
        event.listen(engine, "connect", _register_sqlite_math)
        return engine
    return create_engine(url, future=True, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return make_engine()


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker[Session]:
    return make_session_factory(get_engine())


def init_schema(engine: Engine) -> None:
    from . import models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(bind=engine)
