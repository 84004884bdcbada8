from __future__ import annotations

import os
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .models import Base

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./venue-booking.db")


def make_engine(url: str) -> Engine:
    connect_args: dict = {}
    if url.startswith("sqlite"):
        # Writers queue on the database lock instead of failing immediately.
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


@lru_cache(maxsize=8)
def get_engine(url: str = DATABASE_URL) -> Engine:
    eng = make_engine(url)
    Base.metadata.create_all(eng)
    return eng


def session(engine: Engine) -> Session:
    # Callers commonly read ORM fields after committing inside a short-lived
    # session context. Prevent attributes from being expired on commit to
    # avoid DetachedInstanceError.
    return Session(engine, expire_on_commit=False)
