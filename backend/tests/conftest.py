from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace.core.metrics import reset_metrics
from marketplace.db import models  # noqa: F401
from marketplace.db.base import Base
from marketplace.store.memory import MemoryKeyedStore
from marketplace.store.sql import SqlKeyedStore


@pytest.fixture(autouse=True)
def _secret_key(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    reset_metrics()


@pytest.fixture()
def store() -> MemoryKeyedStore:
    return MemoryKeyedStore()


@pytest.fixture()
def sql_store() -> Generator[SqlKeyedStore, None, None]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield SqlKeyedStore(TestingSessionLocal)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def any_store(request):
    if request.param == "memory":
        return request.getfixturevalue("store")
    return request.getfixturevalue("sql_store")
