from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from fees import main as app_main
from fees.bootstrap import AppContext, build_context
from fees.domain import models  # noqa: F401
from fees.infra import db

TEST_POLL_INTERVAL_SECONDS = 0.02


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture()
def db_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Engine:
    db_path = tmp_path / "fees_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    return test_engine


def make_context(**kwargs: object) -> AppContext:
    kwargs.setdefault("poll_interval_seconds", TEST_POLL_INTERVAL_SECONDS)
    kwargs.setdefault("sleep", no_sleep)
    return build_context(**kwargs)  # type: ignore[arg-type]


@pytest.fixture()
def fees_client(
    db_engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
) -> Generator[TestClient, None, None]:
    monkeypatch.setattr(app_main, "build_context", lambda: make_context())
    with TestClient(app_main.app) as client:
        yield client
