from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from resource_api.db import Base, build_engine, get_session_factory_from_app
from resource_api.main import create_app
from resource_api.settings import Settings
from tests.catalog import CategoryResource, ProductResource, seed_catalog


def pytest_collection_modifyitems(config, items) -> None:
    for item in items:
        path = Path(str(item.fspath))
        path_str = str(path)
        if "/tests/integration/" in path_str:
            item.add_marker(pytest.mark.integration)
        elif "/tests/unit/" in path_str:
            item.add_marker(pytest.mark.unit)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        database_create_all=True,
        logging_level="DEBUG",
        export_chunk_size=2,
    )


@pytest.fixture()
def engine(settings: Settings) -> Iterator[Engine]:
    engine = build_engine(settings)
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture()
def session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    with session_factory() as session:
        yield session


@pytest.fixture()
def seeded(session: Session) -> dict:
    return seed_catalog(session)


@pytest.fixture()
def app(settings: Settings) -> FastAPI:
    return create_app(settings, resources=[ProductResource, CategoryResource])


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app) as client:
        yield client


@pytest.fixture()
def seeded_client(client: TestClient) -> TestClient:
    """Client whose application database already holds the sample catalog."""

    session_factory = get_session_factory_from_app(client.app)
    with session_factory() as session:
        seed_catalog(session)
    return client
