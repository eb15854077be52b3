from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from framethumb.config import Settings
from framethumb.main import create_app
from tests.fakes import FakeRenderer, MemoryCacheStore, StaticResolver


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        STORAGE_ROOT=str(tmp_path / "cache"),
        VIDEO_ROOT=str(tmp_path / "videos"),
        MAX_CONCURRENCY=2,
    )


@pytest.fixture()
def cache() -> MemoryCacheStore:
    return MemoryCacheStore()


@pytest.fixture()
def resolver() -> StaticResolver:
    return StaticResolver(missing=("videos/missing.mp4",))


@pytest.fixture()
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture()
def client(settings, cache, resolver, renderer):
    app = create_app(settings, cache=cache, resolver=resolver, renderer=renderer)
    with TestClient(app) as c:
        yield c
