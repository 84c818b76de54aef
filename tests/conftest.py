from __future__ import annotations

from typing import Callable

import pytest
from fastapi.testclient import TestClient

from buildcache.common.settings import GatewaySettings
from buildcache.gateway.app import create_app
from buildcache.storage import RedisArtifactStorage
from tests.utils.fakes import READER, WRITER, FakeRedis, basic_auth


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def make_settings() -> Callable[..., GatewaySettings]:
    def factory(**overrides) -> GatewaySettings:
        values = {
            "auth_users": [
                {"username": READER[0], "password": READER[1], "role": "reader"},
                {"username": WRITER[0], "password": WRITER[1], "role": "writer"},
            ],
            "max_entry_size_mb": 1,
        }
        values.update(overrides)
        return GatewaySettings(**values)

    return factory


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def make_client(make_settings, fake_redis):
    clients: list[TestClient] = []

    def factory(**overrides) -> TestClient:
        settings = make_settings(**overrides)
        storage = RedisArtifactStorage(fake_redis, settings.namespace)
        client = TestClient(create_app(settings, storage=storage))
        client.__enter__()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()


@pytest.fixture
def reader_headers() -> dict[str, str]:
    return basic_auth(*READER)


@pytest.fixture
def writer_headers() -> dict[str, str]:
    return basic_auth(*WRITER)
