from __future__ import annotations

import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from buildcache.cli import admin
from buildcache.storage import RedisArtifactStorage
from tests.utils.fakes import FakeRedis


@pytest.fixture
def admin_storage(monkeypatch, make_settings):
    client = FakeRedis()
    client.store.update({"team-a:present": b"x", "present": b"y"})
    settings = make_settings(namespace="team-a")
    monkeypatch.setattr(admin, "load_settings", lambda _path=None: settings)
    monkeypatch.setattr(admin, "build_storage", lambda cfg: RedisArtifactStorage(client, cfg.namespace))
    return client


@pytest.mark.anyio
async def test_ping_text_output(admin_storage, capsys):
    assert await admin.run(["ping"]) == 0
    assert capsys.readouterr().out.strip() == "redis storage reachable (namespace=team-a)"
    assert admin_storage.closed


@pytest.mark.anyio
async def test_exists_json_output(admin_storage, capsys):
    assert await admin.run(["--json", "exists", "present", "absent"]) == 0
    assert json.loads(capsys.readouterr().out) == {"present": True, "absent": False}


@pytest.mark.anyio
async def test_namespace_override(admin_storage, capsys):
    assert await admin.run(["--namespace", "", "exists", "present"]) == 0
    assert capsys.readouterr().out.strip() == "present: present"


@pytest.mark.anyio
async def test_delete_removes_entries(admin_storage, capsys):
    assert await admin.run(["delete", "present"]) == 0
    assert "team-a:present" not in admin_storage.store
    assert "present" in admin_storage.store
    assert "deleted present" in capsys.readouterr().out


@pytest.mark.anyio
async def test_storage_failure_exit_code(admin_storage, capsys):
    admin_storage.fail_with = RedisConnectionError("Connection refused")
    assert await admin.run(["ping"]) == 1
    assert "Error: ping failed" in capsys.readouterr().out
    assert admin_storage.closed


def test_main_exits_with_status(admin_storage):
    with pytest.raises(SystemExit) as exc_info:
        admin.main(["exists", "present"])
    assert exc_info.value.code == 0
