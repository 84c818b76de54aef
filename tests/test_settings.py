from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from buildcache.common.schemas import Role
from buildcache.common.settings import CONFIG_FILE_ENV, GatewaySettings, load_settings


USERS = [
    {"username": "reader", "password": "read-secret", "role": "reader"},
    {"username": "writer", "password": "write-secret", "role": "writer"},
]


def _write_config(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "gateway.yaml"
    path.write_text(body, encoding="utf-8")
    return path


def test_defaults() -> None:
    settings = GatewaySettings(auth_users=USERS)
    assert settings.port == 8080
    assert settings.storage_backend == "redis"
    assert settings.max_entry_size_bytes == 100 * 1024 * 1024
    assert settings.read_timeout_seconds == 30.0
    assert settings.write_timeout_seconds == 120.0
    assert settings.shutdown_grace_seconds == 10.0
    assert settings.metrics_enabled is False
    assert not settings.tls_enabled
    assert set(settings.credential_table()) == {"reader", "writer"}


def test_yaml_file_with_env_override(tmp_path, monkeypatch) -> None:
    path = _write_config(
        tmp_path,
        """
port: 8081
namespace: ci
storage_backend: s3
s3_bucket: gradle
auth_users:
  - username: reader
    password: read-secret
    role: reader
""",
    )
    monkeypatch.setenv("BUILDCACHE_PORT", "9090")
    settings = load_settings(path)
    assert settings.port == 9090
    assert settings.namespace == "ci"
    assert settings.storage_backend == "s3"
    assert settings.s3_bucket == "gradle"
    assert settings.auth_users[0].role is Role.READER


def test_config_file_from_environment(tmp_path, monkeypatch) -> None:
    path = _write_config(tmp_path, "auth_enabled: false\nmax_entry_size_mb: 5\n")
    monkeypatch.setenv(CONFIG_FILE_ENV, str(path))
    settings = load_settings()
    assert settings.auth_enabled is False
    assert settings.max_entry_size_bytes == 5 * 1024 * 1024


def test_config_file_must_be_mapping(tmp_path) -> None:
    path = _write_config(tmp_path, "- just\n- a list\n")
    with pytest.raises(ValueError):
        load_settings(path)


def test_users_from_json_environment(monkeypatch) -> None:
    monkeypatch.setenv("BUILDCACHE_AUTH_USERS", json.dumps(USERS))
    settings = GatewaySettings()
    assert [user.username for user in settings.auth_users] == ["reader", "writer"]
    assert settings.auth_users[1].password.get_secret_value() == "write-secret"


def test_role_override_replaces_existing_user(monkeypatch) -> None:
    monkeypatch.setenv("BUILDCACHE_READER_PASSWORD", "rotated")
    settings = GatewaySettings(auth_users=USERS)
    reader = settings.credential_table()["reader"]
    assert reader.password.get_secret_value() == "rotated"
    assert reader.role is Role.READER


def test_role_override_adds_missing_user(monkeypatch) -> None:
    monkeypatch.setenv("BUILDCACHE_WRITER_USERNAME", "ci")
    monkeypatch.setenv("BUILDCACHE_WRITER_PASSWORD", "ci-secret")
    settings = GatewaySettings(auth_users=USERS[:1])
    assert settings.credential_table()["ci"].role is Role.WRITER


def test_partial_override_for_absent_role_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("BUILDCACHE_WRITER_USERNAME", "ci")
    with pytest.raises(ValidationError):
        GatewaySettings(auth_users=USERS[:1])


@pytest.mark.parametrize(
    "overrides",
    [
        {"auth_users": []},
        {"auth_users": USERS + [{"username": "reader", "password": "other", "role": "writer"}]},
        {"auth_users": [{"username": "", "password": "x", "role": "reader"}]},
        {"auth_users": [{"username": "reader", "password": "", "role": "reader"}]},
        {"auth_users": USERS, "max_entry_size_mb": 0},
        {"auth_users": USERS, "tls_cert_file": "/etc/tls/cert.pem"},
        {"auth_users": USERS, "s3_access_key": "only-access"},
        {"auth_users": USERS, "storage_backend": "filesystem"},
        {"auth_users": USERS, "storage_backend": "s3", "s3_bucket": ""},
    ],
)
def test_invalid_configuration_fails_at_startup(overrides) -> None:
    with pytest.raises(ValidationError):
        GatewaySettings(**overrides)


def test_auth_disabled_needs_no_users() -> None:
    settings = GatewaySettings(auth_enabled=False)
    assert settings.credential_table() == {}


def test_blank_namespace_means_unscoped() -> None:
    assert GatewaySettings(auth_users=USERS, namespace="  ").namespace is None


def test_secrets_are_not_rendered(make_settings) -> None:
    settings = make_settings(redis_url="redis://:hunter2@cache:6379/0")
    assert "hunter2" not in repr(settings)
    assert "read-secret" not in repr(settings.auth_users)
