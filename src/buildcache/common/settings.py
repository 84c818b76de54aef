"""Configuration model for the build cache gateway."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from .schemas import Role, UserCredential


CONFIG_FILE_ENV = "BUILDCACHE_CONFIG_FILE"


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class GatewaySettings(BaseSettings):
    """Runtime settings for the cache gateway.

    Values passed to the constructor (typically read from a YAML config file)
    are overridden by ``BUILDCACHE_*`` environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    host: str = env_field("0.0.0.0", "BUILDCACHE_HOST")
    port: int = env_field(8080, "BUILDCACHE_PORT")
    read_timeout_seconds: float = env_field(30.0, "BUILDCACHE_READ_TIMEOUT")
    write_timeout_seconds: float = env_field(120.0, "BUILDCACHE_WRITE_TIMEOUT")
    keepalive_timeout_seconds: float = env_field(5.0, "BUILDCACHE_KEEPALIVE_TIMEOUT")
    max_concurrency: Optional[int] = env_field(None, "BUILDCACHE_MAX_CONCURRENCY")
    shutdown_grace_seconds: float = env_field(10.0, "BUILDCACHE_SHUTDOWN_GRACE")
    tls_cert_file: Optional[Path] = env_field(None, "BUILDCACHE_TLS_CERT_FILE")
    tls_key_file: Optional[Path] = env_field(None, "BUILDCACHE_TLS_KEY_FILE")

    max_entry_size_mb: int = env_field(100, "BUILDCACHE_MAX_ENTRY_SIZE_MB")
    namespace: Optional[str] = env_field(None, "BUILDCACHE_NAMESPACE")

    auth_enabled: bool = env_field(True, "BUILDCACHE_AUTH_ENABLED")
    auth_realm: str = env_field("Build Cache", "BUILDCACHE_AUTH_REALM")
    auth_users: list[UserCredential] = Field(default_factory=list, validation_alias="BUILDCACHE_AUTH_USERS")
    reader_username: Optional[str] = env_field(None, "BUILDCACHE_READER_USERNAME")
    reader_password: Optional[SecretStr] = env_field(None, "BUILDCACHE_READER_PASSWORD")
    writer_username: Optional[str] = env_field(None, "BUILDCACHE_WRITER_USERNAME")
    writer_password: Optional[SecretStr] = env_field(None, "BUILDCACHE_WRITER_PASSWORD")

    storage_backend: Literal["redis", "s3"] = env_field("redis", "BUILDCACHE_STORAGE_BACKEND")
    redis_url: SecretStr = env_field(SecretStr("redis://localhost:6379/0"), "BUILDCACHE_REDIS_URL")
    redis_socket_timeout_seconds: float = env_field(5.0, "BUILDCACHE_REDIS_SOCKET_TIMEOUT")
    redis_connect_timeout_seconds: float = env_field(5.0, "BUILDCACHE_REDIS_CONNECT_TIMEOUT")
    s3_endpoint_url: Optional[str] = env_field(None, "BUILDCACHE_S3_ENDPOINT")
    s3_region: Optional[str] = env_field(None, "BUILDCACHE_S3_REGION")
    s3_bucket: str = env_field("build-cache", "BUILDCACHE_S3_BUCKET")
    s3_access_key: Optional[SecretStr] = env_field(None, "BUILDCACHE_S3_ACCESS_KEY")
    s3_secret_key: Optional[SecretStr] = env_field(None, "BUILDCACHE_S3_SECRET_KEY")
    s3_create_bucket: bool = env_field(True, "BUILDCACHE_S3_CREATE_BUCKET")

    metrics_enabled: bool = env_field(False, "BUILDCACHE_METRICS_ENABLED")
    metrics_token: Optional[SecretStr] = env_field(None, "BUILDCACHE_METRICS_TOKEN")
    log_level: str = env_field("INFO", "BUILDCACHE_LOG_LEVEL")
    log_format: Literal["json", "console"] = env_field("json", "BUILDCACHE_LOG_FORMAT")
    otel_exporter_endpoint: Optional[str] = env_field(None, "BUILDCACHE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "BUILDCACHE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "BUILDCACHE_OTEL_SAMPLER_RATIO")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @field_validator("max_entry_size_mb")
    @classmethod
    def _positive_entry_size(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_entry_size_mb must be positive")
        return value

    @field_validator("namespace", "reader_username", "writer_username", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
        return value

    @model_validator(mode="after")
    def _validate_consistency(self) -> "GatewaySettings":
        self.auth_users = self._apply_role_overrides(list(self.auth_users))

        if self.auth_enabled and not self.auth_users:
            raise ValueError("auth_users is required when auth is enabled")
        seen: set[str] = set()
        for user in self.auth_users:
            if user.username in seen:
                raise ValueError(f"duplicate username in auth_users: {user.username}")
            seen.add(user.username)

        if (self.tls_cert_file is None) != (self.tls_key_file is None):
            raise ValueError("tls_cert_file and tls_key_file must be configured together")
        if (self.s3_access_key is None) != (self.s3_secret_key is None):
            raise ValueError("s3_access_key and s3_secret_key must be configured together")
        if self.storage_backend == "s3" and not self.s3_bucket:
            raise ValueError("s3_bucket is required for the s3 storage backend")
        return self

    def _apply_role_overrides(self, users: list[UserCredential]) -> list[UserCredential]:
        overrides = (
            (Role.READER, self.reader_username, self.reader_password),
            (Role.WRITER, self.writer_username, self.writer_password),
        )
        for role, username, password in overrides:
            if username is None and password is None:
                continue
            index = next((i for i, user in enumerate(users) if user.role is role), None)
            if index is None:
                if username is None or password is None:
                    raise ValueError(f"both username and password are required to add a {role.value} user")
                users.append(UserCredential(username=username, password=password, role=role))
                continue
            current = users[index]
            users[index] = UserCredential(
                username=username or current.username,
                password=password or current.password,
                role=role,
            )
        return users

    @property
    def max_entry_size_bytes(self) -> int:
        return self.max_entry_size_mb * 1024 * 1024

    @property
    def tls_enabled(self) -> bool:
        return self.tls_cert_file is not None and self.tls_key_file is not None

    def credential_table(self) -> dict[str, UserCredential]:
        return {user.username: user for user in self.auth_users}


def load_settings(config_path: Optional[Path] = None) -> GatewaySettings:
    """Build settings from an optional YAML file plus the environment."""

    if config_path is None:
        env_path = os.environ.get(CONFIG_FILE_ENV)
        config_path = Path(env_path) if env_path else None
    if config_path is None:
        return GatewaySettings()

    raw = yaml.safe_load(Path(config_path).expanduser().read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"configuration file {config_path} must contain a mapping")
    values: dict[str, Any] = {str(key): value for key, value in raw.items()}
    return GatewaySettings(**values)
