"""Client configuration loading and validation."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterable, Literal

import yaml
from pydantic import Field, NonNegativeInt, PositiveFloat, PositiveInt
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_LOCATIONS: tuple[Path, ...] = (
    Path("./config/ipcrpc.yaml"),
    Path("./config/ipcrpc.yml"),
)


class ClientSettings(BaseSettings):
    """Validated settings for the IPC RPC client."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="IPCRPC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Identity + endpoint
    client_id: str | None = Field(
        default=None,
        description="Application identifier sent in the handshake frame.",
    )
    ipc_name: str = Field(
        default="discord-ipc",
        description="Base name of the numbered local sockets/pipes to try.",
    )
    handshake_version: PositiveInt = Field(
        default=1,
        description="Protocol version advertised in the handshake frame.",
    )
    max_frame_bytes: PositiveInt = Field(
        default=1024 * 1024,
        description="Largest payload length accepted from the peer.",
    )

    # Requests
    request_timeout_seconds: PositiveFloat = Field(
        default=10.0,
        description="Deadline for a single request (and for connect to reach READY).",
    )
    max_concurrent_requests: PositiveInt = Field(
        default=5,
        description="Maximum requests in flight at the same time.",
    )

    # Keep-alive & reconnection
    heartbeat_interval_seconds: PositiveFloat = Field(
        default=15.0,
        description="Interval between keep-alive PING frames while READY.",
    )
    auto_reconnect: bool = Field(
        default=False,
        description="Reconnect automatically after an unexpected disconnect.",
    )
    max_reconnect_attempts: NonNegativeInt = Field(
        default=3,
        description="Reconnection attempts before giving up.",
    )
    reconnect_base_delay_seconds: PositiveFloat = Field(
        default=1.0,
        description="Base delay for reconnection backoff.",
    )
    reconnect_max_delay_seconds: PositiveFloat = Field(
        default=30.0,
        description="Maximum delay for reconnection backoff.",
    )

    # Batching & caching
    enable_batching: bool = Field(
        default=False,
        description="Buffer batch requests and flush them after a quiet window.",
    )
    batch_delay_ms: NonNegativeInt = Field(
        default=10,
        description="Quiet window (milliseconds) before a batch is flushed.",
    )
    enable_cache: bool = Field(
        default=False,
        description="Enable the response cache used by cached_request().",
    )
    cache_ttl_seconds: PositiveFloat = Field(
        default=5.0,
        description="Lifetime of a cached response.",
    )

    # HTTP side-channel probe
    endpoint_probe_host: str = Field(
        default="127.0.0.1",
        description="Host probed for the HTTP authorization side-channel.",
    )
    endpoint_probe_base_port: PositiveInt = Field(
        default=6463,
        description="First port of the ten-port probe range.",
    )
    endpoint_probe_max_attempts: NonNegativeInt = Field(
        default=30,
        description="Probe attempts before the side-channel is reported missing.",
    )
    endpoint_probe_timeout_seconds: PositiveFloat = Field(
        default=1.0,
        description="Timeout for a single probe HTTP request.",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Minimum log level for the client process.",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        if isinstance(value, str):
            return value.upper()
        return value

    config_path: Path | None = Field(
        default=None,
        description="Resolved path to the on-disk config that seeded the settings.",
        exclude=True,
    )

    @property
    def batch_delay_seconds(self) -> float:
        return self.batch_delay_ms / 1000.0

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[ClientSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            cls._file_settings_source,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @staticmethod
    def _file_settings_source(settings_cls: type[ClientSettings] | None = None) -> Dict[str, Any]:
        for path in ClientSettings._resolve_candidate_paths():
            data = ClientSettings._load_file(path)
            if data is not None:
                data.setdefault("config_path", path)
                return data
        return {}

    @staticmethod
    def _resolve_candidate_paths() -> Iterable[Path]:
        explicit = os.getenv("IPCRPC_CONFIG_FILE")
        if explicit:
            yield Path(explicit).expanduser()
        yield from DEFAULT_CONFIG_LOCATIONS

    @staticmethod
    def _load_file(path: Path) -> Dict[str, Any] | None:
        if not path.is_file():
            return None
        suffix = path.suffix.lower()
        try:
            with path.open("r", encoding="utf-8") as handle:
                if suffix in {".yaml", ".yml"}:
                    raw = yaml.safe_load(handle)
                elif suffix == ".json":
                    raw = json.load(handle)
                else:
                    return None
        except OSError as exc:
            raise RuntimeError(f"Failed to read client config file {path}") from exc
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise ValueError(f"Invalid client config file {path}") from exc

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ValueError(f"Client config file {path} must contain a mapping at top level.")
        return raw


@lru_cache()
def get_settings() -> ClientSettings:
    """Return memoized client settings."""

    return ClientSettings()
