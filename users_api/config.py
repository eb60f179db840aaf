"""Configuration management for the users API service."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Mapping, Optional
from urllib.parse import urlsplit

import yaml
from dotenv import dotenv_values

DEFAULT_MONGODB_URI = "mongodb://localhost:27017/demoDB"
DEFAULT_DATABASE_NAME = "demoDB"
DEFAULT_COLLECTION_NAME = "users"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")

# Environment variable -> settings field
_ENV_OVERRIDES: Dict[str, str] = {
    "MONGODB_URI": "mongodb_uri",
    "USERS_API_DB_NAME": "database_name",
    "USERS_API_COLLECTION": "collection_name",
    "USERS_API_HOST": "host",
    "PORT": "port",
    "USERS_API_LOG_LEVEL": "log_level",
}


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the HTTP service and its document store."""

    mongodb_uri: str = DEFAULT_MONGODB_URI
    database_name: Optional[str] = None
    collection_name: str = DEFAULT_COLLECTION_NAME
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = "INFO"

    @property
    def resolved_database_name(self) -> str:
        """Explicit database name, else the path component of the URI."""
        if self.database_name:
            return self.database_name
        return database_name_from_uri(self.mongodb_uri)

    @staticmethod
    def from_dict(data: Mapping[str, object], base: "Settings | None" = None) -> "Settings":
        """Create :class:`Settings` from raw mapping data layered over ``base``."""
        settings = base or Settings()
        known = {
            "mongodb_uri",
            "database_name",
            "collection_name",
            "host",
            "port",
            "log_level",
        }
        unknown = set(data.keys()) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        values: Dict[str, object] = {}
        for key, raw in data.items():
            if raw is None:
                continue
            if key == "port":
                values[key] = _parse_port(raw)
            elif key == "log_level":
                values[key] = _parse_log_level(raw)
            else:
                values[key] = str(raw).strip()
        return replace(settings, **values)


def database_name_from_uri(uri: str) -> str:
    path = urlsplit(uri).path.lstrip("/")
    return path or DEFAULT_DATABASE_NAME


def _parse_port(value: object) -> int:
    try:
        port = int(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"Invalid value for port: {value!r}") from exc
    if not 0 < port < 65536:
        raise ValueError(f"Invalid value for port: {value!r}")
    return port


def _parse_log_level(value: object) -> str:
    level = str(value).strip().upper()
    if level not in LOG_LEVELS:
        raise ValueError(
            f"Invalid value for log_level: {value!r} (expected one of {', '.join(LOG_LEVELS)})"
        )
    return level


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the optional YAML settings file."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config" / "settings.yaml").resolve(strict=False)


def load_settings_file(config_path: Path) -> Dict[str, object]:
    """Read a YAML settings file, returning an empty mapping when it is absent."""
    if not config_path.is_file():
        return {}
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")
    return raw


def resolve_env_file(env_value: Optional[str]) -> Path:
    """Resolve the dotenv file, defaulting to ``.env`` in the working directory."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path.cwd() / ".env").resolve(strict=False)


def load_env_file(env_file: Path) -> Dict[str, str]:
    """Read ``KEY=value`` pairs from a dotenv file, ignoring keys without values."""
    if not env_file.is_file():
        return {}
    return {key: value for key, value in dotenv_values(env_file).items() if value is not None}


def load_settings(
    *,
    config_path: Optional[Path] = None,
    env_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Build settings from defaults, the YAML file, the dotenv file and the environment.

    Later sources win; variables set in the process environment take
    precedence over the same keys in the dotenv file.
    """

    process_env = os.environ if environ is None else environ
    dotenv_path = env_file or resolve_env_file(process_env.get("USERS_API_ENV_FILE"))
    env: Dict[str, str] = {**load_env_file(dotenv_path), **process_env}

    path = config_path or resolve_config_path(env.get("USERS_API_CONFIG"))
    settings = Settings.from_dict(load_settings_file(path))

    overrides = {
        field: env[name]
        for name, field in _ENV_OVERRIDES.items()
        if env.get(name, "").strip()
    }
    if overrides:
        settings = Settings.from_dict(overrides, base=settings)
    return settings


__all__ = [
    "DEFAULT_MONGODB_URI",
    "Settings",
    "database_name_from_uri",
    "load_env_file",
    "load_settings",
    "load_settings_file",
    "resolve_config_path",
    "resolve_env_file",
]
