"""Application configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Mapping
from urllib.parse import quote_plus


ENV_PREFIX = "TREASURY_INGEST_"

DEFAULT_JOB_BASE_URL = "http://localhost:8000"
DEFAULT_SEC_USER_AGENT = "treasury-ingest research@example.com"

API_KEY_NAMES: Mapping[str, str] = {
    "finnhub": "FINNHUB_API_KEY",
    "polygon": "POLYGON_API_KEY",
    "twelve_data": "TWELVE_DATA_API_KEY",
    "alpha_vantage": "ALPHA_VANTAGE_API_KEY",
}


def _env_file_path(env: Mapping[str, str]) -> Path | None:
    """Locate the profile file named by the environment, if there is one.

    ``TREASURY_INGEST_ENV_FILE`` wins; otherwise ``.env.<profile>`` is looked
    up in the working directory and then in each directory above this module.
    """

    explicit = env.get(f"{ENV_PREFIX}ENV_FILE")
    if explicit:
        path = Path(explicit)
        if path.is_absolute():
            return path if path.is_file() else None
        name = explicit
    else:
        name = f".env.{env.get(f'{ENV_PREFIX}ENV', 'local')}"

    here = Path(__file__).resolve()
    roots = dict.fromkeys([Path.cwd().resolve(), *here.parents])
    return next((root / name for root in roots if (root / name).is_file()), None)


def _read_env_file(path: Path) -> dict[str, str]:
    """Read ``KEY=value`` lines, ignoring comments and ``export`` prefixes."""

    variables: dict[str, str] = {}
    for line in path.read_text().splitlines():
        line = line.strip()
        if line.startswith("export "):
            line = line[7:].lstrip()
        key, sep, value = line.partition("=")
        if not sep or line.startswith("#"):
            continue
        value = value.strip()
        if value[:1] in {'"', "'"} and value.endswith(value[0]) and len(value) > 1:
            value = value[1:-1]
        variables[key.strip()] = value
    return variables


def _build_database_url(env: Mapping[str, str]) -> str | None:
    """Construct a SQLAlchemy URL from discrete environment variables."""

    host = env.get(f"{ENV_PREFIX}DB_HOST")
    if not host:
        return None

    username = env.get(f"{ENV_PREFIX}DB_USERNAME")
    if not username:
        raise RuntimeError(
            f"{ENV_PREFIX}DB_USERNAME must be set when using discrete database settings"
        )

    if f"{ENV_PREFIX}DB_PASSWORD" not in env:
        raise RuntimeError(
            f"{ENV_PREFIX}DB_PASSWORD must be set when using discrete database settings"
        )

    password = env.get(f"{ENV_PREFIX}DB_PASSWORD", "")
    port = env.get(f"{ENV_PREFIX}DB_PORT", "5432")
    database = env.get(f"{ENV_PREFIX}DB_NAME", "treasuries")
    driver = env.get(f"{ENV_PREFIX}DB_DRIVER", "postgresql+psycopg")

    auth = f"{quote_plus(username)}:{quote_plus(password)}"
    port_part = f":{port}" if port else ""
    return f"{driver}://{auth}@{host}{port_part}/{database}"


def _parse_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    """Runtime configuration."""

    database_url: str
    api_keys: Mapping[str, str] = field(default_factory=dict)
    job_base_url: str = DEFAULT_JOB_BASE_URL
    cron_secret: str | None = None
    sec_user_agent: str = DEFAULT_SEC_USER_AGENT
    request_timeout: float = 30.0
    market_data_ttl: float = 30 * 60

    @staticmethod
    def load(env: Mapping[str, str] | None = None) -> "Settings":
        """Load settings from environment variables."""

        base_env = dict(env or os.environ)
        env_file = _env_file_path(base_env)
        file_env = _read_env_file(env_file) if env_file is not None else {}
        # Environment variables set in the shell take precedence over the file.
        merged_env = {**file_env, **base_env}

        database_url = merged_env.get(f"{ENV_PREFIX}DATABASE_URL")
        if not database_url:
            database_url = _build_database_url(merged_env)
        if not database_url:
            raise RuntimeError(
                f"{ENV_PREFIX}DATABASE_URL must be set or provide discrete database settings via the env file"
            )

        api_keys = {
            provider: merged_env[f"{ENV_PREFIX}{name}"].strip()
            for provider, name in API_KEY_NAMES.items()
            if merged_env.get(f"{ENV_PREFIX}{name}", "").strip()
        }

        return Settings(
            database_url=database_url,
            api_keys=api_keys,
            job_base_url=merged_env.get(f"{ENV_PREFIX}JOB_BASE_URL", DEFAULT_JOB_BASE_URL).rstrip("/"),
            cron_secret=merged_env.get(f"{ENV_PREFIX}CRON_SECRET") or None,
            sec_user_agent=merged_env.get(f"{ENV_PREFIX}SEC_USER_AGENT", DEFAULT_SEC_USER_AGENT),
            request_timeout=_parse_float(merged_env, "REQUEST_TIMEOUT", 30.0),
            market_data_ttl=_parse_float(merged_env, "MARKET_DATA_TTL", 30 * 60),
        )


__all__ = ["Settings", "API_KEY_NAMES", "DEFAULT_JOB_BASE_URL"]
