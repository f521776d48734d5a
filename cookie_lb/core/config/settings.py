from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[3]

DOCKER_DATA_DIR = Path("/var/lib/cookie-lb")


def _in_container() -> bool:
    return Path("/.dockerenv").exists() or Path("/run/.containerenv").exists()


def _default_home_dir() -> Path:
    if _in_container():
        return DOCKER_DATA_DIR
    return Path.home() / ".cookie-lb"


DEFAULT_HOME_DIR = _default_home_dir()
DEFAULT_DB_PATH = DEFAULT_HOME_DIR / "store.db"
DEFAULT_ENCRYPTION_KEY_FILE = DEFAULT_HOME_DIR / "encryption.key"

DEFAULT_QUOTA_SHARED_GROUPS: tuple[tuple[str, ...], ...] = (
    ("claude-sonnet-4-5", "claude-sonnet-4-5-thinking", "claude-opus-4-5-thinking"),
    ("gemini-3-pro-high", "gemini-3-pro-low"),
    ("gemini-2.5-flash", "gemini-2.5-flash-thinking"),
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="COOKIE_LB_",
        env_file=(BASE_DIR / ".env", BASE_DIR / ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = f"sqlite+aiosqlite:///{DEFAULT_DB_PATH}"
    database_pool_size: int = Field(default=15, gt=0)
    database_max_overflow: int = Field(default=10, ge=0)
    database_pool_timeout_seconds: float = Field(default=30.0, gt=0)
    upstream_base_url: str = "https://daily-cloudcode-pa.sandbox.googleapis.com/v1internal"
    upstream_host: str = "daily-cloudcode-pa.sandbox.googleapis.com"
    upstream_user_agent: str = "antigravity/1.11.3 windows/amd64"
    upstream_connect_timeout_seconds: float = 30.0
    http_client_connector_limit: int = Field(default=100, gt=0)
    http_client_keepalive_timeout_seconds: float = Field(default=15.0, gt=0)
    models_fetch_timeout_seconds: float = 30.0
    models_fetch_max_retries: int = Field(default=2, ge=0)
    oauth_token_url: str = "https://oauth2.googleapis.com/token"
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    token_refresh_timeout_seconds: float = 30.0
    # Ceiling for the select -> live quota check -> rotate loop.
    dispatch_max_attempts: int = Field(default=5, gt=0)
    no_think_markup_model_prefixes: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["gemini-"])
    quota_shared_groups: Annotated[list[list[str]], NoDecode] = Field(
        default_factory=lambda: [list(group) for group in DEFAULT_QUOTA_SHARED_GROUPS]
    )
    encryption_key_file: Path = DEFAULT_ENCRYPTION_KEY_FILE
    access_log_enabled: bool = False
    log_level: str = "INFO"

    @field_validator("database_url")
    @classmethod
    def _expand_database_url(cls, value: str) -> str:
        for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
            if value.startswith(prefix):
                path = value[len(prefix) :]
                if path.startswith("~"):
                    return f"{prefix}{Path(path).expanduser()}"
        return value

    @field_validator("encryption_key_file", mode="before")
    @classmethod
    def _expand_encryption_key_file(cls, value: str | Path) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("encryption_key_file must be a path")

    @field_validator("no_think_markup_model_prefixes", mode="before")
    @classmethod
    def _normalize_model_prefixes(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            entries = [entry.strip() for entry in value.split(",")]
            return [entry for entry in entries if entry]
        if isinstance(value, list):
            return [entry.strip() for entry in value if isinstance(entry, str) and entry.strip()]
        raise TypeError("no_think_markup_model_prefixes must be a list or comma-separated string")

    @field_validator("quota_shared_groups", mode="before")
    @classmethod
    def _normalize_quota_shared_groups(cls, value: object) -> list[list[str]]:
        # Env syntax: groups separated by ";", members by ",".
        if value is None:
            return []
        if isinstance(value, str):
            raw_groups: list[object] = [group.split(",") for group in value.split(";")]
        elif isinstance(value, (list, tuple)):
            raw_groups = list(value)
        else:
            raise TypeError("quota_shared_groups must be a list of lists or a ';'-separated string")
        groups: list[list[str]] = []
        for raw in raw_groups:
            if not isinstance(raw, (list, tuple)):
                raise TypeError("quota_shared_groups entries must be lists of model names")
            members = [member.strip() for member in raw if isinstance(member, str) and member.strip()]
            if members:
                groups.append(members)
        return groups


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
