"""
Configuration management with environment variable validation.
Loads and validates all configuration from environment variables.
"""
import json
import os
from functools import lru_cache
from typing import Annotated, List, Optional

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DATA_FILE_NAME = "keygate-data.json"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = "keygate"
    app_version: str = "1.0.0"
    environment: str = "development"
    debug: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = 8317

    # Storage
    data_path: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("KEYGATE_DATA_PATH", "DATA_PATH"),
        description="Explicit path of the JSON record file",
    )
    auth_dir: Optional[str] = Field(default=None, description="Directory holding credentials")
    writable_path: Optional[str] = Field(default=None, description="Writable base directory")
    config_file: Optional[str] = Field(default=None, description="Path of the main config file")

    # Security
    admin_password: Optional[str] = Field(
        default=None,
        description="Management key for the admin API; admin API is closed when unset",
    )
    api_key_prefix: str = "kg_"
    protected_path_prefixes: Annotated[List[str], NoDecode] = Field(default=["/v1", "/v1beta"])

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file_enabled: bool = False
    log_file_path: str = "logs/keygate.log"
    log_file_max_size: int = 10485760  # 10MB
    log_file_backup_count: int = 5

    @field_validator("admin_password")
    @classmethod
    def validate_admin_password(cls, v: Optional[str]) -> Optional[str]:
        """Reject well-known defaults and short management keys."""
        if v is None or v == "":
            return None
        if v in ["CHANGE_ME", "changeme", "password", "secret", "change-this-immediately"]:
            raise ValueError("admin_password must be set to a secure value")
        if len(v) < 16:
            raise ValueError("admin_password must be at least 16 characters long")
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production", "test"]
        if v not in allowed:
            raise ValueError(f"environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        allowed = ["json", "console"]
        if v not in allowed:
            raise ValueError(f"log_format must be one of: {allowed}")
        return v

    @field_validator("protected_path_prefixes", mode="before")
    @classmethod
    def parse_path_prefixes(cls, v):
        """
        Accept a JSON list or a comma separated string.

        Blank entries are dropped. A root prefix would put the admin,
        portal and health routes behind API-key admission and is rejected.
        """
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except json.JSONDecodeError:
                v = v.split(",")
        prefixes = [p.strip() for p in v if p and p.strip()]
        for prefix in prefixes:
            if not prefix.rstrip("/"):
                raise ValueError(f"protected path prefix {prefix!r} would cover every route")
        return prefixes

    @model_validator(mode="after")
    def validate_production(self) -> "Settings":
        if self.environment == "production" and self.debug:
            raise ValueError("DEBUG must be False in production")
        return self


def resolve_data_path(settings: Settings) -> str:
    """
    Pick the record file location.

    Order: explicit ``data_path``, then ``auth_dir``, ``writable_path`` and
    the directory of ``config_file``; the working directory last.
    """
    if settings.data_path and settings.data_path.strip():
        return os.path.normpath(os.path.expanduser(settings.data_path.strip()))

    for base in (settings.auth_dir, settings.writable_path):
        if base and base.strip():
            return os.path.join(os.path.expanduser(base.strip()), DATA_FILE_NAME)

    if settings.config_file and settings.config_file.strip():
        return os.path.join(os.path.dirname(settings.config_file.strip()), DATA_FILE_NAME)

    return os.path.join(".", DATA_FILE_NAME)


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read once from the environment."""
    return Settings()
