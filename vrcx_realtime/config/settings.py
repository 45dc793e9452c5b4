"""Application settings and configuration"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type

import yaml
from pydantic import Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


DEFAULT_CONFIG_PATH = "config/config.yaml"


class YamlConfigSource(PydanticBaseSettingsSource):
    """Settings source backed by the YAML config file"""

    def __init__(self, settings_cls: Type[BaseSettings], config_path: str):
        super().__init__(settings_cls)
        self.config_path = config_path
        self.values = {str(key).lower(): value for key, value in load_yaml_config(config_path).items()}

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return self.values.get(field_name), field_name, False

    def __call__(self) -> Dict[str, Any]:
        return {
            name: self.values[name]
            for name in self.settings_cls.model_fields
            if name in self.values
        }


class Settings(BaseSettings):
    """
    Application settings

    Sources in order of precedence: constructor arguments, environment
    variables, the ``.env`` file, then the YAML file named by
    ``VRCX_REALTIME_CONFIG`` (default ``config/config.yaml``).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    vrcx_sqlite_filepath: Optional[str] = Field(None)

    api_host: str = Field("0.0.0.0")
    api_port: int = Field(8000)
    api_reload: bool = Field(False)

    log_level: str = Field("INFO")

    cdc_enabled: bool = Field(True)
    poll_interval: float = Field(1.0, gt=0)
    poll_batch_size: int = Field(1000, gt=0)
    query_timeout: float = Field(1.0, gt=0)
    active_entity_key: str = Field("config:lastuserloggedin")

    snapshot_interval: float = Field(2.0, gt=0)
    snapshot_default_limit: int = Field(1000, gt=0)
    snapshot_max_limit: int = Field(1000, gt=0)
    snapshot_fingerprint: str = Field("hash")  # hash or timestamp

    subscriber_buffer_size: int = Field(256, gt=0)

    @field_validator("snapshot_fingerprint")
    @classmethod
    def _check_fingerprint(cls, value: str) -> str:
        value = value.lower()
        if value not in ("hash", "timestamp"):
            raise ValueError("snapshot_fingerprint must be 'hash' or 'timestamp'")
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        config_path = os.environ.get("VRCX_REALTIME_CONFIG", DEFAULT_CONFIG_PATH)
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSource(settings_cls, config_path),
            file_secret_settings,
        )

    @property
    def database_path(self) -> str:
        """Get the VRCX SQLite file path, falling back to the per-user default"""
        if self.vrcx_sqlite_filepath:
            return self.vrcx_sqlite_filepath
        username = os.environ.get("USERNAME", "UNKNOWN")
        return f"C:/Users/{username}/AppData/Roaming/VRCX/VRCX.sqlite3"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


def load_yaml_config(config_path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load YAML configuration file"""
    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file, "r") as f:
            return yaml.safe_load(f) or {}
    return {}
