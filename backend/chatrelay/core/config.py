"""
Configuration

Process settings come from environment variables. The proxy configuration is
split into a binding part (host/port, applied on restart) and a live part
(strategy, weights, mappings, timeouts, ...) that the gateway reads on every
request. Updates are validated as a whole and rejected without partial apply.
"""
import json
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from sqlmodel import Session

from chatrelay.core.errors import ConfigError
from chatrelay.core.load_balancer import Strategy
from chatrelay.models.setting import AppSetting

logger = logging.getLogger(__name__)

CONFIG_KEY = "config"


@dataclass(frozen=True)
class Settings:
    db_path: str
    log_file: str
    log_capacity: int
    autostart_proxy: bool

    @classmethod
    def from_env(cls) -> "Settings":
        package_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        return cls(
            db_path=os.environ.get("CHATRELAY_DB_PATH", "chatrelay.db"),
            log_file=os.environ.get("CHATRELAY_LOG_FILE", os.path.join(package_dir, "chatrelay.log")),
            log_capacity=int(os.environ.get("CHATRELAY_LOG_CAPACITY", "10000")),
            autostart_proxy=os.environ.get("CHATRELAY_AUTOSTART_PROXY", "0") == "1",
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


class ModelMapping(BaseModel):
    request_model: str
    provider_id: str
    actual_model: str
    preferred_account_id: Optional[str] = None

    @field_validator("request_model", "provider_id", "actual_model")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()


class BindingConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8080

    @field_validator("port")
    @classmethod
    def _valid_port(cls, value: int) -> int:
        if value < 1 or value > 65535:
            raise ValueError("Proxy port must be between 1-65535")
        return value


class LiveConfig(BaseModel):
    load_balance_strategy: Strategy = Strategy.ROUND_ROBIN
    account_weights: Dict[str, int] = Field(default_factory=dict)
    model_mappings: Dict[str, ModelMapping] = Field(default_factory=dict)
    request_timeout_ms: int = 60000
    retry_count: int = 3
    enable_cors: bool = True
    cors_origin: str = "*"
    enable_api_key: bool = False
    api_keys: List[str] = Field(default_factory=list)
    log_retention_days: int = 7

    @field_validator("request_timeout_ms")
    @classmethod
    def _valid_timeout(cls, value: int) -> int:
        if value < 1000 or value > 300000:
            raise ValueError("Request timeout must be between 1000-300000 milliseconds")
        return value

    @field_validator("retry_count")
    @classmethod
    def _valid_retry_count(cls, value: int) -> int:
        if value < 0 or value > 10:
            raise ValueError("Retry count must be between 0-10")
        return value

    @field_validator("log_retention_days")
    @classmethod
    def _valid_retention(cls, value: int) -> int:
        if value < 1 or value > 365:
            raise ValueError("Log retention days must be between 1-365")
        return value

    @field_validator("account_weights")
    @classmethod
    def _valid_weights(cls, value: Dict[str, int]) -> Dict[str, int]:
        for account_id, weight in value.items():
            if weight < 1:
                raise ValueError(f"Weight for {account_id} must be at least 1")
        return value

    @model_validator(mode="after")
    def _mapping_keys_match(self) -> "LiveConfig":
        for key, mapping in self.model_mappings.items():
            if key != mapping.request_model:
                raise ValueError(f"Mapping key {key!r} does not match request_model {mapping.request_model!r}")
        if self.enable_api_key and not self.api_keys:
            raise ValueError("API key authentication needs at least one key")
        return self

    @property
    def timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000


class AppConfig(BaseModel):
    binding: BindingConfig = Field(default_factory=BindingConfig)
    live: LiveConfig = Field(default_factory=LiveConfig)

    def flat(self) -> dict:
        return {**self.binding.model_dump(mode="json"), **self.live.model_dump(mode="json")}


BINDING_FIELDS = set(BindingConfig.model_fields)
LIVE_FIELDS = set(LiveConfig.model_fields)


def _describe(exc: ValidationError) -> List[str]:
    messages = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err["loc"])
        message = err["msg"].removeprefix("Value error, ")
        messages.append(f"{location}: {message}" if location else message)
    return messages


class ConfigManager:
    """Owns the effective configuration and its persistence."""

    def __init__(self, engine=None, initial: Optional[AppConfig] = None):
        self._engine = engine
        self._config = initial or self._load() or AppConfig()
        self._listeners: List[Callable[[AppConfig, bool], None]] = []

    @property
    def live(self) -> LiveConfig:
        return self._config.live

    @property
    def binding(self) -> BindingConfig:
        return self._config.binding

    def get(self) -> AppConfig:
        return self._config.model_copy(deep=True)

    def on_change(self, listener: Callable[[AppConfig, bool], None]) -> None:
        self._listeners.append(listener)

    def update(self, updates: dict) -> AppConfig:
        """
        Partially update the configuration.

        Keys are the flat field names of BindingConfig and LiveConfig. The
        merged result is validated before anything is applied.

        Raises:
            ConfigError: unknown keys or invalid values
        """
        unknown = sorted(set(updates) - BINDING_FIELDS - LIVE_FIELDS)
        if unknown:
            raise ConfigError([f"Unknown configuration key: {key}" for key in unknown])

        binding_data = self._config.binding.model_dump()
        live_data = self._config.live.model_dump()
        for key, value in updates.items():
            if key in BINDING_FIELDS:
                binding_data[key] = value
            else:
                live_data[key] = value

        errors: List[str] = []
        try:
            binding = BindingConfig.model_validate(binding_data)
        except ValidationError as exc:
            errors.extend(_describe(exc))
        try:
            live = LiveConfig.model_validate(live_data)
        except ValidationError as exc:
            errors.extend(_describe(exc))
        if errors:
            raise ConfigError(errors)

        new_config = AppConfig(binding=binding, live=live)

        binding_changed = new_config.binding != self._config.binding
        self._config = new_config
        self._save()
        logger.info("Configuration updated: %s", ", ".join(sorted(updates)) or "no changes")

        for listener in list(self._listeners):
            listener(self.get(), binding_changed)
        return self.get()

    def set_mapping(self, mapping: ModelMapping) -> AppConfig:
        mappings = {k: v.model_dump() for k, v in self.live.model_mappings.items()}
        mappings[mapping.request_model] = mapping.model_dump()
        return self.update({"model_mappings": mappings})

    def remove_mapping(self, request_model: str) -> bool:
        if request_model not in self.live.model_mappings:
            return False
        mappings = {
            k: v.model_dump() for k, v in self.live.model_mappings.items() if k != request_model
        }
        self.update({"model_mappings": mappings})
        return True

    def _load(self) -> Optional[AppConfig]:
        if self._engine is None:
            return None
        with Session(self._engine) as session:
            row = session.get(AppSetting, CONFIG_KEY)
            if row is None:
                return None
        try:
            return AppConfig.model_validate(json.loads(row.value))
        except (ValueError, ValidationError) as exc:
            logger.error("Stored configuration is invalid, using defaults: %s", exc)
            return None

    def _save(self) -> None:
        if self._engine is None:
            return
        with Session(self._engine) as session:
            session.merge(AppSetting(key=CONFIG_KEY, value=self._config.model_dump_json()))
            session.commit()
