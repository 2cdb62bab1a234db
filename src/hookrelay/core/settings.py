"""Settings Management Module.

Handles loading, saving, and accessing webhook delivery settings.
Persists configuration to data/webhook_settings.json (override with
HOOKRELAY_SETTINGS_FILE).
"""

import json
import logging
import os
from pathlib import Path
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..webhooks.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Constants
SETTINGS_ENV_VAR = "HOOKRELAY_SETTINGS_FILE"
DEFAULT_SETTINGS_FILE = Path("data/webhook_settings.json")

RETRY_STRATEGIES = ("exponential", "linear", "fixed")
SIGNATURE_VALIDATORS = ("hmac", "provider", "jwt", "basic", "apikey")
STORAGE_BACKENDS = ("memory", "sqlite")
CIRCUIT_BACKENDS = ("memory", "redis")


def settings_file() -> Path:
    return Path(os.environ.get(SETTINGS_ENV_VAR, str(DEFAULT_SETTINGS_FILE)))


class HttpSettings(BaseModel):
    """Outbound HTTP client options."""
    timeout: float = 30.0
    connect_timeout: float = 10.0
    verify_ssl: bool = True


class DispatchingSettings(BaseModel):
    """Outbound delivery policy."""
    retry_strategy: str = "exponential"
    retry_delay: float = 30.0
    backoff_multiplier: float = 2.0
    max_delay: float = 3600.0
    max_attempts: int = 3
    queue_by_default: bool = True
    success_status_codes: List[int] = Field(
        default_factory=lambda: [200, 201, 202, 203, 204, 205, 206, 207, 208, 226]
    )
    default_headers: Dict[str, str] = Field(default_factory=lambda: {
        "Content-Type": "application/json",
        "Accept": "application/json",
        "User-Agent": "hookrelay/1.0",
    })
    signature_header: str = "X-Webhook-Signature"
    http: HttpSettings = Field(default_factory=HttpSettings)

    @field_validator("retry_strategy")
    @classmethod
    def _known_strategy(cls, value: str) -> str:
        if value not in RETRY_STRATEGIES:
            raise ValueError(f"retry_strategy must be one of {RETRY_STRATEGIES}")
        return value

    @field_validator("max_attempts")
    @classmethod
    def _positive_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_attempts must be at least 1")
        return value


class CircuitBreakerSettings(BaseModel):
    enabled: bool = True
    threshold: int = 5
    open_duration: int = 300
    backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "webhook-circuit:"

    @field_validator("threshold")
    @classmethod
    def _positive_threshold(cls, value: int) -> int:
        if value < 1:
            raise ValueError("threshold must be positive")
        return value

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        if value not in CIRCUIT_BACKENDS:
            raise ValueError(f"circuit backend must be one of {CIRCUIT_BACKENDS}")
        return value


class ReceivingSettings(BaseModel):
    """Inbound webhook policy."""
    verify_signatures: bool = True
    require_valid_signature: bool = True
    require_signature_secret: bool = True
    signature_validator: str = "hmac"
    signature_header: str = "X-Webhook-Signature"
    event_header: str = "X-Webhook-Event"
    process_async: bool = True

    @field_validator("signature_validator")
    @classmethod
    def _known_validator(cls, value: str) -> str:
        if value not in SIGNATURE_VALIDATORS:
            raise ValueError(f"signature_validator must be one of {SIGNATURE_VALIDATORS}")
        return value


class StorageSettings(BaseModel):
    backend: str = "memory"
    sqlite_path: str = "data/webhooks.db"
    retention_days: int = 30  # 0 keeps everything

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        if value not in STORAGE_BACKENDS:
            raise ValueError(f"storage backend must be one of {STORAGE_BACKENDS}")
        return value


class SecuritySettings(BaseModel):
    default_signature_key: str = ""
    default_algorithm: str = "sha256"
    timestamp_tolerance: int = 300


class SchedulerSettings(BaseModel):
    retry_interval_seconds: float = 60.0
    auto_retry_window_hours: int = 24
    in_progress_timeout_seconds: float = 300.0


class ProviderSettings(BaseModel):
    """Per-source inbound verification."""
    validator: str = "provider"
    provider: Optional[str] = None
    secret: Optional[str] = None
    signature_header: Optional[str] = None
    event_header: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class WebhookSettings(BaseModel):
    """Global webhook settings."""
    dispatching: DispatchingSettings = Field(default_factory=DispatchingSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    receiving: ReceivingSettings = Field(default_factory=ReceivingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    providers: Dict[str, ProviderSettings] = Field(default_factory=dict)

    model_config = ConfigDict(validate_assignment=True)


def default_providers() -> Dict[str, ProviderSettings]:
    return {
        "stripe": ProviderSettings(provider="stripe", signature_header="Stripe-Signature"),
        "github": ProviderSettings(
            provider="github",
            signature_header="X-Hub-Signature-256",
            event_header="X-GitHub-Event",
        ),
        "shopify": ProviderSettings(
            provider="shopify",
            signature_header="X-Shopify-Hmac-Sha256",
            event_header="X-Shopify-Topic",
        ),
        "slack": ProviderSettings(provider="slack", signature_header="X-Slack-Signature"),
        "paypal": ProviderSettings(provider="paypal", signature_header="Paypal-Transmission-Sig"),
    }


def load_settings(data: Dict[str, Any]) -> WebhookSettings:
    """Build settings from a dict, raising ConfigurationError on bad values."""
    try:
        return WebhookSettings(**data)
    except ValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(f"Invalid webhook settings: {first.get('msg')}", key=key or None)


class SettingsManager:
    """Manages loading and saving of settings."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else settings_file()
        self._settings: Optional[WebhookSettings] = None
        self._load()

    def _load(self):
        """Load settings from JSON or create defaults."""
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
            except ValueError as e:
                raise ConfigurationError(f"Settings file {self.path} is not valid JSON: {e}")
            self._settings = load_settings(data)
            logger.info(f"Loaded webhook settings from {self.path}")
        else:
            self._settings = self._create_defaults()

    def _create_defaults(self) -> WebhookSettings:
        return WebhookSettings(providers=default_providers())

    def get(self) -> WebhookSettings:
        """Get current settings."""
        if not self._settings:
            self._load()
        return self._settings

    def save(self, new_settings: WebhookSettings = None):
        """Save settings to file."""
        if new_settings:
            self._settings = new_settings

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            self._settings.model_dump_json(indent=4),
            encoding="utf-8"
        )


# Global instance
_settings_manager: Optional[SettingsManager] = None


def get_settings_manager() -> SettingsManager:
    global _settings_manager
    if _settings_manager is None:
        _settings_manager = SettingsManager()
    return _settings_manager


def get_settings() -> WebhookSettings:
    return get_settings_manager().get()
