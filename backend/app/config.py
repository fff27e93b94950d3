"""Chatline application configuration.

Loads settings from two YAML files:
  * chatline.settings.yaml  — non-secret configuration
  * chatline.secrets.yaml   — secrets (never committed)

Relative filesystem paths (database file, local blob directory) are resolved
from the directory holding the settings file, or from the project root when
the settings file lives in a ``config/`` directory.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatline.settings.yaml")
SECRETS_FILE  = Path("chatline.secrets.yaml")

CONFIG_DIR_ENV = "CHATLINE_CONFIG_DIR"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _base_dir_for(settings_path: Path) -> Path:
    settings_dir = settings_path.resolve().parent
    if settings_dir.name == "config":
        return settings_dir.parent
    return settings_dir


def _resolve_path(value: str, base_dir: Path) -> str:
    if value == ":memory:":
        return value
    path = Path(value)
    if path.is_absolute():
        return str(path)
    return str(base_dir / path)


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class OpenAISecrets(BaseModel):
    api_key:  Optional[str] = None
    base_url: Optional[str] = None


class AnthropicSecrets(BaseModel):
    api_key: Optional[str] = None


class S3Secrets(BaseModel):
    access_key_id:     Optional[str] = None
    secret_access_key: Optional[str] = None


class SigningSecrets(BaseModel):
    secret_key: str = "change-me-in-production"


class Secrets(BaseModel):
    openai:    OpenAISecrets    = Field(default_factory=OpenAISecrets)
    anthropic: AnthropicSecrets = Field(default_factory=AnthropicSecrets)
    s3:        S3Secrets        = Field(default_factory=S3Secrets)
    signing:   SigningSecrets   = Field(default_factory=SigningSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    debug:           bool = False


class LoggingSettings(BaseModel):
    level: str = "info"


class DatabaseSettings(BaseModel):
    path: str = "chatline.duckdb"


class BlobStoreSettings(BaseModel):
    """Where attachment bytes live."""
    backend:            Literal["local", "s3"] = "local"
    local_dir:          str           = "uploads"
    bucket:             Optional[str] = None
    region:             str           = "us-east-1"
    endpoint_url:       Optional[str] = None
    key_prefix:         str           = "uploads"
    url_expiry_seconds: int           = Field(default=3600, gt=0)


class AttachmentSettings(BaseModel):
    max_size_bytes:         int = Field(default=10 * 1024 * 1024, gt=0)
    reclaim_after_hours:    int = Field(default=24, ge=0)
    purge_after_days:       int = Field(default=7, ge=0)
    sweep_interval_seconds: int = Field(default=3600, ge=0)


class ChatModelConfig(BaseModel):
    """A model the chat endpoint accepts."""
    id:             str
    label:          str
    api_identifier: str
    description:    str = ""
    provider:       Literal["openai", "anthropic"] = "openai"


def _default_models() -> List[ChatModelConfig]:
    return [
        ChatModelConfig(
            id="llama3.3",
            label="Llama 3.3",
            api_identifier="llama3.3",
            description="For complex, multi-step tasks",
        ),
        ChatModelConfig(
            id="llama3.2-vision",
            label="Llama 3.2 Vision",
            api_identifier="llama3.2-vision",
            description="For image understanding and quick tasks",
        ),
        ChatModelConfig(
            id="deepseek-r1",
            label="DeepSeek-R1",
            api_identifier="deepseek-r1",
            description="For reasoning-heavy tasks",
        ),
    ]


class ChatSettings(BaseModel):
    default_model_id:      str   = "llama3.3"
    title_model_id:        str   = "llama3.2-vision"
    title_timeout_seconds: float = Field(default=5.0, gt=0)
    system_prompt:         Optional[str] = None


class AuthSettings(BaseModel):
    user_header: str = "X-User-Id"


class ChatlineConfig(BaseModel):
    server:      ServerSettings        = Field(default_factory=ServerSettings)
    logging:     LoggingSettings       = Field(default_factory=LoggingSettings)
    database:    DatabaseSettings      = Field(default_factory=DatabaseSettings)
    blob_store:  BlobStoreSettings     = Field(default_factory=BlobStoreSettings)
    attachments: AttachmentSettings    = Field(default_factory=AttachmentSettings)
    chat:        ChatSettings          = Field(default_factory=ChatSettings)
    models:      List[ChatModelConfig] = Field(default_factory=_default_models)
    auth:        AuthSettings          = Field(default_factory=AuthSettings)
    secrets:     Secrets               = Field(default_factory=Secrets)

    @model_validator(mode="after")
    def _check_model_ids(self) -> "ChatlineConfig":
        ids = [m.id for m in self.models]
        if len(ids) != len(set(ids)):
            raise ValueError("models: duplicate model id")
        for field_name in ("default_model_id", "title_model_id"):
            model_id = getattr(self.chat, field_name)
            if model_id not in ids:
                raise ValueError(f"chat.{field_name} '{model_id}' is not a configured model")
        return self


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> ChatlineConfig:
    """Load and merge settings + secrets into a single *ChatlineConfig*."""
    if settings_path is None:
        config_dir = os.environ.get(CONFIG_DIR_ENV)
        settings_path = Path(config_dir) / SETTINGS_FILE if config_dir else SETTINGS_FILE
    settings_path = Path(settings_path)
    if secrets_path is None:
        secrets_path = settings_path.parent / SECRETS_FILE.name

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in ChatlineConfig
    settings_data["secrets"] = secrets_data

    config = ChatlineConfig(**settings_data)

    base_dir = _base_dir_for(settings_path)
    config.database.path = _resolve_path(config.database.path, base_dir)
    config.blob_store.local_dir = _resolve_path(config.blob_store.local_dir, base_dir)

    logger.info(
        "Config loaded (server=%s:%s, blob_store=%s, models=%d)",
        config.server.host,
        config.server.port,
        config.blob_store.backend,
        len(config.models),
    )
    return config


_config: Optional[ChatlineConfig] = None


def get_config() -> ChatlineConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[ChatlineConfig]) -> None:
    """Set (or clear) the process-wide configuration."""
    global _config
    _config = config
