from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf
from pydantic import BaseModel, Field

from .models import ConfigMetadata, SubmissionStatus

DEFAULTS_PATH = Path(__file__).resolve().parent / "config" / "defaults.yaml"

# Environment variable -> dotted settings key.
ENV_OVERRIDES: Dict[str, str] = {
    "MAX_FILE_SIZE_MB": "limits.max_file_size_mb",
    "MAX_PAGES": "limits.max_pages",
    "MAX_SYNOPSIS_CHARS": "limits.max_synopsis_chars",
    "OPENAI_API_KEY": "openai.api_key",
    "OPENAI_ORG_ID": "openai.organization",
    "OPENAI_BASE_URL": "openai.base_url",
    "OPENAI_MODEL": "openai.model",
    "OPENAI_TIMEOUT_SECONDS": "openai.timeout_seconds",
    "ANALYSIS_EXCERPT_CHARS": "openai.excerpt_chars",
    "CACHE_DURATION_HOURS": "openai.metadata_cache_ttl_hours",
    "METADATA_CACHE_MAX_ENTRIES": "openai.metadata_cache_max_entries",
    "DATABASE_PATH": "database.path",
    "ANALYSIS_WORKERS": "lifecycle.analysis_workers",
    "EXTRACTION_WORKERS": "lifecycle.extraction_workers",
    "EXTRACTION_TIMEOUT_SECONDS": "lifecycle.extraction_timeout_seconds",
    "STALE_AFTER_SECONDS": "lifecycle.stale_after_seconds",
    "RECONCILE_INTERVAL_SECONDS": "lifecycle.reconcile_interval_seconds",
    "LOG_LEVEL": "server.log_level",
    "CORS_ORIGINS": "server.cors_origins",
}

NOTES = {
    "max_file_size_mb": "Uploads larger than this are rejected before parsing.",
    "max_pages": "Manuscripts are sample chapters; longer PDFs are rejected.",
    "excerpt_chars": "Only the first N characters of the manuscript are sent for analysis.",
    "stale_after_seconds": "Submissions idle this long in uploaded/processing are picked up again by the reconcile sweep.",
}


class LimitSettings(BaseModel):
    max_file_size_mb: float = Field(default=10, gt=0)
    max_pages: int = Field(default=10, gt=0)
    max_synopsis_chars: int = Field(default=1000, gt=0)

    @property
    def max_file_size_bytes(self) -> int:
        return int(self.max_file_size_mb * 1024 * 1024)


class OpenAISettings(BaseModel):
    api_key: Optional[str] = None
    organization: Optional[str] = None
    base_url: Optional[str] = None
    model: str = "gpt-4-turbo-preview"
    temperature: float = 0.7
    timeout_seconds: float = Field(default=60, gt=0)
    excerpt_chars: int = Field(default=8000, gt=0)
    metadata_cache_ttl_hours: float = Field(default=24, ge=0)
    metadata_cache_max_entries: int = Field(default=512, gt=0)


class DatabaseSettings(BaseModel):
    path: Path = Path("data/greenlight.db")


class LifecycleSettings(BaseModel):
    analysis_workers: int = Field(default=2, gt=0)
    extraction_workers: int = Field(default=2, gt=0)
    extraction_timeout_seconds: float = Field(default=30, gt=0)
    stale_after_seconds: float = Field(default=900, gt=0)
    reconcile_interval_seconds: float = Field(default=300, ge=0)


class ServerSettings(BaseModel):
    log_level: str = "INFO"
    cors_origins: str = "*"

    @property
    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()] or ["*"]


class Settings(BaseModel):
    limits: LimitSettings = Field(default_factory=LimitSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not DEFAULTS_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {DEFAULTS_PATH}")
    return OmegaConf.load(DEFAULTS_PATH)


def _env_layer(environ: Mapping[str, str]) -> DictConfig:
    # Values stay strings; the Settings model coerces them.
    layer = OmegaConf.create({})
    for env_name, key in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value in (None, "", "null", "None"):
            continue
        OmegaConf.update(layer, key, value, force_add=True)
    return layer


def make_runtime_config(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> DictConfig:
    """Merge packaged defaults, an optional YAML file, the environment and explicit overrides."""
    if environ is None:
        load_dotenv(override=False)
        environ = os.environ

    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    layers = [base]

    extra_path = environ.get("GREENLIGHT_CONFIG")
    if extra_path:
        layers.append(OmegaConf.load(extra_path))

    layers.append(_env_layer(environ))
    if overrides:
        layers.append(OmegaConf.create(overrides))

    return DictConfig(OmegaConf.merge(*layers))


def load_settings(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    config = make_runtime_config(overrides, environ)
    container = OmegaConf.to_container(config, resolve=True)
    return Settings.model_validate(container)


def build_config_metadata(settings: Settings) -> ConfigMetadata:
    return ConfigMetadata(
        limits=settings.limits.model_dump(),
        model=settings.openai.model,
        lifecycle=settings.lifecycle.model_dump(),
        statuses=[status.value for status in SubmissionStatus],
        notes=NOTES,
    )
