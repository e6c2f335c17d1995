"""Configuration models and loaders for chatrelay.

Values come from an optional YAML file with environment variable overrides on top.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "chatrelay/config.yaml"
DEFAULT_UPSTREAM_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_CANDIDATE_MODELS = ["gemini-1.5-flash", "gemini-1.5-pro", "gemini-1.0-pro"]


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class GenerationConfig(BaseModel):
    """Sampling parameters forwarded with every upstream completion."""

    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.95
    max_output_tokens: int = 1024

    def to_upstream(self) -> dict[str, Any]:
        """Render the camelCase `generationConfig` object expected upstream."""
        return {
            "temperature": self.temperature,
            "topK": self.top_k,
            "topP": self.top_p,
            "maxOutputTokens": self.max_output_tokens,
        }


class RelayConfig(BaseModel):
    """Top-level relay configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:8080"

    upstream_base_url: str = DEFAULT_UPSTREAM_BASE_URL
    upstream_api_key: str | None = None
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float = 120.0

    candidate_models: list[str] = Field(default_factory=lambda: list(DEFAULT_CANDIDATE_MODELS))
    verify_models: bool = True
    generation: GenerationConfig | None = None

    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])
    expose_selected_model: bool = True
    logging: LoggingConfig | None = None

    @field_validator("candidate_models", mode="before")
    @classmethod
    def _normalize_candidate_models(cls, value: Any) -> Any:
        """Drop blank and repeated model names, keeping first-seen order."""
        if value is None:
            return list(DEFAULT_CANDIDATE_MODELS)
        if isinstance(value, str):
            value = value.split(",")
        if not isinstance(value, list):
            return value
        seen: set[str] = set()
        out: list[str] = []
        for item in value:
            name = str(item).strip()
            if not name or name in seen:
                continue
            seen.add(name)
            out.append(name)
        return out

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value: Any) -> Any:
        """Treat explicit YAML `null` as an empty list."""
        if value is None:
            return []
        return value

    @field_validator("upstream_connect_timeout_seconds", "upstream_read_timeout_seconds")
    @classmethod
    def _validate_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("upstream timeouts must be > 0")
        return value

    @model_validator(mode="after")
    def _validate_and_fill_defaults(self) -> "RelayConfig":
        """Validate bind address and candidate list, fill nested defaults."""
        parsed = urlparse(self.service_base_url)
        if not parsed.hostname or parsed.port is None:
            raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8080")
        if not self.candidate_models:
            raise ValueError("candidate_models must name at least one model")
        if self.upstream_api_key is not None and not self.upstream_api_key.strip():
            self.upstream_api_key = None
        if self.generation is None:
            self.generation = GenerationConfig()
        if self.logging is None:
            self.logging = LoggingConfig()
        return self


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    env_map = {
        "service_base_url": "CHATRELAY_SERVICE_BASE_URL",
        "upstream_base_url": "CHATRELAY_UPSTREAM_BASE_URL",
        "upstream_api_key": "CHATRELAY_UPSTREAM_API_KEY",
        "candidate_models": "CHATRELAY_CANDIDATE_MODELS",
        "upstream_read_timeout_seconds": "CHATRELAY_UPSTREAM_READ_TIMEOUT_SECONDS",
        "logging.level": "CHATRELAY_LOG_LEVEL",
        "logging.json_logs": "CHATRELAY_LOG_JSON",
    }

    out = dict(data)
    out["logging"] = dict(out.get("logging") or {})

    for key, env_name in env_map.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        if key == "upstream_read_timeout_seconds":
            out[key] = float(value)
        elif key == "candidate_models":
            out[key] = [name.strip() for name in value.split(",")]
        elif key == "logging.json_logs":
            out["logging"]["json"] = value.lower() in {"1", "true", "yes", "on"}
        elif key == "logging.level":
            out["logging"]["level"] = value
        else:
            out[key] = value

    # The conventional Google variable is honoured when nothing more specific is set.
    if not out.get("upstream_api_key"):
        google_key = os.getenv("GOOGLE_API_KEY")
        if google_key:
            out["upstream_api_key"] = google_key

    return out


def load_config(path: str | None = None) -> RelayConfig:
    """Load, merge, and validate relay configuration."""
    final_path = path or os.getenv("CHATRELAY_CONFIG") or DEFAULT_CONFIG_PATH
    raw = _load_yaml(final_path)
    raw = _override_from_env(raw)
    return RelayConfig.model_validate(raw)
