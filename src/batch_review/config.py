"""Settings loading from .batch-review/config.yaml."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field

DEFAULT_INCOMING_QUERY = "is:open reviewer:self -owner:self"


class BackendSettings(BaseModel):
    url: str = ""
    username: str = ""
    password: str = ""
    timeout_seconds: float = 30.0
    incoming_query: str = DEFAULT_INCOMING_QUERY
    max_changes: int = 100


class AutomationSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 7652
    max_body_bytes: int = 64 * 1024
    max_id_length: int = 256
    max_ids: int = 500


class SubmissionSettings(BaseModel):
    approve_label: str = "Code-Review"
    approve_value: int = 2
    confirmation_ttl_seconds: float = 10.0
    error_summary_lines: int = 5


class Settings(BaseModel):
    backend: BackendSettings = Field(default_factory=BackendSettings)
    automation: AutomationSettings = Field(default_factory=AutomationSettings)
    submission: SubmissionSettings = Field(default_factory=SubmissionSettings)
    chain_cache_size: int | None = None


def config_path(root: str | Path) -> Path:
    return Path(root) / ".batch-review" / "config.yaml"


def load_config(root: str | Path) -> Settings:
    """Load settings from <root>/.batch-review/config.yaml; defaults when absent."""
    config_file = config_path(root)

    if not config_file.exists():
        return Settings()

    raw = yaml.safe_load(config_file.read_text(encoding="utf-8"))
    if not raw:
        return Settings()
    if not isinstance(raw, dict):
        raise ValueError(f"{config_file} must contain a mapping, got {type(raw).__name__}")

    return Settings(
        backend=BackendSettings(**(raw.get("backend") or {})),
        automation=AutomationSettings(**(raw.get("automation") or {})),
        submission=SubmissionSettings(**(raw.get("submission") or {})),
        chain_cache_size=raw.get("chain_cache_size"),
    )
