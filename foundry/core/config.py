"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration for foundry. Reads from .env automatically."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # LLM API keys (only required for the providers you actually use)
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    # Ollama base URL; set this when using local Ollama models
    ollama_base_url: str = "http://localhost:11434"

    # Model identifiers per reasoning strength; prefix determines the provider:
    #   "ollama:<model>"      → local Ollama
    #   "claude-*" / "claude" → Anthropic API
    #   anything else         → OpenAI API
    fast_model: str = "claude-3-5-haiku-latest"
    strong_model: str = "claude-sonnet-4-5"
    llm_max_tokens: int = 8192

    # Working tree the orchestrator writes into
    target_repo_path: str = ""

    @field_validator("target_repo_path")
    @classmethod
    def _resolve_repo(cls, value: str) -> str:
        if value:
            return str(Path(value).expanduser().resolve())
        return value

    # Web UI / control API
    web_host: str = "127.0.0.1"
    web_port: int = 8420

    # Safety
    shell_timeout_seconds: int = 120
    max_output_chars: int = 12_000

    # ── Snapshot policy ───────────────────────────────────────────────
    # Files smaller than this are stored inline in the snapshot; larger ones
    # are copied under snapshot_backup_dir.
    snapshot_inline_threshold_bytes: int = 100 * 1024
    snapshot_backup_dir: str = ".guardian-backup"

    # ── Post-execution guardian ───────────────────────────────────────
    guardian_blocking_severity: str = "high"
    guardian_max_issues: int = 10
    guardian_auto_rollback: bool = True
    # Empty = regression phase skipped
    guardian_test_command: str = ""
    guardian_test_timeout_seconds: int = 120
    guardian_max_file_size_bytes: int = 1024 * 1024

    # ── Circuit breaker (per model strength) ──────────────────────────
    circuit_failure_threshold: int = 5
    circuit_failure_window_seconds: float = 60.0
    circuit_cooldown_seconds: float = 300.0
    circuit_success_threshold: int = 2

    # ── Containment ───────────────────────────────────────────────────
    # Optional YAML file with extra path rules (see core/containment.py)
    containment_rules_path: str = ""
    # When True, critical denials are filtered out of the plan instead of
    # aborting the run.
    containment_filter_critical: bool = False

    # ── Escalation / learning ─────────────────────────────────────────
    escalation_timeout_seconds: float = 600.0
    learning_store_path: str = ".foundry/learning.json"

    # Components in a design at or above which the engineer phase batches
    parallel_engineer_min_components: int = 3
    verify_writes: bool = True

    # Logging
    log_level: str = "INFO"
    log_file: str = "logs/foundry.log"

    @field_validator("guardian_blocking_severity")
    @classmethod
    def _check_severity(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in {"critical", "high", "medium", "low", "info"}:
            raise ValueError(f"invalid severity: {value!r}")
        return value


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
