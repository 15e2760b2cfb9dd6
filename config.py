"""
Central Configuration Module
==============================

Loads all pipeline configuration from .env via python-dotenv.
Provides a PipelineConfig dataclass and get_config() singleton.

Usage:
    from config import get_config
    cfg = get_config()
    print(cfg.stream_timeout_seconds)
    print(cfg.phase_timeout("codegen"))
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv(dotenv_path=Path(__file__).parent / ".env")


ProviderId = Literal["claude", "codex", "omp", "opencode"]
VALID_PROVIDER_IDS: set[str] = {"claude", "codex", "omp", "opencode"}

ThrottleMode = Literal["queue", "reject"]
VALID_THROTTLE_MODES: set[str] = {"queue", "reject"}


def normalize_provider_id(value: str | None) -> str:
    """
    Normalize provider IDs with backwards-compatible fallback.

    Any missing/invalid value defaults to "claude".
    """
    if not value:
        return "claude"
    normalized = value.strip().lower()
    if normalized in VALID_PROVIDER_IDS:
        return normalized
    return "claude"


def normalize_throttle_mode(value: str | None) -> str:
    if not value:
        return "queue"
    normalized = value.strip().lower()
    if normalized in VALID_THROTTLE_MODES:
        return normalized
    return "queue"


def _parse_bool_env(value: str | None, default: bool) -> bool:
    """Parse boolean-like env values with sensible defaults."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_csv(value: str) -> set[str]:
    return {item.strip().lower() for item in value.split(",") if item.strip()}


@dataclass
class PipelineConfig:
    """All pipeline configuration, loaded from .env with sensible defaults."""

    # Provider CLI Selection
    agent_cli_id: ProviderId = "claude"
    agent_cli_bin_claude: str = "claude"
    agent_cli_bin_codex: str = "codex"
    agent_cli_bin_omp: str = "omp"
    agent_cli_bin_opencode: str = "opencode"
    agent_cli_model_claude: str = "claude-sonnet-4-6"
    agent_cli_model_codex: str = "gpt-5-codex"
    agent_cli_model_omp: str = "claude-sonnet-4-5"
    agent_cli_model_opencode: str = "claude-sonnet-4-5"
    agent_cli_require_json_output: bool = True
    agent_stream_show_thinking: bool = False

    # Generation
    temperature: float = 0.2
    max_tokens: int = 4096
    streaming_enabled: bool = True
    stream_timeout_seconds: float = 120.0
    stream_expected_chars: int = 4000
    backend_retries: int = 2
    backend_retry_delay_seconds: float = 1.0
    framework: str = "next"
    prompts_dir: str = "prompts"

    # Task Deadlines (seconds, <= 0 disables)
    timeout_requirements_seconds: float = 300.0
    timeout_design_seconds: float = 300.0
    timeout_codegen_seconds: float = 600.0
    timeout_testing_seconds: float = 300.0

    # Concurrency
    max_concurrent_tasks: int = 2
    throttle_mode: ThrottleMode = "queue"

    # Workflow
    auto_progress: bool = True
    require_validation: bool = True
    concurrent_phases: str = ""

    # Cache / Persistence
    cache_max_entries: int = 0
    auto_save: bool = True
    auto_save_interval_seconds: float = 60.0
    data_dir: str = "agent-memory"

    # Logging
    run_log_enabled: bool = True
    run_log_dir: str = "logs/runs"
    log_level: str = "INFO"

    def phase_timeout(self, phase: str) -> float:
        """Return the task deadline for a phase name, 0 when unknown."""
        return {
            "requirements": self.timeout_requirements_seconds,
            "design": self.timeout_design_seconds,
            "codegen": self.timeout_codegen_seconds,
            "testing": self.timeout_testing_seconds,
        }.get(phase, 0.0)

    @property
    def concurrent_phase_set(self) -> set[str]:
        """Phases allowed to run more than one operation at a time."""
        return _parse_csv(self.concurrent_phases)

    @property
    def max_concurrent(self) -> int | None:
        return self.max_concurrent_tasks if self.max_concurrent_tasks > 0 else None


@lru_cache(maxsize=1)
def get_config() -> PipelineConfig:
    """
    Return the singleton PipelineConfig loaded from environment variables.

    Call reload_config() to reload after writing a new .env.
    """
    return PipelineConfig(
        agent_cli_id=normalize_provider_id(os.environ.get("AGENT_CLI_ID", "claude")),  # type: ignore[arg-type]
        agent_cli_bin_claude=os.environ.get("AGENT_CLI_BIN_CLAUDE", "claude"),
        agent_cli_bin_codex=os.environ.get("AGENT_CLI_BIN_CODEX", "codex"),
        agent_cli_bin_omp=os.environ.get("AGENT_CLI_BIN_OMP", "omp"),
        agent_cli_bin_opencode=os.environ.get("AGENT_CLI_BIN_OPENCODE", "opencode"),
        agent_cli_model_claude=os.environ.get(
            "AGENT_CLI_MODEL_CLAUDE", "claude-sonnet-4-6"
        ),
        agent_cli_model_codex=os.environ.get(
            "AGENT_CLI_MODEL_CODEX", "gpt-5-codex"
        ),
        agent_cli_model_omp=os.environ.get(
            "AGENT_CLI_MODEL_OMP", "claude-sonnet-4-5"
        ),
        agent_cli_model_opencode=os.environ.get(
            "AGENT_CLI_MODEL_OPENCODE", "claude-sonnet-4-5"
        ),
        agent_cli_require_json_output=_parse_bool_env(
            os.environ.get("AGENT_CLI_REQUIRE_JSON_OUTPUT"), True
        ),
        agent_stream_show_thinking=_parse_bool_env(
            os.environ.get("AGENT_STREAM_SHOW_THINKING"), False
        ),
        temperature=float(os.environ.get("GENERATION_TEMPERATURE", "0.2")),
        max_tokens=int(os.environ.get("GENERATION_MAX_TOKENS", "4096")),
        streaming_enabled=_parse_bool_env(
            os.environ.get("STREAMING_ENABLED"), True
        ),
        stream_timeout_seconds=float(
            os.environ.get("STREAM_TIMEOUT_SECONDS", "120")
        ),
        stream_expected_chars=int(os.environ.get("STREAM_EXPECTED_CHARS", "4000")),
        backend_retries=max(0, int(os.environ.get("BACKEND_RETRIES", "2"))),
        backend_retry_delay_seconds=float(
            os.environ.get("BACKEND_RETRY_DELAY_SECONDS", "1")
        ),
        framework=os.environ.get("FRAMEWORK", "next"),
        prompts_dir=os.environ.get("PROMPTS_DIR", "prompts"),
        timeout_requirements_seconds=float(
            os.environ.get("TIMEOUT_REQUIREMENTS_SECONDS", "300")
        ),
        timeout_design_seconds=float(
            os.environ.get("TIMEOUT_DESIGN_SECONDS", "300")
        ),
        timeout_codegen_seconds=float(
            os.environ.get("TIMEOUT_CODEGEN_SECONDS", "600")
        ),
        timeout_testing_seconds=float(
            os.environ.get("TIMEOUT_TESTING_SECONDS", "300")
        ),
        max_concurrent_tasks=int(os.environ.get("MAX_CONCURRENT_TASKS", "2")),
        throttle_mode=normalize_throttle_mode(os.environ.get("THROTTLE_MODE")),  # type: ignore[arg-type]
        auto_progress=_parse_bool_env(os.environ.get("AUTO_PROGRESS"), True),
        require_validation=_parse_bool_env(
            os.environ.get("REQUIRE_VALIDATION"), True
        ),
        concurrent_phases=os.environ.get("CONCURRENT_PHASES", ""),
        cache_max_entries=int(os.environ.get("CACHE_MAX_ENTRIES", "0")),
        auto_save=_parse_bool_env(os.environ.get("AUTO_SAVE"), True),
        auto_save_interval_seconds=float(
            os.environ.get("AUTO_SAVE_INTERVAL_SECONDS", "60")
        ),
        data_dir=os.environ.get("DATA_DIR", "agent-memory"),
        run_log_enabled=_parse_bool_env(os.environ.get("RUN_LOG_ENABLED"), True),
        run_log_dir=os.environ.get("RUN_LOG_DIR", "logs/runs"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
    )


def reload_config() -> PipelineConfig:
    """
    Reload configuration from disk (re-reads .env, clears cache).

    Call this after writing a new .env file.
    """
    get_config.cache_clear()
    load_dotenv(
        dotenv_path=Path(__file__).parent / ".env",
        override=True,
    )
    return get_config()
