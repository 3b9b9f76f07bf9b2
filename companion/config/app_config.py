"""
Application Configuration Module

Centralized configuration management for the companion service including
persistence, responder backends, stage deadlines, background task intervals
and server settings.
"""

import logging
import os
from functools import lru_cache
from typing import Any, Dict

from dotenv import load_dotenv

from .thresholds import EmotionTuning, GuardrailThresholds, LoopDetectionTuning, ShapingTuning

logger = logging.getLogger("companion.config.app")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class AppConfig:
    """Main application configuration manager."""

    def __init__(self):
        """Initialize configuration with environment variables and defaults."""
        self._load_config()

    def _load_config(self):
        """Load configuration from environment variables with fallbacks."""

        # Persistence: empty URL keeps all per-identity state in memory
        self.database_url = os.getenv("DATABASE_URL", "")

        # Primary responder
        self.responder_backend = os.getenv("RESPONDER_BACKEND", "ollama").lower()
        self.responder_base_url = os.getenv("RESPONDER_BASE_URL", "http://127.0.0.1:11434")
        self.responder_model = os.getenv("RESPONDER_MODEL", "llama3:8b")
        self.responder_api_key = os.getenv("RESPONDER_API_KEY", "")
        self.responder_timeout_seconds = float(os.getenv("RESPONDER_TIMEOUT_SECONDS", "8"))

        # Optional local fallback responder (empty URL disables it)
        self.local_responder_base_url = os.getenv("LOCAL_RESPONDER_BASE_URL", "")
        self.local_responder_model = os.getenv("LOCAL_RESPONDER_MODEL", "qwen2.5:3b")
        self.local_responder_timeout_seconds = float(os.getenv("LOCAL_RESPONDER_TIMEOUT_SECONDS", "6"))

        # Deadline for every best-effort enrichment stage
        self.stage_timeout_seconds = float(os.getenv("STAGE_TIMEOUT_SECONDS", "1.5"))

        # Behaviour switches
        self.demo_mode = _env_bool("DEMO_MODE")
        self.exhaustion_mode = _env_bool("EXHAUSTION_MODE")
        self.persona_name = os.getenv("PERSONA_NAME", "Synth")

        # Background tasks
        self.heartbeat_interval_seconds = float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "30"))
        self.idle_check_interval_seconds = float(os.getenv("IDLE_CHECK_INTERVAL_SECONDS", "60"))
        self.idle_timeout_seconds = float(os.getenv("IDLE_TIMEOUT_SECONDS", "900"))
        self.maintenance_interval_seconds = float(os.getenv("MAINTENANCE_INTERVAL_SECONDS", "600"))
        self.identity_evict_after_seconds = float(os.getenv("IDENTITY_EVICT_AFTER_SECONDS", "21600"))
        self.background_tasks_enabled = _env_bool("BACKGROUND_TASKS_ENABLED", "true")

        # Server configuration
        self.host = os.getenv("HOST", "localhost")
        self.port = int(os.getenv("PORT", "8000"))
        self.debug = _env_bool("DEBUG")
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.log_structured = _env_bool("LOG_STRUCTURED", "true")

        # Tunables
        self.guardrail_thresholds = GuardrailThresholds.from_env()
        self.emotion_tuning = EmotionTuning.from_env()
        self.loop_tuning = LoopDetectionTuning.from_env()
        self.shaping_tuning = ShapingTuning.from_env()

        logger.info("Application configuration loaded successfully")
        logger.debug(f"Responder backend: {self.responder_backend} ({self.responder_model})")

    def get_responder_config(self) -> Dict[str, Any]:
        """Get primary and local responder configuration."""
        return {
            "backend": self.responder_backend,
            "base_url": self.responder_base_url,
            "model": self.responder_model,
            "api_key": self.responder_api_key,
            "timeout": self.responder_timeout_seconds,
            "local_base_url": self.local_responder_base_url,
            "local_model": self.local_responder_model,
            "local_timeout": self.local_responder_timeout_seconds,
        }

    def get_task_config(self) -> Dict[str, Any]:
        """Get background task configuration."""
        return {
            "enabled": self.background_tasks_enabled,
            "heartbeat_interval": self.heartbeat_interval_seconds,
            "idle_check_interval": self.idle_check_interval_seconds,
            "idle_timeout": self.idle_timeout_seconds,
            "maintenance_interval": self.maintenance_interval_seconds,
            "identity_evict_after": self.identity_evict_after_seconds,
        }

    def get_server_config(self) -> Dict[str, Any]:
        """Get server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
            "log_level": self.log_level,
        }

    def validate_config(self) -> bool:
        """
        Validate cross-field settings.

        Raises:
            ValueError: when a setting cannot work at runtime
        """
        errors = []
        if self.responder_backend not in ("ollama", "openai"):
            errors.append(f"RESPONDER_BACKEND={self.responder_backend!r} must be 'ollama' or 'openai'")
        if self.responder_backend == "openai" and not self.responder_api_key:
            errors.append("RESPONDER_API_KEY is required for the openai backend")
        if self.responder_timeout_seconds <= 0:
            errors.append("RESPONDER_TIMEOUT_SECONDS must be > 0")
        if self.stage_timeout_seconds <= 0:
            errors.append("STAGE_TIMEOUT_SECONDS must be > 0")
        if errors:
            raise ValueError("Configuration validation failed:\n" + "\n".join(errors))
        return True


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Return the process-wide configuration, loading ``.env`` on first use."""
    load_dotenv()
    return AppConfig()
