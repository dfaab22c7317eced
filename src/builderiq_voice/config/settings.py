"""
config/settings.py — BuilderIQ Voice Runtime Settings

Merges config.yaml (structure/defaults) with environment variables.
Pydantic-powered — all fields are validated and typed.

  - VoiceConfig rejects unknown personalities and blank languages at parse time
  - RestartConfig / TimingConfig reject non-positive windows
  - validate_all() performs cross-field startup validation and raises
    ConfigError with a human-readable list of every problem found
  - load_settings() respects BUILDERIQ_VOICE_CONFIG as a fallback when no
    explicit config_path argument is given

Environment overrides use the BUILDERIQ_ prefix with "__" for nesting:

    BUILDERIQ_VOICE__WAKE_WORD="hey studio"
    BUILDERIQ_RESTART__MAX_ATTEMPTS=5
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from builderiq_voice.voice.commands import BUILTIN_PATTERNS


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

VALID_PERSONALITIES = ("professional", "friendly", "enthusiastic")
_VALID_LOG_LEVELS   = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_SAMPLE_RATES = {8000, 16000, 32000, 48000}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class VoiceConfig(BaseModel):
    """Caller-facing voice activation options."""

    wake_word: str = "hey builder"
    language: str = "en-US"
    continuous: bool = True
    auto_restart: bool = True
    speak_responses: bool = True
    voice_personality: str = "friendly"

    @field_validator("wake_word")
    @classmethod
    def _normalise_wake_word(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("language")
    @classmethod
    def _non_blank_language(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("voice.language must not be empty (e.g. 'en-US')")
        return v.strip()

    @field_validator("voice_personality")
    @classmethod
    def _known_personality(cls, v: str) -> str:
        low = v.strip().lower()
        if low not in VALID_PERSONALITIES:
            raise ValueError(
                f"voice.voice_personality must be one of "
                f"{list(VALID_PERSONALITIES)}, got '{v}'"
            )
        return low


class TimingConfig(BaseModel):
    """Windows and limits used by the transcript, command and speech stages."""

    debounce_ms: int = 300
    wake_timeout_s: float = 45.0
    direct_activation_timeout_s: float = 60.0
    greeting_lead_s: float = 2.5
    speak_min_interval_ms: int = 2000
    self_echo_window_ms: int = 3000
    cooldown_ms: int = 3000
    cooldown_expiry_ms: int = 10000
    history_size: int = 20
    similarity_threshold: float = 0.7
    min_fragment_chars: int = 2

    @field_validator(
        "debounce_ms", "speak_min_interval_ms", "self_echo_window_ms",
        "cooldown_ms", "cooldown_expiry_ms",
    )
    @classmethod
    def _non_negative_ms(cls, v: int) -> int:
        if v < 0:
            raise ValueError("timing windows must be >= 0 ms")
        return v

    @field_validator("wake_timeout_s", "direct_activation_timeout_s")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("wake word timeouts must be > 0 seconds")
        return v

    @field_validator("history_size")
    @classmethod
    def _positive_history(cls, v: int) -> int:
        if v < 1:
            raise ValueError("timing.history_size must be >= 1")
        return v

    @field_validator("similarity_threshold")
    @classmethod
    def _valid_threshold(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("timing.similarity_threshold must be in (0, 1]")
        return v


class RestartConfig(BaseModel):
    """Bounded backoff for reopening a recognition session."""

    max_attempts: int = 3
    base_delay_ms: int = 100
    max_delay_ms: int = 500

    @field_validator("max_attempts")
    @classmethod
    def _positive_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("restart.max_attempts must be >= 1")
        return v

    @field_validator("base_delay_ms", "max_delay_ms")
    @classmethod
    def _non_negative_delay(cls, v: int) -> int:
        if v < 0:
            raise ValueError("restart delays must be >= 0 ms")
        return v


class AudioConfig(BaseModel):
    sample_rate: int = 16000
    block_ms: int = 100
    mic_device_index: Optional[int] = None
    level_interval_ms: int = 50
    level_monitor: bool = True

    @field_validator("sample_rate")
    @classmethod
    def _valid_rate(cls, v: int) -> int:
        if v not in _VALID_SAMPLE_RATES:
            raise ValueError(
                f"audio.sample_rate must be one of {sorted(_VALID_SAMPLE_RATES)}"
            )
        return v

    @field_validator("block_ms", "level_interval_ms")
    @classmethod
    def _positive_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError("audio intervals must be >= 1 ms")
        return v


class RecognitionConfig(BaseModel):
    vosk_model_path: str = "~/.local/share/vosk/vosk-model-small-en-us-0.15"
    no_speech_timeout_s: float = 8.0

    @field_validator("no_speech_timeout_s")
    @classmethod
    def _positive_silence(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("recognition.no_speech_timeout_s must be > 0")
        return v

    @property
    def model_dir(self) -> Path:
        return Path(self.vosk_model_path).expanduser()


class SynthesisConfig(BaseModel):
    base_rate_wpm: int = 180

    @field_validator("base_rate_wpm")
    @classmethod
    def _sane_rate(cls, v: int) -> int:
        if not 60 <= v <= 400:
            raise ValueError("synthesis.base_rate_wpm must be between 60 and 400")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 10
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    BuilderIQ Voice runtime settings.

    Priority (highest to lowest):
      1. Environment variables (BUILDERIQ_*)
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_prefix="BUILDERIQ_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    restart: RestartConfig = Field(default_factory=RestartConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    recognition: RecognitionConfig = Field(default_factory=RecognitionConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # init kwargs carry config.yaml; the environment overrides them.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @field_validator("voice", mode="before")
    @classmethod
    def _coerce_voice(cls, v: Any) -> Any:
        return VoiceConfig(**v) if isinstance(v, dict) else v

    @field_validator("restart", mode="before")
    @classmethod
    def _coerce_restart(cls, v: Any) -> Any:
        return RestartConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    def validate_all(self, *, require_model: bool = False) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Field validators catch type/value errors at parse time; this catches
        cross-field problems Pydantic can't see (delay ordering, a wake word
        that collides with a built-in command, a missing Vosk model when the
        CLI is about to use it).
        """
        errors: list[str] = []

        # ── Restart delays ───────────────────────────────────────────────────
        if self.restart.base_delay_ms > self.restart.max_delay_ms:
            errors.append(
                f"restart.base_delay_ms ({self.restart.base_delay_ms}) must not "
                f"exceed restart.max_delay_ms ({self.restart.max_delay_ms})."
            )

        # ── Echo window must cover the speak rate limit ──────────────────────
        if self.timing.self_echo_window_ms < self.timing.speak_min_interval_ms:
            errors.append(
                "timing.self_echo_window_ms must be >= timing.speak_min_interval_ms "
                "or the assistant can react to its own voice."
            )

        # ── Wake word must not be a command phrase ───────────────────────────
        wake = self.voice.wake_word
        if wake and wake in BUILTIN_PATTERNS:
            errors.append(
                f"voice.wake_word '{wake}' is also a built-in command phrase. "
                f"Pick a distinct activation phrase."
            )

        # ── Vosk model directory ─────────────────────────────────────────────
        if require_model and not self.recognition.model_dir.is_dir():
            errors.append(
                f"recognition.vosk_model_path '{self.recognition.vosk_model_path}' "
                f"does not exist. Download a model from "
                f"https://alphacephei.com/vosk/models and point the path at it."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nBuilderIQ Voice startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your environment "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {
    "voice", "timing", "restart", "audio",
    "recognition", "synthesis", "logging",
}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. BUILDERIQ_VOICE_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("BUILDERIQ_VOICE_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    resolved_path = _resolve_config_path(config_path)
    yaml_data = _load_yaml(resolved_path)

    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default path on
    first use. Guarded by _singleton_lock against concurrent first loads.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            resolved_path = _resolve_config_path(None)
            yaml_data = _load_yaml(resolved_path)
            init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}
            _singleton = Settings(**init_kwargs)
    return _singleton
