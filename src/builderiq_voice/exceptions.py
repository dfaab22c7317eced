"""
exceptions.py — BuilderIQ Voice Error Hierarchy

All builderiq_voice exceptions live here. Backends raise typed subclasses of
BuilderIQVoiceError, and the session controller turns them into the
caller-visible ``error`` string plus an ``on_error(exc)`` notification.

Import from here, not from individual modules:
    from builderiq_voice.exceptions import PermissionDeniedError

Hierarchy:
    BuilderIQVoiceError
    └── VoiceError
        ├── VoiceUnsupportedError
        ├── PermissionDeniedError
        ├── AudioDeviceError
        ├── RecognitionStartError
        ├── RestartExhaustedError
        └── SpeechSynthesisError

ConfigError lives in builderiq_voice.config.settings next to validate_all().
"""

from __future__ import annotations


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class BuilderIQVoiceError(Exception):
    """Base class for all builderiq_voice exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Voice layer
# ─────────────────────────────────────────────────────────────────────────────

class VoiceError(BuilderIQVoiceError):
    """Base for voice session errors."""


class VoiceUnsupportedError(VoiceError):
    """Speech recognition is not available in this environment."""


class PermissionDeniedError(VoiceError):
    """
    Microphone access was refused.

    Carries remediation guidance so callers can show the user how to
    re-enable access without parsing the message.
    """

    def __init__(self, message: str, guidance: str = "") -> None:
        super().__init__(message)
        self.guidance = guidance

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} {self.guidance}".strip() if self.guidance else base


class AudioDeviceError(VoiceError):
    """No usable input device, or the capture stream failed to open."""


class RecognitionStartError(VoiceError):
    """A recognition session could not be opened or started."""


class RestartExhaustedError(VoiceError):
    """The session ended and every bounded restart attempt failed."""

    def __init__(self, attempts: int) -> None:
        super().__init__(
            f"Voice recognition stopped after {attempts} restart attempts. "
            f"Start listening again to retry."
        )
        self.attempts = attempts


class SpeechSynthesisError(VoiceError):
    """Speech output failed for a reason other than cancellation."""
