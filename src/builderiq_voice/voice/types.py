"""
voice/types.py — Voice session data types

Plain enums and dataclasses shared by every stage of the voice pipeline.
Nothing in here talks to audio hardware or owns a timer.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────

class SessionPhase(str, enum.Enum):
    IDLE        = "idle"
    STARTING    = "starting"
    LISTENING   = "listening"
    PAUSED      = "paused"
    RESTARTING  = "restarting"
    STOPPED     = "stopped"
    DENIED      = "denied"
    UNSUPPORTED = "unsupported"

    @property
    def is_terminal(self) -> bool:
        """Absorbing phases: only an explicit caller action leaves them."""
        return self in (SessionPhase.DENIED, SessionPhase.UNSUPPORTED)


class PermissionStatus(str, enum.Enum):
    UNKNOWN = "unknown"
    PROMPT  = "prompt"
    GRANTED = "granted"
    DENIED  = "denied"


class RecognitionErrorKind(str, enum.Enum):
    NO_SPEECH           = "no-speech"
    ABORTED             = "aborted"
    NETWORK             = "network"
    AUDIO_CAPTURE       = "audio-capture"
    NOT_ALLOWED         = "not-allowed"
    SERVICE_NOT_ALLOWED = "service-not-allowed"
    UNKNOWN             = "unknown"

    @classmethod
    def parse(cls, code: str) -> "RecognitionErrorKind":
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_permission(self) -> bool:
        return self in (
            RecognitionErrorKind.NOT_ALLOWED,
            RecognitionErrorKind.SERVICE_NOT_ALLOWED,
        )

    @property
    def is_recoverable(self) -> bool:
        return self in (
            RecognitionErrorKind.NO_SPEECH,
            RecognitionErrorKind.ABORTED,
            RecognitionErrorKind.NETWORK,
            RecognitionErrorKind.AUDIO_CAPTURE,
        )


class MatchLevel(str, enum.Enum):
    CUSTOM   = "custom"
    BUILTIN  = "builtin"
    INDUSTRY = "industry"
    STORY    = "story"


# ─────────────────────────────────────────────────────────────────────────────
# Recognition results
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RecognitionResult:
    """One result emitted by a recognition session (interim or final)."""
    transcript: str
    confidence: float = 0.0
    is_final: bool = False


@dataclass(frozen=True)
class VoiceInfo:
    """A synthesizer voice as exposed to the voice-selection ranking."""
    id: str
    name: str
    lang: str = ""
    local: bool = True


@dataclass(frozen=True)
class Utterance:
    """A single request to the speech synthesizer."""
    text: str
    voice: Optional[VoiceInfo] = None
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0
    lang: str = "en-US"


# ─────────────────────────────────────────────────────────────────────────────
# Commands
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CommandDescriptor:
    """
    One entry of the command grammar.

    ``patterns`` are lowercase substrings; the first that occurs in the
    normalized utterance selects this descriptor. ``action`` is the caller's
    callback (None for built-ins that only notify). ``response`` is spoken
    after the action when responses are enabled.
    """
    key: str
    patterns: tuple[str, ...]
    action: Optional[Callable[[], Any]] = None
    response: Optional[str] = None
    cooldown_key: str = ""

    def __post_init__(self) -> None:
        seen: dict[str, None] = {}
        for p in self.patterns:
            norm = p.strip().lower()
            if norm:
                seen.setdefault(norm, None)
        object.__setattr__(self, "patterns", tuple(seen))
        if not self.cooldown_key:
            object.__setattr__(self, "cooldown_key", self.key.lower())

    @classmethod
    def from_command(
        cls,
        command: str,
        action: Optional[Callable[[], Any]] = None,
        aliases: Sequence[str] = (),
        response: Optional[str] = None,
    ) -> "CommandDescriptor":
        """Build a descriptor from a command phrase plus aliases."""
        return cls(
            key=command,
            patterns=(command, *aliases),
            action=action,
            response=response,
        )

    def first_match(self, text: str) -> Optional[str]:
        for pattern in self.patterns:
            if pattern in text:
                return pattern
        return None


@dataclass(frozen=True)
class CommandMatch:
    """Outcome of offering one utterance to the command matcher."""
    key: str
    level: MatchLevel
    pattern: str
    fired: bool


# ─────────────────────────────────────────────────────────────────────────────
# Session state
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class SessionState:
    """
    The controller's single mutable state record.

    Only the controller's event-processing sequence writes it. Stages that
    run inside that sequence (the transcript processor) receive the record
    by reference; everything else reads a VoiceStatus snapshot.
    """
    phase: SessionPhase = SessionPhase.IDLE
    is_paused: bool = False
    wake_word_armed: bool = False
    active: bool = False
    active_stream: Any = None


@dataclass(frozen=True)
class VoiceStatus:
    """Read-only view of the controller for callers and UIs."""
    phase: SessionPhase = SessionPhase.IDLE
    is_supported: bool = True
    is_listening: bool = False
    is_speaking: bool = False
    transcript: str = ""
    interim_transcript: str = ""
    error: Optional[str] = None
    wake_word_detected: bool = False
    confidence: float = 0.0
    audio_level: float = 0.0
    permission_status: PermissionStatus = PermissionStatus.UNKNOWN
    last_command: Optional[str] = None
