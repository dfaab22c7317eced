"""
voice/backends.py — Environment protocols + Capability Detector

The controller never imports an audio library directly. It talks to four
small protocols, implemented for real hardware in voice/audio.py,
voice/vosk_engine.py and voice/tts.py, and by fakes in the tests:

    MediaSource.acquire()            → MediaStream (microphone capture)
    RecognitionEngine.create_session → RecognitionSession (speech-to-text)
    SpeechSynthesizer.speak          → spoken output with start/end/error callbacks
    PermissionProvider.query/request → microphone permission state

Listener and synthesizer callbacks may fire on any thread; receivers must
marshal them onto their own loop before touching state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import (
    Callable,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from builderiq_voice.observability.logger import get_logger
from builderiq_voice.voice.types import (
    PermissionStatus,
    RecognitionResult,
    Utterance,
    VoiceInfo,
)

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Media
# ─────────────────────────────────────────────────────────────────────────────

FrameConsumer = Callable[[bytes], None]


@runtime_checkable
class MediaStream(Protocol):
    @property
    def live(self) -> bool: ...

    def add_consumer(self, consumer: FrameConsumer) -> None: ...

    def remove_consumer(self, consumer: FrameConsumer) -> None: ...

    def level(self) -> float: ...

    def stop(self) -> None: ...


@runtime_checkable
class MediaSource(Protocol):
    async def acquire(self) -> MediaStream:
        """Open the microphone. Raises PermissionDeniedError / AudioDeviceError."""
        ...


# ─────────────────────────────────────────────────────────────────────────────
# Recognition
# ─────────────────────────────────────────────────────────────────────────────

@runtime_checkable
class RecognitionListener(Protocol):
    def on_start(self) -> None: ...

    def on_result(self, results: Sequence[RecognitionResult]) -> None: ...

    def on_error(self, code: str) -> None: ...

    def on_end(self) -> None: ...


@runtime_checkable
class RecognitionSession(Protocol):
    def start(self) -> None:
        """Begin recognition. Raises RecognitionStartError on failure."""
        ...

    def stop(self) -> None:
        """Finish gracefully: flush a final result, then on_end."""
        ...

    def abort(self) -> None:
        """Stop immediately and detach the listener without further callbacks."""
        ...


@runtime_checkable
class RecognitionEngine(Protocol):
    name: str

    def is_available(self) -> bool: ...

    async def prepare(self) -> None:
        """Load models. Raises RecognitionStartError if that is impossible."""
        ...

    def create_session(
        self,
        stream: MediaStream,
        listener: RecognitionListener,
        *,
        language: str,
        continuous: bool,
    ) -> RecognitionSession: ...


# ─────────────────────────────────────────────────────────────────────────────
# Synthesis
# ─────────────────────────────────────────────────────────────────────────────

@runtime_checkable
class SpeechSynthesizer(Protocol):
    """
    Engines with slow startup may also offer ``async prepare()``; callers
    await it when present so speak() and voices() never block on startup.
    """

    def is_available(self) -> bool: ...

    def voices(self) -> list[VoiceInfo]: ...

    def speak(
        self,
        utterance: Utterance,
        *,
        on_start: Callable[[], None],
        on_end: Callable[[], None],
        on_error: Callable[[str], None],
    ) -> None: ...

    def cancel(self) -> None: ...


# ─────────────────────────────────────────────────────────────────────────────
# Permissions
# ─────────────────────────────────────────────────────────────────────────────

@runtime_checkable
class PermissionProvider(Protocol):
    async def query(self) -> PermissionStatus:
        """Current state without prompting the user."""
        ...

    async def request(self) -> bool:
        """Acquire and immediately release a stream to trigger any prompt."""
        ...

    def subscribe(self, callback: Callable[[PermissionStatus], None]) -> None: ...


# ─────────────────────────────────────────────────────────────────────────────
# Capability Detector
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Capabilities:
    recognition: bool
    synthesis: bool

    @property
    def supported(self) -> bool:
        """Voice activation needs recognition; synthesis is optional."""
        return self.recognition


def _check_available(component, label: str) -> bool:
    if component is None:
        return False
    try:
        return bool(component.is_available())
    except Exception as e:
        log.warning("capabilities.check_failed", component=label, error=str(e))
        return False


def detect_capabilities(
    engine: Optional[RecognitionEngine],
    synthesizer: Optional[SpeechSynthesizer],
) -> Capabilities:
    """Report which of recognition and synthesis exist in this environment."""
    caps = Capabilities(
        recognition=_check_available(engine, "recognition"),
        synthesis=_check_available(synthesizer, "synthesis"),
    )
    log.info(
        "capabilities.detected",
        recognition=caps.recognition,
        synthesis=caps.synthesis,
    )
    return caps
