"""
voice/speech.py — Speech Output Manager

Serializes spoken replies through one SpeechSynthesizer:

  * speak() within ``min_interval`` of the previous accepted speak start is
    dropped; otherwise any in-flight utterance is cancelled and replaced
  * the start timestamp of the last accepted speak backs the self-echo
    guard used by the transcript processor
  * cancellation ("interrupted" / "canceled") is a normal outcome, not an error
  * voices are chosen by a ranked preference list, then language match,
    then the first available voice

Synthesizer callbacks may arrive on a worker thread. ``dispatch`` is used to
hop them back onto the owner's event sequence before any state changes.
"""

from __future__ import annotations

import itertools
import time
from typing import Callable, Optional, Sequence

from builderiq_voice.exceptions import SpeechSynthesisError
from builderiq_voice.observability.logger import get_logger
from builderiq_voice.voice.phrases import speech_settings_for
from builderiq_voice.voice.types import Utterance, VoiceInfo

log = get_logger(__name__)

_CANCELLED_ERRORS = frozenset({"interrupted", "canceled", "cancelled"})

# Ranked name predicates; the first group with a language-compatible voice wins.
_PREFERRED_NAMES: tuple[tuple[str, ...], ...] = (
    ("google us english",),
    ("google uk english female",),
    ("google",),
    ("microsoft zira", "microsoft jenny", "microsoft aria"),
    ("microsoft",),
    ("samantha", "karen", "moira", "tessa"),
    ("natural", "enhanced", "premium"),
)


def _lang_matches(voice_lang: str, language: str, *, exact: bool) -> bool:
    v = voice_lang.replace("_", "-").lower()
    want = language.replace("_", "-").lower()
    if exact:
        return v == want
    return v.split("-")[0] == want.split("-")[0]


def select_voice(voices: Sequence[VoiceInfo], language: str = "en-US") -> Optional[VoiceInfo]:
    """Pick the best voice for ``language`` from what the synthesizer offers."""
    if not voices:
        return None
    same_family = [v for v in voices if _lang_matches(v.lang, language, exact=False)]
    for names in _PREFERRED_NAMES:
        for voice in same_family:
            lowered = voice.name.lower()
            if any(n in lowered for n in names):
                return voice
    for voice in voices:
        if _lang_matches(voice.lang, language, exact=True) and not voice.local:
            return voice
    for voice in voices:
        if _lang_matches(voice.lang, language, exact=True):
            return voice
    if same_family:
        return same_family[0]
    return voices[0]


class SpeechOutputManager:
    """Rate-limited, cancel-and-replace front end for a SpeechSynthesizer."""

    def __init__(
        self,
        synthesizer,
        *,
        language: str = "en-US",
        personality: str = "friendly",
        min_interval_s: float = 2.0,
        echo_window_s: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
        dispatch: Optional[Callable[[Callable[[], None]], None]] = None,
        on_speaking_change: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self._synth = synthesizer
        self.language = language
        self.personality = personality
        self.min_interval_s = min_interval_s
        self.echo_window_s = echo_window_s
        self._clock = clock
        self._dispatch = dispatch or (lambda fn: fn())
        self._on_speaking_change = on_speaking_change

        self._last_start: Optional[float] = None
        self._current_id: Optional[int] = None
        self._ids = itertools.count(1)
        self._speaking = False
        self._voice: Optional[VoiceInfo] = None
        self._voice_resolved = False

    # ── Capability ────────────────────────────────────────────────────────────

    @property
    def supported(self) -> bool:
        if self._synth is None:
            return False
        try:
            return bool(self._synth.is_available())
        except Exception as e:
            log.warning("speech.availability_check_failed", error=str(e))
            return False

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    @property
    def last_start(self) -> Optional[float]:
        return self._last_start

    def heard_recently(self) -> bool:
        """True while results may still be our own voice picked up by the mic."""
        if self._last_start is None:
            return False
        return self._clock() - self._last_start < self.echo_window_s

    async def prepare(self) -> None:
        """Let a synthesizer with slow startup get ready off the event loop."""
        prepare = getattr(self._synth, "prepare", None)
        if prepare is None:
            return
        try:
            await prepare()
        except SpeechSynthesisError as e:
            log.warning("speech.prepare_failed", error=str(e))

    @property
    def voice(self) -> Optional[VoiceInfo]:
        if not self._voice_resolved and self._synth is not None:
            try:
                voices = self._synth.voices()
            except Exception as e:
                log.warning("speech.voice_listing_failed", error=str(e))
                voices = []
            # An engine still starting up lists nothing yet; ask again next time.
            self._voice_resolved = bool(voices)
            self._voice = select_voice(voices, self.language)
            if self._voice is not None:
                log.info("speech.voice_selected", voice=self._voice.name, lang=self._voice.lang)
        return self._voice

    # ── Speaking ──────────────────────────────────────────────────────────────

    def speak(
        self,
        text: str,
        *,
        rate: Optional[float] = None,
        pitch: Optional[float] = None,
        volume: Optional[float] = None,
    ) -> bool:
        """
        Speak ``text`` unless another speak started less than min_interval_s
        ago. Returns True when the utterance was handed to the synthesizer.
        """
        text = text.strip()
        if not text:
            return False
        if not self.supported:
            log.debug("speech.unsupported", text=text[:60])
            return False

        now = self._clock()
        if self._last_start is not None and now - self._last_start < self.min_interval_s:
            log.info(
                "speech.dropped",
                since_last_ms=int((now - self._last_start) * 1000),
                text=text[:60],
            )
            return False

        self._last_start = now
        if self._current_id is not None:
            self._synth.cancel()

        defaults = speech_settings_for(self.personality)
        utterance = Utterance(
            text=text,
            voice=self.voice,
            rate=rate if rate is not None else defaults.rate,
            pitch=pitch if pitch is not None else defaults.pitch,
            volume=volume if volume is not None else defaults.volume,
            lang=self.language,
        )
        uid = next(self._ids)
        self._current_id = uid
        self._set_speaking(True)
        log.info("speech.started", utterance=uid, chars=len(text))

        try:
            self._synth.speak(
                utterance,
                on_start=lambda: self._dispatch(lambda: self._handle_start(uid)),
                on_end=lambda: self._dispatch(lambda: self._handle_end(uid)),
                on_error=lambda err: self._dispatch(lambda: self._handle_error(uid, err)),
            )
        except Exception as e:
            log.error("speech.synthesizer_failed", utterance=uid, error=str(e))
            self._current_id = None
            self._set_speaking(False)
            return False
        return True

    def stop(self) -> None:
        """Cancel any utterance immediately. Not an error."""
        if self._current_id is None and not self._speaking:
            return
        self._current_id = None
        if self._synth is not None:
            try:
                self._synth.cancel()
            except Exception as e:
                log.warning("speech.cancel_failed", error=str(e))
        self._set_speaking(False)
        log.info("speech.stopped")

    # ── Synthesizer callbacks (already dispatched) ────────────────────────────

    def _handle_start(self, uid: int) -> None:
        if uid == self._current_id:
            self._set_speaking(True)

    def _handle_end(self, uid: int) -> None:
        if uid != self._current_id:
            return
        self._current_id = None
        self._set_speaking(False)
        log.debug("speech.ended", utterance=uid)

    def _handle_error(self, uid: int, error: str) -> None:
        if error in _CANCELLED_ERRORS:
            log.debug("speech.cancelled", utterance=uid)
        else:
            log.warning("speech.error", utterance=uid, error=error)
        if uid != self._current_id:
            return
        self._current_id = None
        self._set_speaking(False)

    def _set_speaking(self, speaking: bool) -> None:
        if speaking == self._speaking:
            return
        self._speaking = speaking
        if self._on_speaking_change is not None:
            self._on_speaking_change(speaking)
