"""
voice/transcript.py — Transcript Processor

Turns a stream of interim/final recognition results into at most one
actionable utterance per spoken phrase:

    results ──► interim display text + confidence
            └─► finals ──► normalize ──► similar to last? ──► in history? ──►
                wake-word detection ──► strip phrase ──► debounce ──► on_utterance

Recognizers routinely re-emit the same phrase as several finals ("show",
"show templates", "show templates"). The similarity check against the last
processed fragment plus the bounded session history keep each phrase from
firing more than once.

The processor runs inside the controller's event sequence and writes
``state.wake_word_armed`` on the SessionState it is handed. Its timers come
from the injected Scheduler, so tests can fire them by hand.
"""

from __future__ import annotations

import collections
from typing import Callable, Optional, Sequence

from builderiq_voice.observability.logger import get_logger
from builderiq_voice.voice.timers import Scheduler, TimerHandle
from builderiq_voice.voice.types import RecognitionResult, SessionState

log = get_logger(__name__)


def normalize(text: str) -> str:
    return " ".join(text.lower().split())


def is_similar(current: str, previous: str, threshold: float = 0.7) -> bool:
    """
    True when ``current`` repeats ``previous``: either string contains the
    other, or the share of words in common (relative to the longer fragment)
    exceeds ``threshold``.
    """
    if not current or not previous:
        return False
    if current in previous or previous in current:
        return True
    words_a = current.split()
    words_b = set(previous.split())
    longest = max(len(words_a), len(previous.split()))
    if longest == 0:
        return False
    shared = sum(1 for w in words_a if w in words_b)
    return shared / longest > threshold


class TranscriptProcessor:
    """
    Deduplication, wake-word arming and debounce for recognition results.

    Callbacks (all invoked from within handle_results / timer firings):
        on_utterance(text, original) — debounced, phrase-stripped text plus
                                       the latest raw final transcript
        on_wake()                    — wake word armed by the user's phrase
        on_wake_expired()            — armed wake word timed out
    """

    def __init__(
        self,
        state: SessionState,
        scheduler: Scheduler,
        *,
        wake_word: str = "",
        debounce_s: float = 0.3,
        wake_timeout_s: float = 45.0,
        history_size: int = 20,
        similarity_threshold: float = 0.7,
        min_fragment_chars: int = 2,
        echo_guard: Optional[Callable[[], bool]] = None,
        on_utterance: Optional[Callable[[str, str], None]] = None,
        on_wake: Optional[Callable[[], None]] = None,
        on_wake_expired: Optional[Callable[[], None]] = None,
    ) -> None:
        self._state = state
        self._scheduler = scheduler
        self.wake_word = normalize(wake_word)
        self.debounce_s = debounce_s
        self.wake_timeout_s = wake_timeout_s
        self.similarity_threshold = similarity_threshold
        self.min_fragment_chars = min_fragment_chars
        self._echo_guard = echo_guard
        self._on_utterance = on_utterance
        self._on_wake = on_wake
        self._on_wake_expired = on_wake_expired

        self._history: collections.deque[str] = collections.deque(maxlen=history_size)
        self._last_processed = ""
        self._pending = ""
        self._pending_original = ""
        self._debounce: Optional[TimerHandle] = None
        self._wake_timer: Optional[TimerHandle] = None
        self._wake_window = wake_timeout_s
        self._suspended_window: Optional[float] = None

        self.interim = ""
        self.confidence = 0.0

    # ── Read-only views ───────────────────────────────────────────────────────

    @property
    def history(self) -> tuple[str, ...]:
        return tuple(self._history)

    @property
    def pending(self) -> str:
        return self._pending

    @property
    def armed(self) -> bool:
        return self._state.wake_word_armed

    # ── Results ───────────────────────────────────────────────────────────────

    def handle_results(self, results: Sequence[RecognitionResult]) -> None:
        """Process one batch of new results from the recognition session."""
        finals: list[str] = []
        interims: list[str] = []
        best = 0.0
        for r in results:
            best = max(best, r.confidence)
            (finals if r.is_final else interims).append(r.transcript)

        self.interim = " ".join(t.strip() for t in interims if t.strip())
        if results:
            self.confidence = best

        if finals:
            self._handle_final(" ".join(t.strip() for t in finals if t.strip()))

    def _handle_final(self, raw: str) -> None:
        text = normalize(raw)
        if not text:
            return

        if is_similar(text, self._last_processed, self.similarity_threshold):
            log.debug("transcript.similar_skipped", text=text[:80])
            return
        if text in self._history:
            log.debug("transcript.history_skipped", text=text[:80])
            return

        self._last_processed = text
        self._history.append(text)

        # Evaluated at arrival so a greeting triggered by this very fragment
        # does not suppress its own remainder.
        echo = self._echo_guard() if self._echo_guard is not None else False

        if self.wake_word and self.wake_word in text and not self._state.wake_word_armed:
            self.arm(notify=True)

        if self.wake_word and not self._state.wake_word_armed:
            log.debug("transcript.awaiting_wake_word", text=text[:80])
            return

        remainder = text.replace(self.wake_word, "", 1).strip() if self.wake_word else text
        if len(remainder) < self.min_fragment_chars:
            return
        if echo:
            log.info("transcript.self_echo_suppressed", text=remainder[:80])
            return

        if self._state.wake_word_armed:
            self._restart_wake_timer()

        self._pending = f"{self._pending} {remainder}".strip()
        self._pending_original = raw.strip()
        if self._debounce is not None:
            self._debounce.cancel()
        self._debounce = self._scheduler.call_later(self.debounce_s, self._flush)

    def _flush(self) -> None:
        self._debounce = None
        text, original = self._pending, self._pending_original
        self._pending = ""
        self._pending_original = ""
        if not text:
            return
        log.info("transcript.utterance", text=text[:120])
        if self._on_utterance is not None:
            self._on_utterance(text, original)

    # ── Wake word ─────────────────────────────────────────────────────────────

    def arm(self, *, notify: bool = False, timeout_s: Optional[float] = None) -> None:
        """
        Arm the wake word and start its inactivity timer.

        ``timeout_s`` overrides the inactivity window until the next disarm
        (direct activation uses a longer one).
        """
        self._state.wake_word_armed = True
        self._wake_window = timeout_s if timeout_s is not None else self.wake_timeout_s
        self._restart_wake_timer()
        log.info("transcript.wake_armed", timeout_s=self._wake_window, notify=notify)
        if notify and self._on_wake is not None:
            self._on_wake()

    def disarm(self) -> None:
        self._state.wake_word_armed = False
        self._wake_window = self.wake_timeout_s
        if self._wake_timer is not None:
            self._wake_timer.cancel()
            self._wake_timer = None

    def suspend(self) -> None:
        """
        Pause: drop pending work and stop the wake timer, remembering whether
        the wake word was armed so resume_armed() can restore it.
        """
        self.cancel_pending()
        self._suspended_window = self._wake_window if self._state.wake_word_armed else None
        self.disarm()

    def resume_armed(self) -> None:
        window, self._suspended_window = self._suspended_window, None
        if window is not None:
            self.arm(timeout_s=window)

    def _restart_wake_timer(self) -> None:
        if self._wake_timer is not None:
            self._wake_timer.cancel()
        self._wake_timer = self._scheduler.call_later(self._wake_window, self._expire_wake)

    def _expire_wake(self) -> None:
        self._wake_timer = None
        if not self._state.wake_word_armed:
            return
        self.disarm()
        log.info("transcript.wake_expired")
        if self._on_wake_expired is not None:
            self._on_wake_expired()

    # ── Reset ─────────────────────────────────────────────────────────────────

    def cancel_pending(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        self._pending = ""
        self._pending_original = ""

    def reset(self, *, clear_history: bool = True) -> None:
        """Drop pending work; a full stop also forgets the session history."""
        self.cancel_pending()
        self.disarm()
        self._suspended_window = None
        self.interim = ""
        self.confidence = 0.0
        self._last_processed = ""
        if clear_history:
            self._history.clear()
