"""
tests/unit/test_transcript.py — Transcript Processor Tests

Test groups
-----------
  normalize / is_similar — text canonicalisation and repeat detection
  interim handling       — display text and confidence
  deduplication          — similar-to-last and history checks
  wake word              — arming, stripping, expiry, direct arming
  debounce               — one utterance per phrase, late fragments
  echo suppression       — our own speech is not acted on
  suspend / resume       — pause keeps the wake word state it found
  reset                  — stop clears everything

Timers run on a ManualScheduler so tests fire them explicitly.
"""

from __future__ import annotations

from unittest.mock import MagicMock

from builderiq_voice.voice.transcript import TranscriptProcessor, is_similar, normalize
from builderiq_voice.voice.types import RecognitionResult, SessionState


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class _Timer:
    def __init__(self, delay: float, callback) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    def __init__(self) -> None:
        self.timers: list[_Timer] = []

    def call_later(self, delay, callback) -> _Timer:
        timer = _Timer(delay, callback)
        self.timers.append(timer)
        return timer

    def live(self) -> list[_Timer]:
        return [t for t in self.timers if not t.cancelled]

    def fire(self, delay: float) -> int:
        """Fire every live timer scheduled with ``delay``; return how many ran."""
        due = [t for t in self.live() if t.delay == delay]
        for t in due:
            t.cancelled = True
            t.callback()
        return len(due)


_DEBOUNCE = 0.3
_WAKE_TIMEOUT = 45.0


def _make_processor(*, wake_word="hey builder", echo=False, armed=False):
    state = SessionState(wake_word_armed=armed)
    scheduler = ManualScheduler()
    on_utterance = MagicMock()
    on_wake = MagicMock()
    on_wake_expired = MagicMock()
    echo_flag = {"value": echo}
    processor = TranscriptProcessor(
        state,
        scheduler,
        wake_word=wake_word,
        debounce_s=_DEBOUNCE,
        wake_timeout_s=_WAKE_TIMEOUT,
        history_size=20,
        echo_guard=lambda: echo_flag["value"],
        on_utterance=on_utterance,
        on_wake=on_wake,
        on_wake_expired=on_wake_expired,
    )
    return processor, state, scheduler, on_utterance, on_wake, on_wake_expired, echo_flag


def _final(text: str, confidence: float = 0.9) -> list[RecognitionResult]:
    return [RecognitionResult(text, confidence, is_final=True)]


# ─────────────────────────────────────────────────────────────────────────────
# Pure helpers
# ─────────────────────────────────────────────────────────────────────────────

class TestNormalizeAndSimilarity:
    def test_normalize_collapses_whitespace(self):
        assert normalize("  Show   ME\tTemplates ") == "show me templates"

    def test_containment_is_similar(self):
        assert is_similar("show templates", "show")
        assert is_similar("show", "show templates")

    def test_word_overlap_above_threshold(self):
        assert is_similar("open the big library now", "open the big library today")

    def test_word_overlap_below_threshold(self):
        assert not is_similar("create a fitness app", "show me templates")

    def test_empty_never_similar(self):
        assert not is_similar("", "anything")
        assert not is_similar("anything", "")


# ─────────────────────────────────────────────────────────────────────────────
# Interim results
# ─────────────────────────────────────────────────────────────────────────────

class TestInterim:
    def test_interim_sets_display_text_only(self):
        p, _, sched, on_utt, *_ = _make_processor(armed=True)
        p.handle_results([RecognitionResult("show tem", 0.4, is_final=False)])
        assert p.interim == "show tem"
        assert p.confidence == 0.4
        assert sched.timers == []
        on_utt.assert_not_called()

    def test_confidence_is_batch_maximum(self):
        p, *_ = _make_processor(armed=True)
        p.handle_results([
            RecognitionResult("a", 0.2, is_final=False),
            RecognitionResult("b", 0.7, is_final=True),
        ])
        assert p.confidence == 0.7


# ─────────────────────────────────────────────────────────────────────────────
# Deduplication
# ─────────────────────────────────────────────────────────────────────────────

class TestDeduplication:
    def test_repeated_final_fires_once(self):
        p, _, sched, on_utt, *_ = _make_processor(wake_word="")
        p.handle_results(_final("show templates"))
        p.handle_results(_final("show templates"))
        assert sched.fire(_DEBOUNCE) == 1
        on_utt.assert_called_once_with("show templates", "show templates")

    def test_growing_fragment_is_similar(self):
        p, _, _, _, *_ = _make_processor(wake_word="")
        p.handle_results(_final("show"))
        p.handle_results(_final("show templates"))
        assert p.pending == "show"

    def test_history_blocks_old_phrase(self):
        p, _, sched, on_utt, *_ = _make_processor(wake_word="")
        p.handle_results(_final("go back"))
        sched.fire(_DEBOUNCE)
        p.handle_results(_final("create a fitness app"))
        sched.fire(_DEBOUNCE)
        p.handle_results(_final("go back"))
        assert sched.fire(_DEBOUNCE) == 0
        assert on_utt.call_count == 2
        assert p.history == ("go back", "create a fitness app")

    def test_history_is_bounded(self):
        state = SessionState()
        p = TranscriptProcessor(state, ManualScheduler(), history_size=2)
        for text in ("alpha one", "bravo two", "charlie three"):
            p.handle_results(_final(text))
        assert p.history == ("bravo two", "charlie three")


# ─────────────────────────────────────────────────────────────────────────────
# Wake word
# ─────────────────────────────────────────────────────────────────────────────

class TestWakeWord:
    def test_ignored_until_wake_word(self):
        p, state, sched, on_utt, on_wake, *_ = _make_processor()
        p.handle_results(_final("show templates"))
        assert not state.wake_word_armed
        assert sched.timers == []
        on_wake.assert_not_called()
        on_utt.assert_not_called()

    def test_wake_word_with_command_in_same_phrase(self):
        p, state, sched, on_utt, on_wake, *_ = _make_processor()
        p.handle_results(_final("hey builder show templates"))
        assert state.wake_word_armed
        on_wake.assert_called_once()
        sched.fire(_DEBOUNCE)
        on_utt.assert_called_once_with("show templates", "hey builder show templates")

    def test_wake_word_alone_arms_without_utterance(self):
        p, state, sched, on_utt, on_wake, *_ = _make_processor()
        p.handle_results(_final("hey builder"))
        assert state.wake_word_armed
        on_wake.assert_called_once()
        assert sched.fire(_DEBOUNCE) == 0
        on_utt.assert_not_called()

    def test_armed_follow_up_forwarded(self):
        p, _, sched, on_utt, on_wake, *_ = _make_processor()
        p.handle_results(_final("hey builder"))
        p.handle_results(_final("create a fitness app"))
        sched.fire(_DEBOUNCE)
        on_utt.assert_called_once_with("create a fitness app", "create a fitness app")
        on_wake.assert_called_once()

    def test_wake_word_while_armed_does_not_renotify(self):
        p, _, _, _, on_wake, *_ = _make_processor()
        p.handle_results(_final("hey builder"))
        p.handle_results(_final("create a fitness app"))
        p.handle_results(_final("hey builder show templates"))
        on_wake.assert_called_once()

    def test_expiry_disarms_and_notifies(self):
        p, state, sched, _, _, on_expired, _ = _make_processor()
        p.handle_results(_final("hey builder"))
        assert sched.fire(_WAKE_TIMEOUT) == 1
        assert not state.wake_word_armed
        on_expired.assert_called_once()

    def test_activity_restarts_wake_timer(self):
        p, state, sched, *_ = _make_processor()
        p.handle_results(_final("hey builder"))
        first = [t for t in sched.live() if t.delay == _WAKE_TIMEOUT]
        p.handle_results(_final("create a fitness app"))
        assert all(t.cancelled for t in first)
        assert len([t for t in sched.live() if t.delay == _WAKE_TIMEOUT]) == 1
        assert state.wake_word_armed

    def test_direct_arm_uses_custom_window(self):
        p, state, sched, _, on_wake, on_expired, _ = _make_processor()
        p.arm(timeout_s=60.0)
        assert state.wake_word_armed
        on_wake.assert_not_called()
        assert sched.fire(60.0) == 1
        on_expired.assert_called_once()
        assert not state.wake_word_armed

    def test_no_wake_word_forwards_everything(self):
        p, state, sched, on_utt, on_wake, *_ = _make_processor(wake_word="")
        p.handle_results(_final("show templates"))
        sched.fire(_DEBOUNCE)
        on_utt.assert_called_once()
        on_wake.assert_not_called()
        assert not state.wake_word_armed


# ─────────────────────────────────────────────────────────────────────────────
# Debounce
# ─────────────────────────────────────────────────────────────────────────────

class TestDebounce:
    def test_late_fragment_joins_pending(self):
        p, _, sched, on_utt, *_ = _make_processor(armed=True)
        p.handle_results(_final("create an app"))
        p.handle_results(_final("for dog walkers"))
        assert sched.fire(_DEBOUNCE) == 1
        on_utt.assert_called_once_with("create an app for dog walkers", "for dog walkers")

    def test_short_remainder_discarded(self):
        p, _, sched, on_utt, *_ = _make_processor(armed=True)
        p.handle_results(_final("a"))
        assert not [t for t in sched.timers if t.delay == _DEBOUNCE]
        on_utt.assert_not_called()

    def test_cancel_pending(self):
        p, _, sched, on_utt, *_ = _make_processor(armed=True)
        p.handle_results(_final("show templates"))
        p.cancel_pending()
        assert sched.fire(_DEBOUNCE) == 0
        assert p.pending == ""
        on_utt.assert_not_called()


# ─────────────────────────────────────────────────────────────────────────────
# Echo suppression
# ─────────────────────────────────────────────────────────────────────────────

class TestEchoSuppression:
    def test_fragment_during_echo_window_dropped(self):
        p, _, sched, on_utt, _, _, echo = _make_processor(armed=True)
        echo["value"] = True
        p.handle_results(_final("got it let me work on that"))
        assert sched.fire(_DEBOUNCE) == 0
        on_utt.assert_not_called()

    def test_echoed_fragment_is_remembered(self):
        p, _, sched, on_utt, _, _, echo = _make_processor(armed=True)
        echo["value"] = True
        p.handle_results(_final("got it let me work on that"))
        echo["value"] = False
        p.handle_results(_final("got it let me work on that"))
        assert sched.fire(_DEBOUNCE) == 0
        on_utt.assert_not_called()

    def test_greeting_triggered_by_fragment_does_not_suppress_it(self):
        # The wake callback starts speech; the guard was read before it.
        p, _, sched, on_utt, on_wake, _, echo = _make_processor()
        on_wake.side_effect = lambda: echo.__setitem__("value", True)
        p.handle_results(_final("hey builder show templates"))
        sched.fire(_DEBOUNCE)
        on_utt.assert_called_once_with("show templates", "hey builder show templates")


# ─────────────────────────────────────────────────────────────────────────────
# Reset
# ─────────────────────────────────────────────────────────────────────────────

class TestReset:
    def test_reset_clears_everything(self):
        p, state, sched, on_utt, *_ = _make_processor()
        p.handle_results(_final("hey builder show templates"))
        p.handle_results([RecognitionResult("partial", 0.5)])
        p.reset(clear_history=True)
        assert not state.wake_word_armed
        assert p.history == ()
        assert p.pending == ""
        assert p.interim == ""
        assert p.confidence == 0.0
        assert sched.live() == []
        on_utt.assert_not_called()

    def test_reset_keeping_history(self):
        p, *_ = _make_processor(wake_word="")
        p.handle_results(_final("show templates"))
        p.reset(clear_history=False)
        assert p.history == ("show templates",)


# ─────────────────────────────────────────────────────────────────────────────
# Suspend / resume
# ─────────────────────────────────────────────────────────────────────────────

class TestSuspendResume:
    def test_suspend_drops_pending_and_wake_timer(self):
        p, state, sched, on_utt, *_ = _make_processor()
        p.handle_results(_final("hey builder show templates"))
        p.suspend()
        assert not state.wake_word_armed
        assert sched.live() == []
        assert p.pending == ""
        on_utt.assert_not_called()

    def test_resume_rearms_with_previous_window(self):
        p, state, sched, _, on_wake, on_expired, _ = _make_processor()
        p.arm(timeout_s=60.0)
        p.suspend()
        p.resume_armed()
        assert state.wake_word_armed
        assert on_wake.call_count == 0
        assert sched.fire(60.0) == 1
        on_expired.assert_called_once()

    def test_resume_leaves_unarmed_alone(self):
        p, state, sched, _, _, on_expired, _ = _make_processor()
        p.suspend()
        p.resume_armed()
        assert not state.wake_word_armed
        assert sched.live() == []
        on_expired.assert_not_called()

    def test_resume_without_wake_word_starts_no_timer(self):
        p, state, sched, *_ = _make_processor(wake_word="")
        p.suspend()
        p.resume_armed()
        assert not state.wake_word_armed
        assert sched.fire(_WAKE_TIMEOUT) == 0

    def test_reset_forgets_suspended_arming(self):
        p, state, *_ = _make_processor()
        p.handle_results(_final("hey builder"))
        p.suspend()
        p.reset()
        p.resume_armed()
        assert not state.wake_word_armed
