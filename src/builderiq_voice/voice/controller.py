"""
voice/controller.py — Session Controller

Owns the long-lived voice session: the microphone stream, the current
recognition session, and the single SessionState record.

State machine
-------------
    IDLE ──start()──► STARTING ──session started──► LISTENING
    LISTENING ──pause()──► PAUSED ──resume()──► STARTING
    LISTENING ──session ended / no-speech──► RESTARTING ──reopened──► LISTENING
    RESTARTING ──3 failed attempts──► STOPPED
    any ──stop()──► STOPPED
    any ──permission refused──► DENIED       (absorbing)
    construction without recognition ──► UNSUPPORTED (absorbing)

Concurrency
-----------
Everything runs on one asyncio loop. Recognition and synthesis callbacks
may fire on audio/TTS threads; they are posted with call_soon_threadsafe
onto one asyncio.Queue. A single consumer task takes events off that queue
and handles each one to completion while holding ``_lock``. Public
operations take the same lock, so the state record has exactly one writer
at any time.

start()/resume() issued while a start, resume or restart transition is in
flight await that transition instead of running a second one. Restart
backoff sleeps outside the lock and re-checks ``active``/``is_paused`` under
the lock at every attempt, so pause() and stop() neutralise pending restarts.

Usage::

    ctrl = VoiceSessionController.from_settings(
        settings,
        commands=[CommandDescriptor.from_command("open dashboard", show_dashboard)],
        on_transcript=print,
        on_command=lambda key: print("command:", key),
    )
    async with ctrl:
        await ctrl.start()
        ...
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

from builderiq_voice.config.settings import RestartConfig, TimingConfig, VoiceConfig
from builderiq_voice.exceptions import (
    AudioDeviceError,
    PermissionDeniedError,
    RecognitionStartError,
    RestartExhaustedError,
    VoiceError,
    VoiceUnsupportedError,
)
from builderiq_voice.observability.logger import bind_session, clear_session, get_logger
from builderiq_voice.voice.audio import (
    AudioLevelMonitor,
    SoundDeviceMediaSource,
    SoundDevicePermissionProvider,
)
from builderiq_voice.voice.backends import detect_capabilities
from builderiq_voice.voice.commands import CommandMatcher, CooldownRegistry
from builderiq_voice.voice.permissions import PermissionTracker
from builderiq_voice.voice.phrases import (
    UNSUPPORTED_MESSAGE,
    PersonalityPhrases,
    error_message,
    microphone_help,
    phrases_for,
)
from builderiq_voice.voice.retry import AttemptOutcome, RestartPolicy
from builderiq_voice.voice.speech import SpeechOutputManager
from builderiq_voice.voice.timers import LoopScheduler
from builderiq_voice.voice.transcript import TranscriptProcessor
from builderiq_voice.voice.types import (
    CommandDescriptor,
    PermissionStatus,
    RecognitionErrorKind,
    RecognitionResult,
    SessionPhase,
    SessionState,
    VoiceStatus,
)

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Events
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class _SessionStarted:
    session: int


@dataclass(frozen=True)
class _ResultsReceived:
    session: int
    results: tuple[RecognitionResult, ...]


@dataclass(frozen=True)
class _SessionFailed:
    session: int
    kind: RecognitionErrorKind


@dataclass(frozen=True)
class _SessionEnded:
    session: int


@dataclass(frozen=True)
class _StopRequested:
    reason: str


@dataclass(frozen=True)
class _PermissionChanged:
    status: PermissionStatus


@dataclass(frozen=True)
class _Call:
    """A deferred callback (timer firing or synthesizer notification)."""
    fn: Callable[[], None]
    timer: Optional["_QueuedTimer"] = field(default=None, compare=False)


_SESSION_EVENTS = (_SessionStarted, _ResultsReceived, _SessionFailed, _SessionEnded)


class _SessionListener:
    """RecognitionListener that tags every callback with its session id."""

    def __init__(self, post: Callable[[Any], None], session: int) -> None:
        self._post = post
        self._session = session

    def on_start(self) -> None:
        self._post(_SessionStarted(self._session))

    def on_result(self, results: Sequence[RecognitionResult]) -> None:
        self._post(_ResultsReceived(self._session, tuple(results)))

    def on_error(self, code: str) -> None:
        self._post(_SessionFailed(self._session, RecognitionErrorKind.parse(code)))

    def on_end(self) -> None:
        self._post(_SessionEnded(self._session))


class _QueuedTimer:
    def __init__(self) -> None:
        self.cancelled = False
        self.handle: Optional[asyncio.TimerHandle] = None

    def cancel(self) -> None:
        self.cancelled = True
        if self.handle is not None:
            self.handle.cancel()


class _QueuedScheduler:
    """Scheduler whose callbacks run on the controller's event sequence."""

    def __init__(self, post: Callable[[Any], None]) -> None:
        self._post = post
        self._loop_timers = LoopScheduler()

    def call_later(self, delay: float, callback: Callable[[], None]) -> _QueuedTimer:
        timer = _QueuedTimer()
        timer.handle = self._loop_timers.call_later(
            delay, lambda: self._post(_Call(callback, timer)),
        )
        return timer


# ─────────────────────────────────────────────────────────────────────────────
# Controller
# ─────────────────────────────────────────────────────────────────────────────

class VoiceSessionController:
    """
    Continuous voice activation: wake word, command matching, spoken replies
    and self-healing recognition sessions.

    All backends are injected; ``from_settings`` wires the real ones
    (sounddevice, Vosk, pyttsx3). Tests pass fakes.
    """

    def __init__(
        self,
        config: Optional[VoiceConfig] = None,
        *,
        commands: Iterable[CommandDescriptor] = (),
        engine=None,
        synthesizer=None,
        media_source=None,
        permission_provider=None,
        timing: Optional[TimingConfig] = None,
        restart: Optional[RestartConfig] = None,
        level_interval_s: float = 0.05,
        level_monitor: bool = True,
        on_transcript: Optional[Callable[[str], None]] = None,
        on_command: Optional[Callable[[str], None]] = None,
        on_listening_change: Optional[Callable[[bool], None]] = None,
        on_wake_word: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[VoiceError], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or VoiceConfig()
        self.timing = timing or TimingConfig()
        self._policy = RestartPolicy.from_config(restart or RestartConfig())
        self._engine = engine
        self._synth = synthesizer
        self._media = media_source
        self._clock = clock

        self._on_transcript = on_transcript
        self._on_command = on_command
        self._on_listening_change = on_listening_change
        self._on_wake_word = on_wake_word
        self._on_error = on_error

        # ── Event sequence ────────────────────────────────────────────────────
        self._state = SessionState()
        self._events: asyncio.Queue = asyncio.Queue()
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._consumer: Optional[asyncio.Task] = None
        self._transition: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._session = None
        self._session_id = 0
        self._restart_failures = 0
        self._greeted = False
        self._unsupported_reported = False

        # ── Caller-visible status ─────────────────────────────────────────────
        self._listening = False
        self._transcript = ""
        self._error: Optional[str] = None
        self._wake_detected = False
        self._audio_level = 0.0
        self._last_command: Optional[str] = None

        self.capabilities = detect_capabilities(engine, synthesizer)
        if not self.capabilities.supported:
            self._state.phase = SessionPhase.UNSUPPORTED
            self._error = UNSUPPORTED_MESSAGE
            log.warning("voice.unsupported", engine=getattr(engine, "name", None))

        self._phrases = phrases_for(self.config.voice_personality)
        self._speech = SpeechOutputManager(
            synthesizer if self.capabilities.synthesis else None,
            language=self.config.language,
            personality=self.config.voice_personality,
            min_interval_s=self.timing.speak_min_interval_ms / 1000.0,
            echo_window_s=self.timing.self_echo_window_ms / 1000.0,
            clock=clock,
            dispatch=self._post_call,
        )
        self._cooldowns = CooldownRegistry(
            window=self.timing.cooldown_ms / 1000.0,
            expiry=self.timing.cooldown_expiry_ms / 1000.0,
            clock=clock,
        )
        self._matcher = CommandMatcher(
            commands,
            phrases=self._phrases,
            cooldowns=self._cooldowns,
            speak=self._speech.speak,
            on_command=self._handle_command,
            on_stop=lambda: self._post(_StopRequested("voice_command")),
            speak_responses=self.config.speak_responses,
        )
        self._processor = TranscriptProcessor(
            self._state,
            _QueuedScheduler(self._post),
            wake_word=self.config.wake_word,
            debounce_s=self.timing.debounce_ms / 1000.0,
            wake_timeout_s=self.timing.wake_timeout_s,
            history_size=self.timing.history_size,
            similarity_threshold=self.timing.similarity_threshold,
            min_fragment_chars=self.timing.min_fragment_chars,
            echo_guard=self._speech.heard_recently,
            on_utterance=self._handle_utterance,
            on_wake=self._handle_wake,
            on_wake_expired=self._handle_wake_expired,
        )
        self._permissions = PermissionTracker(
            permission_provider,
            on_change=lambda status: self._post(_PermissionChanged(status)),
        )
        self._level = (
            AudioLevelMonitor(self._set_level, interval_s=level_interval_s)
            if level_monitor else None
        )

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        commands: Iterable[CommandDescriptor] = (),
        **callbacks: Any,
    ) -> "VoiceSessionController":
        """Wire the sounddevice / Vosk / pyttsx3 backends from Settings."""
        from builderiq_voice.voice.tts import Pyttsx3Synthesizer
        from builderiq_voice.voice.vosk_engine import VoskRecognitionEngine

        media = SoundDeviceMediaSource.from_config(settings.audio)
        return cls(
            settings.voice,
            commands=commands,
            engine=VoskRecognitionEngine.from_settings(settings),
            synthesizer=Pyttsx3Synthesizer.from_settings(settings),
            media_source=media,
            permission_provider=SoundDevicePermissionProvider(media),
            timing=settings.timing,
            restart=settings.restart,
            level_interval_s=settings.audio.level_interval_ms / 1000.0,
            level_monitor=settings.audio.level_monitor,
            **callbacks,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def __aenter__(self) -> "VoiceSessionController":
        self._ensure_consumer()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Full stop, silence speech, and shut the event consumer down."""
        await self.stop()
        self._speech.stop()
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
        closer = getattr(self._synth, "close", None)
        if callable(closer):
            closer()
        log.info("voice.closed")

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        self._ensure_consumer()
        await self._events.join()

    # ── Read-only status ──────────────────────────────────────────────────────

    @property
    def phase(self) -> SessionPhase:
        return self._state.phase

    @property
    def is_supported(self) -> bool:
        return self.capabilities.supported

    @property
    def is_listening(self) -> bool:
        return self._listening

    @property
    def is_paused(self) -> bool:
        return self._state.is_paused

    @property
    def is_speaking(self) -> bool:
        return self._speech.is_speaking

    @property
    def transcript(self) -> str:
        return self._transcript

    @property
    def interim_transcript(self) -> str:
        return self._processor.interim

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def wake_word_detected(self) -> bool:
        return self._wake_detected

    @property
    def confidence(self) -> float:
        return self._processor.confidence

    @property
    def audio_level(self) -> float:
        return self._audio_level

    @property
    def permission_status(self) -> PermissionStatus:
        return self._permissions.status

    @property
    def last_command(self) -> Optional[str]:
        return self._last_command

    @property
    def phrases(self) -> PersonalityPhrases:
        """Canned lines for the configured personality, for caller prompts."""
        return self._phrases

    @property
    def status(self) -> VoiceStatus:
        return VoiceStatus(
            phase=self._state.phase,
            is_supported=self.is_supported,
            is_listening=self._listening,
            is_speaking=self._speech.is_speaking,
            transcript=self._transcript,
            interim_transcript=self._processor.interim,
            error=self._error,
            wake_word_detected=self._wake_detected,
            confidence=self._processor.confidence,
            audio_level=self._audio_level,
            permission_status=self._permissions.status,
            last_command=self._last_command,
        )

    # ── Public operations ─────────────────────────────────────────────────────

    async def start(self) -> None:
        """Acquire (or reuse) the mic stream and open a recognition session."""
        self._ensure_consumer()
        if self._transition_in_flight():
            log.debug("voice.start_coalesced")
            await asyncio.shield(self._transition)
            return
        self._transition = self._loop.create_task(self._start_transition())
        await asyncio.shield(self._transition)

    async def stop(self, keep_stream_alive: bool = False) -> None:
        """Full stop: close the session, clear history and cooldowns."""
        self._ensure_consumer()
        async with self._lock:
            await self._stop_locked(keep_stream_alive=keep_stream_alive, reason="caller")

    async def pause(self) -> None:
        """Stop recognizing but keep the mic stream for a fast resume()."""
        self._ensure_consumer()
        async with self._lock:
            if not self._state.active or self._state.is_paused:
                return
            self._state.is_paused = True
            self._close_session()
            self._processor.suspend()
            self._state.phase = SessionPhase.PAUSED
            self._set_listening(False)
            log.info("voice.paused")

    async def resume(self) -> None:
        """Reopen a fresh session on the existing stream; full start() on failure."""
        self._ensure_consumer()
        if self._transition_in_flight():
            log.debug("voice.resume_coalesced")
            await asyncio.shield(self._transition)
            return
        self._transition = self._loop.create_task(self._resume_transition())
        await asyncio.shield(self._transition)

    async def toggle(self) -> None:
        if self._listening or self._state.phase in (
            SessionPhase.STARTING, SessionPhase.LISTENING, SessionPhase.RESTARTING,
        ):
            await self.stop()
        else:
            await self.start()

    async def activate_directly(self) -> None:
        """
        Skip the wake phrase: arm immediately, greet, then start listening
        once the greeting has had time to play.
        """
        self._ensure_consumer()
        async with self._lock:
            if self._greeted:
                log.debug("voice.already_activated")
                return
            self._greeted = True
            self._processor.arm(timeout_s=self.timing.direct_activation_timeout_s)
            self._wake_detected = True
            if self.config.speak_responses:
                await self._speech.prepare()
                self._speech.speak(self._phrases.greeting)
            log.info("voice.activated_directly")

        if self.timing.greeting_lead_s > 0:
            await asyncio.sleep(self.timing.greeting_lead_s)
        if not self._greeted:
            return  # stopped while the greeting played
        await self.start()

    async def request_permission(self) -> bool:
        """Acquire and release a stream to prompt for microphone access."""
        self._ensure_consumer()
        async with self._lock:
            try:
                granted = await self._permissions.request()
            except PermissionDeniedError as e:
                if not self._state.active:
                    self._state.phase = SessionPhase.DENIED
                self._surface(e)
                return False
            except AudioDeviceError as e:
                self._surface(e)
                return False
            if granted:
                self._error = None
                if self._state.phase is SessionPhase.DENIED:
                    self._state.phase = SessionPhase.IDLE
                log.info("voice.permission_granted")
            return granted

    def speak(
        self,
        text: str,
        *,
        rate: Optional[float] = None,
        pitch: Optional[float] = None,
        volume: Optional[float] = None,
    ) -> bool:
        return self._speech.speak(text, rate=rate, pitch=pitch, volume=volume)

    def stop_speaking(self) -> None:
        self._speech.stop()

    def clear_transcript(self) -> None:
        self._transcript = ""
        self._processor.interim = ""
        self._last_command = None

    def set_commands(self, commands: Sequence[CommandDescriptor]) -> None:
        self._matcher.set_commands(commands)

    # ── Transitions ───────────────────────────────────────────────────────────

    def _transition_in_flight(self) -> bool:
        return self._transition is not None and not self._transition.done()

    async def _start_transition(self) -> None:
        async with self._lock:
            await self._start_locked()

    async def _start_locked(self, *, fresh_stream: bool = False) -> None:
        phase = self._state.phase
        if phase is SessionPhase.UNSUPPORTED:
            if not self._unsupported_reported:
                self._unsupported_reported = True
                self._surface(VoiceUnsupportedError(UNSUPPORTED_MESSAGE))
            return
        if phase is SessionPhase.DENIED:
            status = await self._permissions.refresh()
            if status is PermissionStatus.DENIED:
                self._surface(PermissionDeniedError(
                    error_message(RecognitionErrorKind.NOT_ALLOWED),
                    guidance=microphone_help(),
                ))
                return
            log.info("voice.denied_retry", permission=status.value)
        if self._state.active and self._session is not None and not self._state.is_paused:
            log.debug("voice.already_listening")
            return

        self._state.active = True
        self._state.is_paused = False
        self._state.phase = SessionPhase.STARTING
        self._restart_failures = 0
        self._error = None

        if self._permissions.status is PermissionStatus.UNKNOWN:
            await self._permissions.refresh()
        try:
            await self._engine.prepare()
            await self._speech.prepare()
            if fresh_stream:
                await self._release_stream()
            await self._acquire_stream()
            self._open_session()
        except PermissionDeniedError as e:
            await self._enter_denied(e)
            return
        except (AudioDeviceError, RecognitionStartError) as e:
            log.error("voice.start_failed", error=str(e))
            self._state.active = False
            self._state.phase = SessionPhase.STOPPED
            await self._release_stream()
            self._surface(e)
            return
        log.info(
            "voice.starting",
            language=self.config.language,
            continuous=self.config.continuous,
            wake_word=self.config.wake_word or None,
        )

    async def _resume_transition(self) -> None:
        async with self._lock:
            if not self._state.is_paused:
                if not self._state.active:
                    await self._start_locked()
                return
            self._state.is_paused = False
            self._state.active = True
            self._state.phase = SessionPhase.STARTING
            self._restart_failures = 0
            self._processor.resume_armed()
            stream = self._state.active_stream
            if stream is None or not stream.live:
                log.info("voice.resume_stream_lost")
                await self._start_locked(fresh_stream=True)
                return
            log.info("voice.resuming")

        outcome = await self._policy.run(self._attempt_reopen, immediate=True, label="voice.resume")
        if outcome is AttemptOutcome.EXHAUSTED:
            async with self._lock:
                if self._state.active and not self._state.is_paused:
                    log.warning("voice.resume_fallback_full_start")
                    await self._start_locked(fresh_stream=True)

    def _schedule_restart(self, reason: str, *, immediate: bool = False) -> None:
        if self._restart_task is not None and not self._restart_task.done():
            log.debug("voice.restart_already_pending", reason=reason)
            return
        self._state.phase = SessionPhase.RESTARTING
        log.info("voice.restart_scheduled", reason=reason, immediate=immediate)
        task = asyncio.get_running_loop().create_task(self._restart_sequence(immediate))
        self._restart_task = task
        self._transition = task

    async def _restart_sequence(self, immediate: bool) -> None:
        # Sessions that open but end unconfirmed start a new sequence each
        # time; the failure count carries the backoff across them.
        outcome = await self._policy.run(
            self._attempt_reopen,
            immediate=immediate,
            first_attempt=self._restart_failures + 1,
            label="voice.restart",
        )
        if outcome is not AttemptOutcome.EXHAUSTED:
            return
        async with self._lock:
            if (
                self._state.active
                and not self._state.is_paused
                and not self._state.phase.is_terminal
            ):
                await self._fail_exhausted()

    async def _attempt_reopen(self, attempt: int) -> AttemptOutcome:
        async with self._lock:
            if (
                not self._state.active
                or self._state.is_paused
                or self._state.phase.is_terminal
            ):
                log.info("voice.reopen_abandoned", attempt=attempt, phase=self._state.phase.value)
                return AttemptOutcome.ABANDONED
            if self._restart_failures >= self._policy.max_attempts:
                return AttemptOutcome.EXHAUSTED
            self._restart_failures += 1
            try:
                await self._acquire_stream()
                self._open_session()
            except PermissionDeniedError as e:
                await self._enter_denied(e)
                return AttemptOutcome.ABANDONED
            except Exception as e:
                log.warning("voice.reopen_failed", attempt=attempt, error=str(e))
                return AttemptOutcome.RETRY
            return AttemptOutcome.SUCCEEDED

    async def _stop_locked(self, *, keep_stream_alive: bool, reason: str) -> None:
        self._state.active = False
        self._state.is_paused = False
        self._close_session()
        self._processor.reset(clear_history=True)
        self._cooldowns.clear()
        self._greeted = False
        self._wake_detected = False
        if not keep_stream_alive:
            await self._release_stream()
        if not self._state.phase.is_terminal:
            self._state.phase = SessionPhase.STOPPED
        self._set_listening(False)
        clear_session()
        log.info("voice.stopped", reason=reason, kept_stream=keep_stream_alive)

    async def _enter_denied(self, exc: PermissionDeniedError) -> None:
        self._close_session()
        self._processor.cancel_pending()
        self._state.active = False
        self._state.is_paused = False
        self._state.phase = SessionPhase.DENIED
        self._permissions.mark(PermissionStatus.DENIED)
        await self._release_stream()
        self._set_listening(False)
        log.warning("voice.permission_denied")
        self._surface(exc)

    async def _fail_exhausted(self) -> None:
        self._state.active = False
        self._close_session()
        self._processor.cancel_pending()
        await self._release_stream()
        self._state.phase = SessionPhase.STOPPED
        self._set_listening(False)
        self._surface(RestartExhaustedError(self._policy.max_attempts))

    # ── Session + stream plumbing ─────────────────────────────────────────────

    def _open_session(self) -> None:
        if self._engine is None:
            raise RecognitionStartError("No recognition engine configured")
        self._close_session()
        self._session_id += 1
        sid = self._session_id
        session = self._engine.create_session(
            self._state.active_stream,
            _SessionListener(self._post, sid),
            language=self.config.language,
            continuous=self.config.continuous,
        )
        self._session = session
        try:
            session.start()
        except Exception:
            self._session = None
            raise
        bind_session(sid, self.config.wake_word)
        log.info("voice.session_opened", session=sid)

    def _close_session(self) -> None:
        # Abort, not stop: once detached, a flushed final would be stale.
        session, self._session = self._session, None
        if session is None:
            return
        try:
            session.abort()
        except Exception as e:
            log.debug("voice.session_close_failed", error=str(e))

    async def _acquire_stream(self):
        stream = self._state.active_stream
        if stream is not None and stream.live:
            return stream
        if self._media is None:
            raise AudioDeviceError("No microphone source configured")
        stream = await self._media.acquire()
        self._state.active_stream = stream
        self._permissions.mark(PermissionStatus.GRANTED)
        if self._level is not None:
            self._level.start(stream)
        log.info("voice.stream_acquired")
        return stream

    async def _release_stream(self) -> None:
        if self._level is not None:
            await self._level.stop()
        stream, self._state.active_stream = self._state.active_stream, None
        if stream is None:
            return
        try:
            stream.stop()
        except Exception as e:
            log.debug("voice.stream_release_failed", error=str(e))
        self._audio_level = 0.0
        log.info("voice.stream_released")

    # ── Event sequence ────────────────────────────────────────────────────────

    def _ensure_consumer(self) -> None:
        loop = asyncio.get_running_loop()
        self._loop = loop
        if self._consumer is None or self._consumer.done():
            self._consumer = loop.create_task(self._consume())

    def _post(self, event: Any) -> None:
        """Enqueue an event from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            self._events.put_nowait(event)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._events.put_nowait(event)
        else:
            loop.call_soon_threadsafe(self._events.put_nowait, event)

    def _post_call(self, fn: Callable[[], None]) -> None:
        self._post(_Call(fn))

    async def _consume(self) -> None:
        while True:
            event = await self._events.get()
            try:
                async with self._lock:
                    await self._dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error(
                    "voice.event_failed",
                    event=type(event).__name__,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                self._events.task_done()

    async def _dispatch(self, event: Any) -> None:
        if isinstance(event, _Call):
            if event.timer is None or not event.timer.cancelled:
                event.fn()
            return
        if isinstance(event, _StopRequested):
            await self._stop_locked(keep_stream_alive=False, reason=event.reason)
            return
        if isinstance(event, _PermissionChanged):
            await self._handle_permission_change(event.status)
            return
        if isinstance(event, _SESSION_EVENTS):
            if self._session is None or event.session != self._session_id:
                log.debug(
                    "voice.stale_session_event",
                    event=type(event).__name__,
                    session=event.session,
                    current=self._session_id,
                )
                return
            if isinstance(event, _SessionStarted):
                self._handle_session_started()
            elif isinstance(event, _ResultsReceived):
                self._processor.handle_results(event.results)
            elif isinstance(event, _SessionFailed):
                await self._handle_session_failed(event.kind)
            else:
                await self._handle_session_ended()
            return
        log.warning("voice.unknown_event", event=repr(event))

    # ── Event handlers ────────────────────────────────────────────────────────

    def _handle_session_started(self) -> None:
        self._restart_failures = 0
        self._state.phase = SessionPhase.LISTENING
        self._error = None
        self._set_listening(True)
        log.info("voice.listening", session=self._session_id)

    async def _handle_session_failed(self, kind: RecognitionErrorKind) -> None:
        log.warning("voice.recognition_error", kind=kind.value, session=self._session_id)
        if kind.is_permission:
            await self._enter_denied(PermissionDeniedError(
                error_message(kind), guidance=microphone_help(),
            ))
            return
        if kind is RecognitionErrorKind.NO_SPEECH and self._can_auto_restart():
            self._close_session()
            self._schedule_restart("no_speech", immediate=True)
            return
        if kind.is_recoverable:
            if not self.config.auto_restart:
                self._surface(VoiceError(error_message(kind)))
                if self.config.speak_responses:
                    self._speech.speak(self._phrases.error)
            return
        # Unknown: diagnostics only; the end event decides what happens next.

    async def _handle_session_ended(self) -> None:
        self._session = None
        if not self._state.active or self._state.is_paused or self._state.phase.is_terminal:
            return
        if not self.config.auto_restart:
            await self._stop_locked(keep_stream_alive=False, reason="session_ended")
            return
        if self._restart_failures >= self._policy.max_attempts:
            await self._fail_exhausted()
            return
        self._schedule_restart("session_ended")

    async def _handle_permission_change(self, status: PermissionStatus) -> None:
        if status is not self._permissions.status:
            log.debug("voice.permission_change_superseded", status=status.value)
            return
        if status is PermissionStatus.DENIED and self._state.active:
            await self._enter_denied(PermissionDeniedError(
                error_message(RecognitionErrorKind.NOT_ALLOWED),
                guidance=microphone_help(),
            ))

    def _can_auto_restart(self) -> bool:
        return (
            self.config.auto_restart
            and self._state.active
            and not self._state.is_paused
            and not self._state.phase.is_terminal
        )

    def _handle_utterance(self, text: str, original: str) -> None:
        self._matcher.process(text)
        self._transcript = original
        self._processor.interim = ""
        self._safe_call(self._on_transcript, original)

    def _handle_command(self, key: str) -> None:
        self._last_command = key
        self._safe_call(self._on_command, key)

    def _handle_wake(self) -> None:
        self._wake_detected = True
        log.info("voice.wake_word_detected", wake_word=self.config.wake_word)
        self._safe_call(self._on_wake_word)
        if self.config.speak_responses:
            self._speech.speak(self._phrases.greeting)

    def _handle_wake_expired(self) -> None:
        self._wake_detected = False
        self._greeted = False
        if self.config.speak_responses:
            self._speech.speak(self._phrases.goodbye)

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _set_listening(self, listening: bool) -> None:
        if listening == self._listening:
            return
        self._listening = listening
        self._safe_call(self._on_listening_change, listening)

    def _set_level(self, level: float) -> None:
        self._audio_level = level

    def _surface(self, exc: VoiceError) -> None:
        self._error = str(exc)
        log.warning("voice.error", error_type=type(exc).__name__, error=self._error)
        self._safe_call(self._on_error, exc)

    @staticmethod
    def _safe_call(callback: Optional[Callable], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            log.error("voice.callback_error", callback=getattr(callback, "__name__", "?"), error=str(e))
