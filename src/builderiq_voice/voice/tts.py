"""
voice/tts.py — pyttsx3 speech synthesizer

pyttsx3 engines are not thread-safe and runAndWait() blocks, so one daemon
worker thread owns the engine and plays queued utterances in order:

    speak(utt) ──► job queue ──► worker: setProperty(rate/volume/voice)
                                         say() + runAndWait()
                                           ├─ started-utterance  → on_start
                                           ├─ started-word       → engine.stop() if cancelled
                                           └─ finished-utterance → on_end / on_error("interrupted")

cancel() only marks jobs. The worker notices the mark in its own engine
callbacks and calls engine.stop() there, so the engine is never touched
from another thread. speak() and voices() never wait for engine startup;
``await prepare()`` does that off the event loop.

pyttsx3 has no pitch control; Utterance.pitch is ignored here.

Dependencies:
    pyttsx3 — offline TTS (espeak / SAPI5 / NSSpeechSynthesizer)
"""

from __future__ import annotations

import asyncio
import itertools
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from builderiq_voice.exceptions import SpeechSynthesisError
from builderiq_voice.observability.logger import get_logger
from builderiq_voice.voice.types import Utterance, VoiceInfo

log = get_logger(__name__)

_INIT_TIMEOUT_S = 5.0


def _voice_lang(voice) -> str:
    """pyttsx3 voices expose languages as str or espeak-style bytes (b'\\x05en-us')."""
    for lang in getattr(voice, "languages", None) or []:
        if isinstance(lang, bytes):
            lang = lang.decode("utf-8", errors="ignore")
        lang = "".join(ch for ch in str(lang) if ch.isprintable()).strip()
        if lang:
            return lang
    return ""


@dataclass
class _Job:
    id: int
    utterance: Utterance
    on_start: Callable[[], None]
    on_end: Callable[[], None]
    on_error: Callable[[str], None]
    cancelled: bool = field(default=False)


class Pyttsx3Synthesizer:
    """SpeechSynthesizer running pyttsx3 on a dedicated worker thread."""

    def __init__(self, base_rate_wpm: int = 180, driver_name: Optional[str] = None) -> None:
        self.base_rate_wpm = base_rate_wpm
        self.driver_name = driver_name
        self._jobs: queue.Queue = queue.Queue()
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._engine = None
        self._init_error: Optional[BaseException] = None
        self._current: Optional[_Job] = None
        self._voices: list[VoiceInfo] = []

    @classmethod
    def from_settings(cls, settings) -> "Pyttsx3Synthesizer":
        return cls(base_rate_wpm=settings.synthesis.base_rate_wpm)

    # ── Availability ──────────────────────────────────────────────────────────

    def is_available(self) -> bool:
        try:
            import pyttsx3  # noqa: F401
        except ImportError:
            log.warning("tts.pyttsx3_missing", hint="pip install 'builderiq-voice[audio]'")
            return False
        return self._init_error is None

    # ── Worker ────────────────────────────────────────────────────────────────

    def _start_worker(self) -> None:
        with self._lock:
            if self._thread is not None:
                return
            self._thread = threading.Thread(
                target=self._worker, name="builderiq-tts", daemon=True,
            )
            self._thread.start()

    def _wait_ready(self) -> None:
        self._start_worker()
        self._ready.wait(_INIT_TIMEOUT_S)
        if self._init_error is not None:
            raise SpeechSynthesisError(f"pyttsx3 init failed: {self._init_error}")
        if self._engine is None:
            raise SpeechSynthesisError("pyttsx3 engine did not start in time")

    async def prepare(self) -> None:
        """Start the engine and wait for it without blocking the event loop."""
        if self._engine is not None:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._wait_ready)

    def _worker(self) -> None:
        try:
            import pyttsx3
            engine = pyttsx3.init(self.driver_name) if self.driver_name else pyttsx3.init()
            engine.connect("started-utterance", self._on_started)
            engine.connect("started-word", self._on_word)
            engine.connect("finished-utterance", self._on_finished)
            self._voices = [
                VoiceInfo(id=str(v.id), name=str(v.name or v.id), lang=_voice_lang(v))
                for v in (engine.getProperty("voices") or [])
            ]
        except Exception as e:
            self._init_error = e
            log.error("tts.init_failed", error=str(e))
            self._ready.set()
            self._fail_queued_jobs()
            return

        self._engine = engine
        self._ready.set()
        log.info("tts.ready", voices=len(self._voices))

        while True:
            job = self._jobs.get()
            if job is None:
                break
            if job.cancelled:
                job.on_error("canceled")
                continue
            with self._lock:
                self._current = job
            try:
                utt = job.utterance
                engine.setProperty("rate", int(self.base_rate_wpm * utt.rate))
                engine.setProperty("volume", max(0.0, min(1.0, utt.volume)))
                if utt.voice is not None:
                    engine.setProperty("voice", utt.voice.id)
                engine.say(utt.text, str(job.id))
                engine.runAndWait()
            except Exception as e:
                log.error("tts.playback_failed", utterance=job.id, error=str(e))
                job.on_error(str(e) or "synthesis-failed")
            finally:
                with self._lock:
                    self._current = None

    def _fail_queued_jobs(self) -> None:
        # Jobs queued before init failed still get exactly one outcome.
        while True:
            job = self._jobs.get()
            if job is None:
                break
            job.on_error("canceled" if job.cancelled else "synthesis-failed")

    def _job_for(self, name: str) -> Optional[_Job]:
        with self._lock:
            job = self._current
        if job is not None and str(job.id) == str(name):
            return job
        return None

    def _stop_if_cancelled(self, job: _Job) -> None:
        if job.cancelled and self._engine is not None:
            self._engine.stop()

    def _on_started(self, name) -> None:
        job = self._job_for(name)
        if job is None:
            return
        if job.cancelled:
            self._stop_if_cancelled(job)
            return
        job.on_start()

    def _on_word(self, name, location, length) -> None:
        job = self._job_for(name)
        if job is not None:
            self._stop_if_cancelled(job)

    def _on_finished(self, name, completed) -> None:
        job = self._job_for(name)
        if job is None:
            return
        if completed and not job.cancelled:
            job.on_end()
        else:
            job.on_error("interrupted")

    # ── SpeechSynthesizer protocol ────────────────────────────────────────────

    def voices(self) -> list[VoiceInfo]:
        """Voices reported by the engine; empty until prepare() has finished."""
        self._start_worker()
        if self._init_error is not None:
            raise SpeechSynthesisError(f"pyttsx3 init failed: {self._init_error}")
        return list(self._voices)

    def speak(self, utterance: Utterance, *, on_start, on_end, on_error) -> None:
        self._start_worker()
        if self._init_error is not None:
            raise SpeechSynthesisError(f"pyttsx3 init failed: {self._init_error}")
        self._jobs.put(_Job(next(self._ids), utterance, on_start, on_end, on_error))

    def cancel(self) -> None:
        with self._lock:
            job = self._current
        while True:
            try:
                pending = self._jobs.get_nowait()
            except queue.Empty:
                break
            if pending is None:
                self._jobs.put(None)
                break
            pending.cancelled = True
            pending.on_error("canceled")
        if job is not None:
            job.cancelled = True

    def close(self) -> None:
        self.cancel()
        with self._lock:
            thread, self._thread = self._thread, None
        if thread is not None:
            self._jobs.put(None)
            thread.join(timeout=2.0)
