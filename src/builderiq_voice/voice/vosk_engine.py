"""
voice/vosk_engine.py — Offline recognition sessions on Vosk

    MediaStream frames (audio thread) ──► KaldiRecognizer.AcceptWaveform
        True  → Result()        → final RecognitionResult
        False → PartialResult() → interim RecognitionResult (only when changed)

The model is loaded once per engine, in an executor, by prepare(). Every
create_session() builds a fresh KaldiRecognizer, so a restarted session
never inherits half-decoded audio from the one it replaces.

A session that hears nothing for ``no_speech_timeout_s`` reports the
"no-speech" error and ends. Non-continuous sessions end after their first
non-empty final result.

Dependencies:
    vosk   — offline Kaldi speech recognition
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from pathlib import Path
from typing import Optional

from builderiq_voice.exceptions import RecognitionStartError
from builderiq_voice.observability.logger import get_logger
from builderiq_voice.voice.types import RecognitionErrorKind, RecognitionResult

log = get_logger(__name__)


def _confidence(payload: dict) -> float:
    words = payload.get("result") or []
    confs = [w.get("conf", 0.0) for w in words if isinstance(w, dict)]
    if not confs:
        return 0.0
    return round(sum(confs) / len(confs), 3)


class VoskRecognitionSession:
    """One recognition pass over a shared MediaStream."""

    def __init__(
        self,
        recognizer,
        stream,
        listener,
        *,
        continuous: bool = True,
        no_speech_timeout_s: float = 8.0,
        clock=time.monotonic,
    ) -> None:
        self._rec = recognizer
        self._stream = stream
        self._listener = listener
        self.continuous = continuous
        self.no_speech_timeout_s = no_speech_timeout_s
        self._clock = clock
        self._lock = threading.Lock()
        self._attached = False
        self._last_partial = ""
        self._last_heard = clock()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        if not self._stream.live:
            raise RecognitionStartError("Capture stream is not live")
        self._last_heard = self._clock()
        self._attached = True
        self._stream.add_consumer(self._on_frame)
        self._listener.on_start()

    def stop(self) -> None:
        if not self._detach():
            return
        with self._lock:
            payload = json.loads(self._rec.FinalResult() or "{}")
        text = (payload.get("text") or "").strip()
        if text:
            self._listener.on_result(
                [RecognitionResult(text, _confidence(payload), is_final=True)]
            )
        self._listener.on_end()

    def abort(self) -> None:
        self._detach()

    def _detach(self) -> bool:
        with self._lock:
            was_attached = self._attached
            self._attached = False
        if was_attached:
            self._stream.remove_consumer(self._on_frame)
        return was_attached

    def _end(self, error: Optional[RecognitionErrorKind] = None) -> None:
        if not self._detach():
            return
        if error is not None:
            self._listener.on_error(error.value)
        self._listener.on_end()

    # ── Audio thread ──────────────────────────────────────────────────────────

    def _on_frame(self, data: bytes) -> None:
        with self._lock:
            if not self._attached:
                return
            try:
                complete = self._rec.AcceptWaveform(data)
                raw = self._rec.Result() if complete else self._rec.PartialResult()
            except Exception as e:
                log.warning("vosk.decode_failed", error=str(e))
                complete, raw = None, ""

        if complete is None:
            self._end(RecognitionErrorKind.AUDIO_CAPTURE)
            return

        payload = json.loads(raw or "{}")
        now = self._clock()

        if complete:
            text = (payload.get("text") or "").strip()
            self._last_partial = ""
            if text:
                self._last_heard = now
                self._listener.on_result(
                    [RecognitionResult(text, _confidence(payload), is_final=True)]
                )
                if not self.continuous:
                    self._end()
                    return
        else:
            partial = (payload.get("partial") or "").strip()
            if partial and partial != self._last_partial:
                self._last_partial = partial
                self._last_heard = now
                self._listener.on_result([RecognitionResult(partial, 0.0, is_final=False)])

        if now - self._last_heard >= self.no_speech_timeout_s:
            log.debug("vosk.no_speech", silent_s=round(now - self._last_heard, 1))
            self._end(RecognitionErrorKind.NO_SPEECH)


class VoskRecognitionEngine:
    """RecognitionEngine backed by a single shared vosk.Model."""

    name = "vosk"

    def __init__(
        self,
        model_path: str | Path,
        sample_rate: int = 16000,
        no_speech_timeout_s: float = 8.0,
    ) -> None:
        self.model_path = Path(model_path).expanduser()
        self.sample_rate = sample_rate
        self.no_speech_timeout_s = no_speech_timeout_s
        self._model = None

    @classmethod
    def from_settings(cls, settings) -> "VoskRecognitionEngine":
        return cls(
            settings.recognition.vosk_model_path,
            sample_rate=settings.audio.sample_rate,
            no_speech_timeout_s=settings.recognition.no_speech_timeout_s,
        )

    def is_available(self) -> bool:
        try:
            import vosk  # noqa: F401
        except ImportError:
            log.warning("vosk.not_installed", hint="pip install 'builderiq-voice[audio]'")
            return False
        return True

    def _load(self):
        import vosk

        if not self.model_path.is_dir():
            raise RecognitionStartError(f"Vosk model not found at {self.model_path}")
        vosk.SetLogLevel(-1)
        t0 = time.monotonic()
        model = vosk.Model(str(self.model_path))
        log.info(
            "vosk.model_loaded",
            path=str(self.model_path),
            ms=round((time.monotonic() - t0) * 1000),
        )
        return model

    async def prepare(self) -> None:
        if self._model is not None:
            return
        loop = asyncio.get_running_loop()
        try:
            self._model = await loop.run_in_executor(None, self._load)
        except RecognitionStartError:
            raise
        except Exception as e:
            raise RecognitionStartError(f"Failed to load Vosk model: {e}") from e

    def create_session(self, stream, listener, *, language: str, continuous: bool):
        if self._model is None:
            raise RecognitionStartError("Vosk model not loaded; call prepare() first")
        import vosk

        try:
            recognizer = vosk.KaldiRecognizer(self._model, self.sample_rate)
            recognizer.SetWords(True)
        except Exception as e:
            raise RecognitionStartError(f"Could not create recognizer: {e}") from e
        log.debug("vosk.session_created", language=language, continuous=continuous)
        return VoskRecognitionSession(
            recognizer,
            stream,
            listener,
            continuous=continuous,
            no_speech_timeout_s=self.no_speech_timeout_s,
        )
