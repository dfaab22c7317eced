"""
voice/audio.py — Microphone capture, permission check, Audio Level Monitor

    SoundDeviceMediaSource.acquire() ──► SoundDeviceStream
        sounddevice RawInputStream callback (audio thread)
            ├─► RMS level (numpy)          ──► AudioLevelMonitor ──► status.audio_level
            └─► fan-out to frame consumers ──► recognition session

sounddevice and numpy are imported lazily so the package imports cleanly on
machines without PortAudio; capability detection then reports unsupported.

Dependencies:
    sounddevice   — mic capture (PortAudio)
    numpy         — level metering
"""

from __future__ import annotations

import asyncio
import threading
from typing import Callable, Optional

from builderiq_voice.exceptions import AudioDeviceError, PermissionDeniedError
from builderiq_voice.observability.logger import get_logger
from builderiq_voice.voice.backends import FrameConsumer
from builderiq_voice.voice.phrases import microphone_help
from builderiq_voice.voice.types import PermissionStatus

log = get_logger(__name__)

_DTYPE      = "int16"
_CHANNELS   = 1
_LEVEL_GAIN = 8.0   # speech RMS rarely exceeds 1/8 of full scale


def _classify_open_error(exc: Exception) -> Exception:
    """Map a PortAudio / OS failure onto the voice error hierarchy."""
    message = str(exc)
    if isinstance(exc, PermissionError) or "permission" in message.lower():
        return PermissionDeniedError(
            "Microphone access denied.", guidance=microphone_help(),
        )
    return AudioDeviceError(
        f"No microphone found. Please connect a microphone. ({message})"
    )


# ─────────────────────────────────────────────────────────────────────────────
# Stream
# ─────────────────────────────────────────────────────────────────────────────

class SoundDeviceStream:
    """One open capture stream shared by successive recognition sessions."""

    def __init__(self, sample_rate: int = 16000, block_ms: int = 100,
                 device: Optional[int] = None) -> None:
        self.sample_rate = sample_rate
        self.blocksize = int(sample_rate * block_ms / 1000)
        self.device = device
        self._stream = None
        self._consumers: list[FrameConsumer] = []
        self._lock = threading.Lock()
        self._level = 0.0
        self._closed = False

    def open(self) -> None:
        import numpy as np
        import sounddevice as sd

        def _callback(indata, frames, time_info, status):
            if status:
                log.debug("audio.sd_status", status=str(status))
            data = bytes(indata)
            samples = np.frombuffer(data, dtype=np.int16)
            if samples.size:
                rms = float(np.sqrt(np.mean(samples.astype(np.float32) ** 2)))
                self._level = min(1.0, rms / 32768.0 * _LEVEL_GAIN)
            with self._lock:
                consumers = list(self._consumers)
            for consumer in consumers:
                try:
                    consumer(data)
                except Exception as e:
                    log.warning("audio.consumer_error", error=str(e))

        self._stream = sd.RawInputStream(
            samplerate=self.sample_rate,
            blocksize=self.blocksize,
            device=self.device,
            channels=_CHANNELS,
            dtype=_DTYPE,
            callback=_callback,
        )
        self._stream.start()
        log.info(
            "audio.stream_open",
            device=self.device,
            sample_rate=self.sample_rate,
            blocksize=self.blocksize,
        )

    @property
    def live(self) -> bool:
        return not self._closed and self._stream is not None and bool(self._stream.active)

    def add_consumer(self, consumer: FrameConsumer) -> None:
        with self._lock:
            if consumer not in self._consumers:
                self._consumers.append(consumer)

    def remove_consumer(self, consumer: FrameConsumer) -> None:
        with self._lock:
            if consumer in self._consumers:
                self._consumers.remove(consumer)

    def level(self) -> float:
        return self._level if self.live else 0.0

    def stop(self) -> None:
        if self._closed:
            return
        self._closed = True
        with self._lock:
            self._consumers.clear()
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                log.warning("audio.stream_close_failed", error=str(e))
        self._level = 0.0
        log.info("audio.stream_closed")


class SoundDeviceMediaSource:
    """MediaSource backed by sounddevice. Opening runs in an executor."""

    def __init__(self, sample_rate: int = 16000, block_ms: int = 100,
                 device: Optional[int] = None) -> None:
        self.sample_rate = sample_rate
        self.block_ms = block_ms
        self.device = device

    @classmethod
    def from_config(cls, cfg) -> "SoundDeviceMediaSource":
        return cls(cfg.sample_rate, cfg.block_ms, cfg.mic_device_index)

    def is_available(self) -> bool:
        try:
            import sounddevice  # noqa: F401
            return True
        except (ImportError, OSError):
            return False

    def _open(self) -> SoundDeviceStream:
        stream = SoundDeviceStream(self.sample_rate, self.block_ms, self.device)
        try:
            stream.open()
        except ImportError as e:
            raise AudioDeviceError(f"Audio capture unavailable: {e}") from e
        except Exception as e:
            raise _classify_open_error(e) from e
        return stream

    async def acquire(self) -> SoundDeviceStream:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._open)


# ─────────────────────────────────────────────────────────────────────────────
# Permission provider
# ─────────────────────────────────────────────────────────────────────────────

class SoundDevicePermissionProvider:
    """
    Desktop microphone permission, inferred from the device list.

    Desktop audio stacks have no permission-query API, so query() reports
    GRANTED when an input device is listed and PROMPT when none is visible
    (the OS may be hiding it until access is allowed). request() opens and
    releases a real stream, which is what triggers an OS prompt where one
    exists.
    """

    def __init__(self, source: SoundDeviceMediaSource) -> None:
        self._source = source
        self._subscribers: list[Callable[[PermissionStatus], None]] = []

    def _query_sync(self) -> PermissionStatus:
        try:
            import sounddevice as sd
        except (ImportError, OSError):
            return PermissionStatus.UNKNOWN
        try:
            sd.query_devices(device=self._source.device, kind="input")
        except Exception as e:
            log.debug("permissions.no_input_device", error=str(e))
            return PermissionStatus.PROMPT
        return PermissionStatus.GRANTED

    async def query(self) -> PermissionStatus:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._query_sync)

    async def request(self) -> bool:
        stream = await self._source.acquire()
        stream.stop()
        return True

    def subscribe(self, callback: Callable[[PermissionStatus], None]) -> None:
        # No OS change notifications on desktop; kept for protocol parity.
        self._subscribers.append(callback)


# ─────────────────────────────────────────────────────────────────────────────
# Audio Level Monitor
# ─────────────────────────────────────────────────────────────────────────────

class AudioLevelMonitor:
    """
    Samples MediaStream.level() on a fixed interval for display.

    Purely informational: a failing sample stops the monitor and nothing
    else. Recognition never depends on it.
    """

    def __init__(self, on_level: Callable[[float], None], interval_s: float = 0.05) -> None:
        self._on_level = on_level
        self.interval_s = interval_s
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, stream) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(stream))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._on_level(0.0)

    async def _run(self, stream) -> None:
        try:
            while stream.live:
                self._on_level(float(stream.level()))
                await asyncio.sleep(self.interval_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.debug("audio.level_monitor_failed", error=str(e))
        self._on_level(0.0)
