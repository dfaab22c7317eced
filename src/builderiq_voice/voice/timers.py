"""
voice/timers.py — Timer scheduling seam

Stages that need a delayed callback (debounce, wake-word expiry) take a
Scheduler instead of touching the event loop directly. The controller hands
them one whose callbacks are posted onto its event queue; tests hand them a
manual scheduler they can fire by hand.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional, Protocol, runtime_checkable


@runtime_checkable
class TimerHandle(Protocol):
    def cancel(self) -> None: ...


@runtime_checkable
class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Schedules callbacks directly on an asyncio loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), callback)
