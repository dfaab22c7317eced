"""
voice/permissions.py — Permission Tracker

Caches the microphone permission state reported by a PermissionProvider.
refresh() queries without prompting; request() acquires and releases a
stream so the environment can prompt. Change notifications from the
provider update the cache and are forwarded to ``on_change``.
"""

from __future__ import annotations

from typing import Callable, Optional

from builderiq_voice.exceptions import PermissionDeniedError
from builderiq_voice.observability.logger import get_logger
from builderiq_voice.voice.types import PermissionStatus

log = get_logger(__name__)


class PermissionTracker:
    def __init__(
        self,
        provider=None,
        *,
        on_change: Optional[Callable[[PermissionStatus], None]] = None,
    ) -> None:
        self._provider = provider
        self._on_change = on_change
        self._status = PermissionStatus.UNKNOWN
        if provider is not None:
            try:
                provider.subscribe(self._handle_change)
            except Exception as e:
                log.debug("permissions.subscribe_unsupported", error=str(e))

    @property
    def status(self) -> PermissionStatus:
        return self._status

    def mark(self, status: PermissionStatus) -> None:
        """Record a status learned elsewhere (e.g. a recognition error)."""
        if status is self._status:
            return
        log.info("permissions.changed", old=self._status.value, new=status.value)
        self._status = status
        if self._on_change is not None:
            self._on_change(status)

    def _handle_change(self, status: PermissionStatus) -> None:
        self.mark(PermissionStatus(status))

    async def refresh(self) -> PermissionStatus:
        if self._provider is None:
            return self._status
        try:
            status = await self._provider.query()
        except Exception as e:
            # Query support varies; leave the cache alone when it is missing.
            log.debug("permissions.query_failed", error=str(e))
            return self._status
        self.mark(status)
        return self._status

    async def request(self) -> bool:
        """
        Ask for microphone access. Returns True on success.

        PermissionDeniedError and AudioDeviceError propagate after the
        cached status has been updated.
        """
        if self._provider is None:
            return False
        try:
            granted = await self._provider.request()
        except PermissionDeniedError:
            self.mark(PermissionStatus.DENIED)
            raise
        self.mark(PermissionStatus.GRANTED if granted else PermissionStatus.DENIED)
        return granted
