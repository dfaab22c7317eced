"""
voice/retry.py — Bounded restart policy

One component reused by every path that has to reopen a recognition
session: restart after an unsolicited end and resume after a pause.

    policy = RestartPolicy.from_config(settings.restart)
    outcome = await policy.run(open_attempt, label="restart")

The attempt callable receives the 1-based attempt number and returns an
AttemptOutcome. RETRY means "try again after the next delay"; any other
outcome ends the sequence immediately. A sequence that continues an earlier
one passes ``first_attempt`` so the delays keep growing across sequences.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Awaitable, Callable

from builderiq_voice.observability.logger import get_logger

log = get_logger(__name__)


class AttemptOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    RETRY     = "retry"
    ABANDONED = "abandoned"
    EXHAUSTED = "exhausted"


@dataclass
class RestartPolicy:
    """
    Delay before attempt n is ``min(base_delay * n, max_delay)`` seconds,
    so the defaults give 0.1s, 0.2s, 0.3s across three attempts.
    """
    max_attempts: int = 3
    base_delay: float = 0.1   # seconds
    max_delay: float = 0.5    # seconds

    @classmethod
    def from_config(cls, cfg) -> "RestartPolicy":
        return cls(
            max_attempts=cfg.max_attempts,
            base_delay=cfg.base_delay_ms / 1000.0,
            max_delay=cfg.max_delay_ms / 1000.0,
        )

    def delay_for_attempt(self, attempt: int) -> float:
        return min(self.base_delay * attempt, self.max_delay)

    async def run(
        self,
        attempt_fn: Callable[[int], Awaitable[AttemptOutcome]],
        *,
        immediate: bool = False,
        first_attempt: int = 1,
        label: str = "restart",
    ) -> AttemptOutcome:
        """
        Run strictly sequential attempts numbered first_attempt..max_attempts.

        ``immediate`` skips the delay before the first attempt of this run
        (used for the forced restart after a no-speech timeout).
        """
        first_attempt = max(first_attempt, 1)
        for attempt in range(first_attempt, self.max_attempts + 1):
            delay = 0.0 if (immediate and attempt == first_attempt) else self.delay_for_attempt(attempt)
            if delay > 0:
                await asyncio.sleep(delay)
            log.debug(f"{label}.attempt", attempt=attempt, delay_s=delay)
            outcome = await attempt_fn(attempt)
            if outcome is not AttemptOutcome.RETRY:
                return outcome
            log.warning(
                f"{label}.attempt_failed",
                attempt=attempt,
                max_attempts=self.max_attempts,
            )
        log.error(f"{label}.exhausted", attempts=self.max_attempts)
        return AttemptOutcome.EXHAUSTED
