"""
voice/commands.py — Command Matcher

Maps a finalized, normalized utterance to at most one command, in strict
precedence order:

    1. custom commands supplied by the caller (command + aliases)
    2. built-in navigation commands (create, templates, help, ...)
    3. industry keywords  → "industry:<name>"
    4. long-form "story" fallback for descriptive utterances

Every candidate is checked against a per-key cooldown before its action
runs. A match suppressed by cooldown still consumes the utterance; lower
levels are not consulted.

Usage::

    matcher = CommandMatcher(
        custom_commands,
        phrases=phrases_for("friendly"),
        cooldowns=CooldownRegistry(),
        speak=speech.speak,
        on_command=lambda key: print(key),
        on_stop=controller_stop_request,
    )
    match = matcher.process("show me templates")
"""

from __future__ import annotations

import time
from typing import Any, Callable, Iterable, Optional, Sequence

from builderiq_voice.observability.logger import get_logger
from builderiq_voice.voice.phrases import (
    PersonalityPhrases,
    industry_response,
    phrases_for,
)
from builderiq_voice.voice.types import CommandDescriptor, CommandMatch, MatchLevel

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Built-in grammar
# ─────────────────────────────────────────────────────────────────────────────

STOP_KEY  = "stop"
STORY_KEY = "story"

# (key, patterns) in precedence order; responses depend on personality.
_BUILTIN_TABLE: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("create", ("create", "build", "make", "start building", "i want to build",
                "let's create", "help me build")),
    ("templates", ("template", "templates", "show me templates",
                   "browse templates", "library")),
    ("help", ("help", "what can you do", "commands", "options", "how do i")),
    ("questionnaire", ("questionnaire", "start questionnaire", "questions",
                       "answer questions")),
    (STOP_KEY, ("stop", "stop listening", "cancel", "never mind", "goodbye")),
    ("next", ("next", "continue", "go ahead", "proceed")),
    ("back", ("back", "go back", "previous")),
    ("select_1", ("select first", "option one", "first option", "number one")),
    ("select_2", ("select second", "option two", "second option", "number two")),
    ("select_3", ("select third", "option three", "third option", "number three")),
)

BUILTIN_PATTERNS: frozenset[str] = frozenset(
    p for _, patterns in _BUILTIN_TABLE for p in patterns
)

INDUSTRY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "healthcare":  ("healthcare", "medical", "health", "hospital", "clinic", "doctor", "patient"),
    "finance":     ("finance", "banking", "money", "trading", "investment", "budget"),
    "ecommerce":   ("ecommerce", "e-commerce", "shop", "store", "marketplace", "selling", "products"),
    "education":   ("education", "learning", "course", "school", "student", "teaching", "lms"),
    "fitness":     ("fitness", "workout", "gym", "exercise", "health", "training"),
    "restaurant":  ("restaurant", "food", "dining", "menu", "ordering", "delivery"),
    "realestate":  ("real estate", "property", "housing", "rental", "apartment"),
    "travel":      ("travel", "booking", "hotel", "flight", "vacation", "trip"),
}

_STORY_MIN_WORDS = 4
_STORY_MIN_CHARS = 25


def builtin_commands(phrases: PersonalityPhrases) -> list[CommandDescriptor]:
    """Return the built-in descriptors with personality-specific responses."""
    responses = {
        "create": f"{phrases.understood} Let's build your app!",
        "templates": "Opening the template library for you.",
        "help": phrases.help,
        "questionnaire": "Starting the smart questionnaire. Let's discover your perfect app!",
        STOP_KEY: phrases.goodbye,
        "next": "Moving to the next step.",
        "back": "Going back.",
        "select_1": "Selected first option.",
        "select_2": "Selected second option.",
        "select_3": "Selected third option.",
    }
    return [
        CommandDescriptor(key=key, patterns=patterns, response=responses[key])
        for key, patterns in _BUILTIN_TABLE
    ]


def industry_commands() -> list[CommandDescriptor]:
    return [
        CommandDescriptor(
            key=f"industry:{name}",
            patterns=keywords,
            response=industry_response(name),
        )
        for name, keywords in INDUSTRY_KEYWORDS.items()
    ]


def looks_like_story(text: str) -> bool:
    """A descriptive utterance long enough to be an app idea."""
    return len(text.split()) >= _STORY_MIN_WORDS and len(text) >= _STORY_MIN_CHARS


# ─────────────────────────────────────────────────────────────────────────────
# Cooldowns
# ─────────────────────────────────────────────────────────────────────────────

class CooldownRegistry:
    """
    Per-key re-fire suppression.

    A key that fired less than ``window`` seconds ago is cooling down.
    Entries older than ``expiry`` seconds are dropped on the next access.
    """

    def __init__(
        self,
        window: float = 3.0,
        expiry: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window
        self.expiry = max(expiry, window)
        self._clock = clock
        self._fired: dict[str, float] = {}

    def _prune(self, now: float) -> None:
        stale = [k for k, t in self._fired.items() if now - t >= self.expiry]
        for key in stale:
            del self._fired[key]

    def is_cooling(self, key: str) -> bool:
        now = self._clock()
        self._prune(now)
        fired_at = self._fired.get(key)
        return fired_at is not None and now - fired_at < self.window

    def mark(self, key: str) -> None:
        now = self._clock()
        self._prune(now)
        self._fired[key] = now

    def clear(self) -> None:
        self._fired.clear()

    def __contains__(self, key: str) -> bool:
        self._prune(self._clock())
        return key in self._fired

    def __len__(self) -> int:
        self._prune(self._clock())
        return len(self._fired)


# ─────────────────────────────────────────────────────────────────────────────
# Matcher
# ─────────────────────────────────────────────────────────────────────────────

class CommandMatcher:
    """Precedence-ordered command resolution with cooldown enforcement."""

    def __init__(
        self,
        commands: Iterable[CommandDescriptor] = (),
        *,
        phrases: Optional[PersonalityPhrases] = None,
        cooldowns: Optional[CooldownRegistry] = None,
        speak: Optional[Callable[[str], Any]] = None,
        on_command: Optional[Callable[[str], None]] = None,
        on_stop: Optional[Callable[[], None]] = None,
        speak_responses: bool = True,
    ) -> None:
        self._phrases = phrases or phrases_for("friendly")
        self.custom: list[CommandDescriptor] = list(commands)
        self.builtins = builtin_commands(self._phrases)
        self.industries = industry_commands()
        self.cooldowns = cooldowns or CooldownRegistry()
        self._speak = speak
        self._on_command = on_command
        self._on_stop = on_stop
        self.speak_responses = speak_responses

    def set_commands(self, commands: Sequence[CommandDescriptor]) -> None:
        self.custom = list(commands)

    def resolve(self, text: str) -> Optional[tuple[CommandDescriptor, MatchLevel, str]]:
        """Find the highest-precedence descriptor matching ``text``, if any."""
        for level, table in (
            (MatchLevel.CUSTOM, self.custom),
            (MatchLevel.BUILTIN, self.builtins),
            (MatchLevel.INDUSTRY, self.industries),
        ):
            for descriptor in table:
                pattern = descriptor.first_match(text)
                if pattern is not None:
                    return descriptor, level, pattern
        if looks_like_story(text):
            story = CommandDescriptor(key=STORY_KEY, patterns=())
            return story, MatchLevel.STORY, ""
        return None

    def process(self, text: str) -> Optional[CommandMatch]:
        """
        Resolve and, unless cooling down, fire the command for ``text``.

        Returns None when nothing matched, otherwise a CommandMatch whose
        ``fired`` flag says whether the action actually ran.
        """
        text = text.strip().lower()
        if not text:
            return None

        resolved = self.resolve(text)
        if resolved is None:
            log.debug("command.no_match", text=text[:80])
            return None
        descriptor, level, pattern = resolved

        if self.cooldowns.is_cooling(descriptor.cooldown_key):
            log.info(
                "command.cooldown_suppressed",
                key=descriptor.key,
                level=level.value,
            )
            return CommandMatch(descriptor.key, level, pattern, fired=False)

        self.cooldowns.mark(descriptor.cooldown_key)
        log.info("command.fired", key=descriptor.key, level=level.value, pattern=pattern)

        if descriptor.action is not None:
            try:
                descriptor.action()
            except Exception as e:
                log.error("command.action_error", key=descriptor.key, error=str(e))

        if self._on_command is not None:
            try:
                self._on_command(descriptor.key)
            except Exception as e:
                log.error("command.callback_error", key=descriptor.key, error=str(e))

        if (
            self.speak_responses
            and level is not MatchLevel.STORY
            and descriptor.response
            and self._speak is not None
        ):
            self._speak(descriptor.response)

        if level is MatchLevel.BUILTIN and descriptor.key == STOP_KEY and self._on_stop:
            self._on_stop()

        return CommandMatch(descriptor.key, level, pattern, fired=True)
