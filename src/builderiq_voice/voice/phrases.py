"""
voice/phrases.py — Canned spoken phrases and user-facing messages

Personality selects the greeting / listening / acknowledgement / help /
error-retry / goodbye lines and the default rate and pitch for speech.
Recognition error codes map to short messages, and microphone_help()
returns the platform-specific steps for re-enabling microphone access.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass

from builderiq_voice.voice.types import RecognitionErrorKind


@dataclass(frozen=True)
class PersonalityPhrases:
    greeting: str
    # Prompt for callers to show or speak; read via VoiceSessionController.phrases.
    listening: str
    understood: str
    help: str
    # Spoken when a recoverable error is surfaced with auto-restart off.
    error: str
    goodbye: str


@dataclass(frozen=True)
class SpeechSettings:
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0


PHRASES: dict[str, PersonalityPhrases] = {
    "professional": PersonalityPhrases(
        greeting="BuilderIQ activated. How may I assist you?",
        listening="I'm listening. Please describe your requirements.",
        understood="Understood. Processing your request.",
        help="You can say: Create an app, Show templates, Start questionnaire, "
             "or describe your app idea.",
        error="I didn't catch that. Could you please repeat?",
        goodbye="BuilderIQ deactivated. Have a productive day.",
    ),
    "friendly": PersonalityPhrases(
        greeting="Hey there! BuilderIQ here. What are we building today?",
        listening="I'm all ears! Tell me about your app idea.",
        understood="Got it! Let me work on that for you.",
        help="Try saying things like: I want to create a healthcare app, "
             "or Show me e-commerce templates!",
        error="Hmm, I missed that. Mind saying it again?",
        goodbye="Catch you later! Happy building!",
    ),
    "enthusiastic": PersonalityPhrases(
        greeting="Yes! BuilderIQ is ready to go! Let's build something amazing!",
        listening="I'm super excited to hear your idea! Go ahead!",
        understood="Awesome! That sounds incredible! Let me get that started!",
        help="You can say awesome things like: Create a fitness app, "
             "or Help me build a marketplace! Let's do this!",
        error="Oops! The audio got a bit fuzzy. One more time?",
        goodbye="That was fun! Can't wait to build more with you!",
    ),
}

SPEECH_SETTINGS: dict[str, SpeechSettings] = {
    "professional": SpeechSettings(rate=1.0,  pitch=1.0,  volume=1.0),
    "friendly":     SpeechSettings(rate=1.05, pitch=1.1,  volume=1.0),
    "enthusiastic": SpeechSettings(rate=1.1,  pitch=1.15, volume=1.0),
}


def phrases_for(personality: str) -> PersonalityPhrases:
    return PHRASES.get(personality, PHRASES["friendly"])


def speech_settings_for(personality: str) -> SpeechSettings:
    return SPEECH_SETTINGS.get(personality, SPEECH_SETTINGS["friendly"])


def industry_response(industry: str) -> str:
    return (
        f"Great choice! {industry} is a fantastic industry. "
        f"Let me guide you through creating your app."
    )


# ── Error messages ────────────────────────────────────────────────────────────

ERROR_MESSAGES: dict[RecognitionErrorKind, str] = {
    RecognitionErrorKind.NO_SPEECH: "No speech detected. Try speaking louder or closer to the mic.",
    RecognitionErrorKind.ABORTED: "Listening was interrupted.",
    RecognitionErrorKind.NETWORK: "The speech recognizer hit a transient error. Reconnecting...",
    RecognitionErrorKind.AUDIO_CAPTURE: "No microphone found. Please connect a microphone.",
    RecognitionErrorKind.NOT_ALLOWED: "Microphone access denied.",
    RecognitionErrorKind.SERVICE_NOT_ALLOWED: "Speech service not allowed.",
    RecognitionErrorKind.UNKNOWN: "Voice recognition error.",
}

UNSUPPORTED_MESSAGE = (
    "Speech recognition is not available. Install the audio extra "
    "(pip install 'builderiq-voice[audio]') and a Vosk model."
)


def error_message(kind: RecognitionErrorKind) -> str:
    return ERROR_MESSAGES.get(kind, ERROR_MESSAGES[RecognitionErrorKind.UNKNOWN])


def microphone_help(platform: str | None = None) -> str:
    """Steps for re-enabling microphone access on the current platform."""
    platform = platform or sys.platform
    if platform == "darwin":
        return (
            "Open System Settings > Privacy & Security > Microphone and enable "
            "access for your terminal or Python, then restart listening."
        )
    if platform.startswith("win"):
        return (
            "Open Settings > Privacy & security > Microphone, turn on "
            "'Let desktop apps access your microphone', then restart listening."
        )
    return (
        "Check that your user can open the capture device: add yourself to the "
        "'audio' group (sudo usermod -aG audio $USER), log out and back in, and "
        "make sure no other program holds the microphone exclusively."
    )
