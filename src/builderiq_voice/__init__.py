"""
builderiq_voice — continuous voice activation for BuilderIQ.

    from builderiq_voice import VoiceSessionController, CommandDescriptor
"""

from builderiq_voice.voice.controller import VoiceSessionController
from builderiq_voice.voice.types import (
    CommandDescriptor,
    PermissionStatus,
    SessionPhase,
    VoiceStatus,
)

__all__ = [
    "CommandDescriptor",
    "PermissionStatus",
    "SessionPhase",
    "VoiceSessionController",
    "VoiceStatus",
]

__version__ = "1.0.0"
