from typing import Any, Dict, Optional


class VoiceCoachError(Exception):
    """Base exception for the VoiceCoach application"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(VoiceCoachError):
    """Configuration related errors"""
    pass


class SpeechError(VoiceCoachError):
    """Errors raised around a speech engine operation.

    ``operation`` names the coordinator method that failed so the error can be
    surfaced per operation.
    """

    kind = "speech"

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        super().__init__(message, details)


class InitializationError(SpeechError):
    """Speech engine could not be constructed; fatal until re-attempted"""
    kind = "initialization"


class OperationTimeoutError(SpeechError):
    """An engine call did not settle within the maximum operation time"""
    kind = "timeout"


class EngineError(SpeechError):
    """The speech engine rejected an operation"""
    kind = "engine"


class StreamError(SpeechError):
    """The chat response stream failed before completing"""
    kind = "stream"


class MisuseError(SpeechError):
    """Operation called in a state where it cannot apply"""
    kind = "misuse"
