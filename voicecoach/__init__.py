"""VoiceCoach real-time voice conversation core."""

__version__ = "0.3.0"
