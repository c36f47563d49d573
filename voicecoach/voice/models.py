"""Typed models shared across the voice pipeline."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Optional

TranscriptCallback = Callable[[str], None]
PlaybackCallback = Callable[[], None]


@dataclass(frozen=True)
class OperationRecord:
    name: str
    started_at: float


@dataclass(frozen=True)
class SpeechState:
    is_listening: bool = False
    is_speaking: bool = False
    is_paused: bool = False
    is_muted: bool = False
    current_language: str = "en-US"

    def evolve(self, **changes) -> "SpeechState":
        return replace(self, **changes)

    def as_dict(self) -> dict[str, object]:
        return {
            "is_listening": self.is_listening,
            "is_speaking": self.is_speaking,
            "is_paused": self.is_paused,
            "is_muted": self.is_muted,
            "current_language": self.current_language,
        }


@dataclass
class CallbackPair:
    """Consumer callbacks for one listening session.

    ``on_close`` runs once when the pair is retired (stop or replacement).
    """

    on_interim: TranscriptCallback
    on_final: TranscriptCallback
    on_close: Optional[Callable[[], None]] = None
    closed: bool = field(default=False, init=False, repr=False)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.on_close is not None:
            self.on_close()


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Utterance:
    role: Role
    text: str
    is_provisional: bool = False

    def as_dict(self) -> dict[str, object]:
        return {"role": self.role.value, "text": self.text, "provisional": self.is_provisional}


@dataclass
class SilenceWindow:
    last_interim_text: str = ""
    timer_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


@dataclass
class TranscriptSegment:
    text: str
    is_final: bool
