from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class SpeechToTextModel(str, Enum):
    large_v3_turbo = "large-v3-turbo"
    large_v3 = "large-v3"
    medium = "medium"
    small = "small"
    tiny = "tiny"


class SpeechSegment(BaseModel):
    """One timestamped line of recognizer output."""

    start: str
    end: str
    text: str
    new_speaker: bool = False


# --- WebSocket messages: client <-> ASR service ---

class ClientMessageType(str, Enum):
    start = "start"
    end = "end"


class StartMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.start
    stream_id: str
    backend: Optional[str] = None
    model: Optional[SpeechToTextModel] = None


class EndMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.end
    stream_id: str


class ServerMessageType(str, Enum):
    progress = "progress"
    transcript_complete = "transcript_complete"
    error = "error"


class ProgressMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.progress
    stream_id: str
    text: str


class TranscriptCompleteMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.transcript_complete
    stream_id: str
    text: str


class ErrorMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.error
    stream_id: str
    detail: str
    kind: Optional[str] = None


# --- HTTP ---

class TranscribeResponse(BaseModel):
    text: str
