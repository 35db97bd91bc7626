from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Per-connection state: queues incoming audio frames for the transcriber.

    ``audio_chunks()`` is the single-read stream handed to the transcriber;
    it ends once ``close_audio()`` has been called and the queue is drained.
    """

    stream_id: str
    backend: Optional[str] = None
    model: Optional[str] = None
    bytes_received: int = 0
    closed: bool = False
    _audio: asyncio.Queue = field(default_factory=asyncio.Queue, init=False, repr=False)

    def push_audio(self, data: bytes) -> None:
        if self.closed:
            raise RuntimeError(f"Audio for {self.stream_id} already ended")
        self.bytes_received += len(data)
        self._audio.put_nowait(data)

    def close_audio(self) -> None:
        if not self.closed:
            self.closed = True
            self._audio.put_nowait(None)

    async def audio_chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._audio.get()
            if chunk is None:
                return
            yield chunk


class SessionRegistry:
    """Live transcription streams, capped at ``max_sessions`` with unique ids."""

    def __init__(self, max_sessions: int = 10) -> None:
        self._max = max_sessions
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def open(self, stream_id: str, **kwargs) -> Session:
        async with self._lock:
            if stream_id in self._sessions:
                raise RuntimeError(f"Stream {stream_id} is already being transcribed")
            if len(self._sessions) >= self._max:
                raise RuntimeError(f"Too many concurrent streams (limit {self._max})")
            session = Session(stream_id=stream_id, **kwargs)
            self._sessions[stream_id] = session
        logger.info("Stream opened: %s (%d active)", stream_id, len(self._sessions))
        return session

    async def close(self, stream_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(stream_id, None)
        if session is not None:
            session.close_audio()
            logger.info(
                "Stream closed: %s after %d bytes (%d active)",
                stream_id, session.bytes_received, len(self._sessions),
            )

    @property
    def stream_ids(self) -> list[str]:
        return sorted(self._sessions)

    @property
    def active_count(self) -> int:
        return len(self._sessions)
