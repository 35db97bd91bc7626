"""Caller-facing input and option types for transcribers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import AsyncIterable, Awaitable, Callable, Optional, Union

import numpy as np

AudioChunk = Union[bytes, bytearray, memoryview, np.ndarray]
ProgressCallback = Callable[[str], Optional[Awaitable[None]]]


@dataclass(frozen=True)
class StreamAudioInput:
    """A finite, single-read source of raw audio chunks."""

    stream: AsyncIterable[AudioChunk]


@dataclass(frozen=True)
class FileAudioInput:
    """Audio already at rest: a filesystem path or ``file://`` URI."""

    path: Union[str, os.PathLike]


AudioInput = Union[StreamAudioInput, FileAudioInput]


@dataclass
class TranscriberOptions:
    on_progress: Optional[ProgressCallback] = None


@dataclass
class InferenceResult:
    text: str
    start_time: float = 0.0
    end_time: float = 0.0
