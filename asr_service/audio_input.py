from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import AsyncIterable, Optional, Union
from urllib.parse import urlparse
from urllib.request import url2pathname

import numpy as np

from asr_service.errors import ConversionError, FormatProbeError, InputReadError
from asr_service.models import AudioChunk, AudioInput, FileAudioInput, StreamAudioInput

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16000


def coerce_path(path: Union[str, os.PathLike]) -> Path:
    """Turn a path, PathLike or ``file://`` URI into a plain Path."""
    raw = os.fspath(path)
    if raw.startswith("file://"):
        return Path(url2pathname(urlparse(raw).path))
    return Path(raw)


def remove_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.warning("Failed to remove temporary file %s", path, exc_info=True)


def _is_readable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.R_OK)


def _chunk_bytes(chunk: AudioChunk) -> bytes:
    if isinstance(chunk, np.ndarray):
        return chunk.tobytes()
    return bytes(chunk)


def _as_samples(data: bytes) -> np.ndarray:
    if len(data) % 4:
        raise InputReadError(f"Audio buffer of {len(data)} bytes is not a whole number of float32 samples")
    return np.frombuffer(data, dtype=np.float32).copy()


async def _first_chunk(stream: AsyncIterable[AudioChunk]) -> Optional[AudioChunk]:
    try:
        async for chunk in stream:
            return chunk
    except Exception as exc:
        raise InputReadError(f"Failed to read audio stream: {exc}") from exc
    return None


async def read_sample_buffer(audio: AudioInput) -> np.ndarray:
    """Load audio as a float32 sample buffer for in-process inference.

    For streams only the first chunk delivered is used; the rest of the
    stream is left unread.
    """
    if isinstance(audio, FileAudioInput):
        path = coerce_path(audio.path)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise InputReadError(f"Cannot read audio file {path}: {exc}") from exc
        return _as_samples(data)

    if not isinstance(audio, StreamAudioInput):
        raise TypeError(f"Unsupported audio input: {type(audio).__name__}")

    chunk = await _first_chunk(audio.stream)
    if chunk is None:
        return np.array([], dtype=np.float32)
    if isinstance(chunk, np.ndarray):
        return chunk.astype(np.float32)
    return _as_samples(bytes(chunk))


async def materialize_to_file(
    audio: AudioInput,
    temp_dir: Optional[Path] = None,
) -> tuple[Path, bool]:
    """Return a path holding the audio, and whether a temp file was created.

    A stream is written to a fresh temp file that is removed again if
    reading fails or the call is cancelled part way through.
    """
    if isinstance(audio, FileAudioInput):
        path = coerce_path(audio.path)
        if not await asyncio.to_thread(_is_readable_file, path):
            raise InputReadError(f"Cannot read audio file {path}")
        return path, False

    if not isinstance(audio, StreamAudioInput):
        raise TypeError(f"Unsupported audio input: {type(audio).__name__}")

    fd, name = tempfile.mkstemp(
        prefix=f"whisper-{time.time_ns()}-",
        suffix=".tmp",
        dir=temp_dir,
    )
    path = Path(name)
    written = 0
    try:
        with os.fdopen(fd, "wb") as fh:
            async for chunk in audio.stream:
                data = _chunk_bytes(chunk)
                await asyncio.to_thread(fh.write, data)
                written += len(data)
    except Exception as exc:
        remove_quietly(path)
        raise InputReadError(f"Failed to read audio stream: {exc}") from exc
    except BaseException:
        remove_quietly(path)
        raise

    logger.info("Audio stream written to %s (%d bytes)", path, written)
    return path, True


async def _run(cmd: list[str]) -> tuple[int, bytes, bytes]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    return proc.returncode, stdout, stderr


async def probe_audio(path: Path, ffprobe: str = "ffprobe") -> Optional[dict]:
    """Return ffprobe's description of the first audio stream, if any."""
    cmd = [ffprobe, "-v", "quiet", "-print_format", "json", "-show_streams", str(path)]
    try:
        returncode, stdout, stderr = await _run(cmd)
    except OSError as exc:
        raise FormatProbeError(f"Cannot run {ffprobe}: {exc}") from exc

    if returncode != 0:
        raise FormatProbeError(f"ffprobe failed: {stderr.decode(errors='replace')}")

    try:
        streams = json.loads(stdout)["streams"]
        return next((s for s in streams if s.get("codec_type") == "audio"), None)
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise FormatProbeError(f"Unparseable ffprobe output: {exc}") from exc


def needs_conversion(stream_info: Optional[dict]) -> bool:
    if not stream_info:
        return True
    return stream_info.get("sample_fmt") != "s16" or stream_info.get("codec_name") != "pcm_s16le"


async def ensure_wav_format(
    path: Path,
    ffprobe: str = "ffprobe",
    ffmpeg: str = "ffmpeg",
) -> Path:
    """Make sure ``path`` is 16 kHz mono 16-bit PCM.

    Returns ``path`` unchanged when it already is, otherwise the path of a
    converted copy next to it. The original file is never modified.
    """
    stream_info = await probe_audio(path, ffprobe)
    if not needs_conversion(stream_info):
        return path

    output = path.with_name(path.name + ".wav")
    cmd = [
        ffmpeg,
        "-i", str(path),
        "-acodec", "pcm_s16le",
        "-ar", str(TARGET_SAMPLE_RATE),
        "-ac", "1",
        "-y",
        str(output),
    ]
    try:
        returncode, _, stderr = await _run(cmd)
    except OSError as exc:
        raise ConversionError(f"Cannot run {ffmpeg}: {exc}") from exc

    if returncode != 0:
        remove_quietly(output)
        raise ConversionError(
            f"ffmpeg conversion failed with code {returncode}: {stderr.decode(errors='replace')}"
        )

    logger.info("Converted %s to %s", path, output)
    return output
