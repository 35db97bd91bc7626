"""Transcriber capability and backend factory."""

from __future__ import annotations

import inspect
import logging
from typing import Optional, Protocol, Union

from common.config import ASRSettings
from common.schemas import SpeechToTextModel
from asr_service.models import AudioInput, TranscriberOptions

logger = logging.getLogger(__name__)


class Transcriber(Protocol):
    """Anything that turns an AudioInput into a final transcript.

    Implementations may call ``options.on_progress`` with the best-known
    text so far; callers must not depend on anything beyond this method.
    """

    async def transcribe(
        self,
        audio: AudioInput,
        options: Optional[TranscriberOptions] = None,
    ) -> str:
        ...


async def notify_progress(options: Optional[TranscriberOptions], text: str) -> None:
    """Deliver a progress notification, awaiting async callbacks in order."""
    if options is None or options.on_progress is None:
        return
    result = options.on_progress(text)
    if inspect.isawaitable(result):
        await result


def resolve_backend(backend: str, settings: ASRSettings) -> str:
    if backend == "auto":
        return "whisper-cli" if settings.whisper_model_path else "batch"
    return backend


def create_transcriber(
    backend: Optional[str] = None,
    model: Union[SpeechToTextModel, str, None] = None,
    settings: Optional[ASRSettings] = None,
) -> Transcriber:
    """Build the transcriber for ``backend``.

    Raises:
        ValueError: If the backend or model name is unknown
    """
    settings = settings or ASRSettings()
    requested = backend or settings.backend
    resolved = resolve_backend(requested, settings)
    if requested == "auto":
        logger.info("Auto-selected backend: %s", resolved)

    model = SpeechToTextModel(model or settings.model)

    if resolved == "batch":
        from asr_service.batch import BatchTranscriber
        return BatchTranscriber(model, settings)

    if resolved == "whisper-cli":
        from asr_service.whisper_cli import WhisperCliTranscriber
        return WhisperCliTranscriber(model, settings)

    raise ValueError(
        f"Unknown backend: {requested}. "
        f"Valid options: 'auto', 'batch', 'whisper-cli'"
    )
