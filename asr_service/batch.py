from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Callable, Optional, Union

import numpy as np

from common.config import ASRSettings
from common.schemas import SpeechToTextModel
from asr_service import engine
from asr_service.audio_input import read_sample_buffer
from asr_service.errors import EngineInferenceError, TranscriptionError
from asr_service.models import AudioInput, TranscriberOptions
from asr_service.transcriber import notify_progress

logger = logging.getLogger(__name__)

Inference = Callable[[str, np.ndarray], Any]


def join_results(result: Any) -> str:
    """A single result yields its text; a sequence is newline-joined in order."""
    if hasattr(result, "text"):
        return result.text
    return "\n".join(r.text for r in result)


class BatchTranscriber:
    """In-process transcription: one inference call, one final result.

    ``inference`` is called as ``inference(model_name, samples)`` and may
    return one result or a sequence of results, each exposing ``text``.
    """

    def __init__(
        self,
        model: Union[SpeechToTextModel, str] = SpeechToTextModel.large_v3_turbo,
        settings: Optional[ASRSettings] = None,
        inference: Optional[Inference] = None,
    ):
        self.model = SpeechToTextModel(model)
        self.settings = settings or ASRSettings()
        self._inference = inference or partial(engine.run_inference, settings=self.settings)

    async def transcribe(
        self,
        audio: AudioInput,
        options: Optional[TranscriberOptions] = None,
    ) -> str:
        samples = await read_sample_buffer(audio)

        if len(samples) == 0:
            logger.warning("Empty audio buffer; nothing to transcribe")
            text = ""
        else:
            logger.info("Running %s on %d samples", self.model.value, len(samples))
            try:
                result = await asyncio.to_thread(self._inference, self.model.value, samples)
                text = join_results(result)
            except TranscriptionError:
                raise
            except Exception as exc:
                raise EngineInferenceError(f"Inference failed: {exc}") from exc

        await notify_progress(options, text)
        return text
