from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

import numpy as np
from faster_whisper import WhisperModel

from common.config import ASRSettings
from asr_service.errors import EngineUnavailableError
from asr_service.models import InferenceResult

logger = logging.getLogger(__name__)

_models: dict[tuple[str, str, str], WhisperModel] = {}
_lock = threading.Lock()


def get_model(
    model: str,
    device: str = "cpu",
    compute_type: str = "int8",
    cache_dir: Optional[Path] = None,
) -> WhisperModel:
    """Load a faster-whisper model once per process and reuse it.

    Weights are downloaded into ``cache_dir`` on first use; later loads and
    concurrent callers read the same cache.
    """
    key = (model, device, compute_type)
    with _lock:
        loaded = _models.get(key)
        if loaded is None:
            logger.info("initiate: %s (%s, %s)", model, device, compute_type)
            logger.info("download: %s into %s", model, cache_dir or "default cache")
            try:
                loaded = WhisperModel(
                    model,
                    device=device,
                    compute_type=compute_type,
                    download_root=str(cache_dir) if cache_dir else None,
                )
            except Exception as exc:
                raise EngineUnavailableError(f"Failed to load model '{model}': {exc}") from exc
            logger.info("done: %s", model)
            _models[key] = loaded
            logger.info("ready: %s", model)
    return loaded


def run_inference(
    model: str,
    samples: np.ndarray,
    settings: ASRSettings | None = None,
) -> list[InferenceResult]:
    """Transcribe a float32 sample buffer, one result per detected segment."""
    settings = settings or ASRSettings()
    whisper = get_model(model, settings.device, settings.compute_type, settings.cache_dir)
    segments, _info = whisper.transcribe(samples, language=None, vad_filter=False)
    # `segments` is a generator; decoding happens while iterating it
    return [
        InferenceResult(text=seg.text.strip(), start_time=seg.start, end_time=seg.end)
        for seg in segments
    ]
