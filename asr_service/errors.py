from __future__ import annotations


class TranscriptionError(RuntimeError):
    """Raised when a transcription call fails (backend-agnostic)."""

    kind = "transcription_error"


class InputReadError(TranscriptionError):
    """Raised when the audio stream or file cannot be read."""

    kind = "input_read"


class FormatProbeError(TranscriptionError):
    """Raised when ffprobe fails or returns output that cannot be parsed."""

    kind = "format_probe"


class ConversionError(TranscriptionError):
    """Raised when transcoding to 16 kHz mono PCM fails."""

    kind = "conversion"


class EngineUnavailableError(TranscriptionError):
    """Raised when the inference engine or recognizer process cannot start."""

    kind = "engine_unavailable"


class EngineInferenceError(TranscriptionError):
    """Raised when the in-process engine fails during inference."""

    kind = "engine_inference"


class ProcessFailure(TranscriptionError):
    """Raised when the recognizer process exits with a non-zero status."""

    kind = "process_failure"

    def __init__(self, returncode: int, stderr: str = "") -> None:
        super().__init__(f"recognizer exited with code {returncode}: {stderr.strip()}")
        self.returncode = returncode
        self.stderr = stderr
