from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class ASRSettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8001
    log_level: str = "INFO"
    max_sessions: int = 10

    # "auto" picks whisper-cli when a recognizer model is configured
    backend: str = "auto"
    model: str = "large-v3-turbo"
    device: str = "cpu"
    compute_type: str = "int8"
    cache_dir: Path = Path("./cache")

    whisper_cli_path: str = "whisper-cli"
    whisper_model_path: Optional[Path] = None
    stdout_chunk_size: int = 4096
    output_dump_dir: Optional[Path] = None

    ffprobe_path: str = "ffprobe"
    ffmpeg_path: str = "ffmpeg"
    temp_dir: Optional[Path] = None

    model_config = {"env_prefix": "ASR_"}
