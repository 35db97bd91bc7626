from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
from pathlib import Path
from typing import Optional, Union

from common.config import ASRSettings
from common.schemas import SpeechToTextModel
from asr_service.audio_input import ensure_wav_format, materialize_to_file, remove_quietly
from asr_service.errors import EngineUnavailableError
from asr_service.models import AudioInput, TranscriberOptions
from asr_service.process import RecognizerRun

logger = logging.getLogger(__name__)


def _write_dump(dump_dir: Path, run: RecognizerRun) -> None:
    dump_dir.mkdir(parents=True, exist_ok=True)
    (dump_dir / "whisper-cli.stdout").write_text(run.stdout, encoding="utf-8")
    (dump_dir / "whisper-cli.stderr").write_text(run.stderr, encoding="utf-8")


class WhisperCliTranscriber:
    """Transcribes with whisper.cpp's ``whisper-cli``, reporting progress per stdout chunk.

    The final transcript is the recognizer's raw stdout; progress
    notifications carry the segment text parsed from each chunk.
    """

    def __init__(
        self,
        model: Union[SpeechToTextModel, str] = SpeechToTextModel.large_v3_turbo,
        settings: Optional[ASRSettings] = None,
        model_path: Optional[Path] = None,
    ):
        self.model = SpeechToTextModel(model)
        self.settings = settings or ASRSettings()
        self.model_path = model_path or self.settings.whisper_model_path

    def resolve_model_path(self) -> Path:
        """The ggml model file; a directory resolves to ``ggml-<model>.bin`` inside it."""
        if self.model_path is None:
            raise EngineUnavailableError(
                "No whisper.cpp model configured. Set ASR_WHISPER_MODEL_PATH."
            )
        path = Path(self.model_path)
        if path.is_dir():
            path = path / f"ggml-{self.model.value}.bin"
        if not path.is_file():
            raise EngineUnavailableError(f"whisper.cpp model not found: {path}")
        return path

    async def transcribe(
        self,
        audio: AudioInput,
        options: Optional[TranscriberOptions] = None,
    ) -> str:
        model_path = self.resolve_model_path()
        source: Optional[Path] = None
        created = False
        wav_path: Optional[Path] = None
        try:
            source, created = await materialize_to_file(audio, self.settings.temp_dir)
            wav_path = await ensure_wav_format(
                source,
                ffprobe=self.settings.ffprobe_path,
                ffmpeg=self.settings.ffmpeg_path,
            )
            return await self._run_recognizer(model_path, wav_path, options)
        finally:
            if wav_path is not None and wav_path != source:
                remove_quietly(wav_path)
            if created and source is not None:
                remove_quietly(source)

    async def _run_recognizer(
        self,
        model_path: Path,
        wav_path: Path,
        options: Optional[TranscriberOptions],
    ) -> str:
        run = RecognizerRun(options)
        cmd = [self.settings.whisper_cli_path, "-m", str(model_path), "-f", str(wav_path)]
        logger.info("Starting recognizer: %s", " ".join(cmd))

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            error = EngineUnavailableError(f"Cannot start {cmd[0]}: {exc}")
            run.fail(error)
            raise error from exc
        run.start()

        stderr_task = asyncio.create_task(self._read_stderr(proc, run))
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = await proc.stdout.read(self.settings.stdout_chunk_size)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    await run.feed(text)
            tail = decoder.decode(b"", final=True)
            if tail:
                await run.feed(tail)
            await stderr_task
            returncode = await proc.wait()
        except BaseException as exc:
            run.fail(exc)
            stderr_task.cancel()
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
            # reap the child and collect the stderr reader before propagating
            await asyncio.gather(stderr_task, proc.wait(), return_exceptions=True)
            raise

        logger.info("Recognizer exited with code %d", returncode)
        await self._dump_output(run)
        return run.finish(returncode)

    @staticmethod
    async def _read_stderr(proc: asyncio.subprocess.Process, run: RecognizerRun) -> None:
        data = await proc.stderr.read()
        run.add_stderr(data.decode(errors="replace"))

    async def _dump_output(self, run: RecognizerRun) -> None:
        dump_dir = self.settings.output_dump_dir
        if dump_dir is None:
            return
        try:
            await asyncio.to_thread(_write_dump, Path(dump_dir), run)
        except OSError:
            logger.warning("Failed to write recognizer output to %s", dump_dir, exc_info=True)
