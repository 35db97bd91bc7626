import asyncio
import types

import numpy as np
import pytest

from asr_service import whisper_cli
from asr_service.batch import BatchTranscriber, join_results
from asr_service.errors import (
    EngineInferenceError,
    EngineUnavailableError,
    InputReadError,
    ProcessFailure,
)
from asr_service.models import FileAudioInput, StreamAudioInput, TranscriberOptions
from asr_service.process import RecognizerRun, RecognizerState
from asr_service.transcriber import create_transcriber, notify_progress
from asr_service.whisper_cli import WhisperCliTranscriber
from common.config import ASRSettings
from common.schemas import SpeechToTextModel


async def _stream(chunks):
    for chunk in chunks:
        yield chunk


def _samples(n=4):
    return np.zeros(n, dtype=np.float32).tobytes()


class ProgressRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, text):
        self.calls.append(text)


class TestNotifyProgress:
    @pytest.mark.asyncio
    async def test_no_options_or_callback(self):
        await notify_progress(None, "x")
        await notify_progress(TranscriberOptions(), "x")

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self):
        seen = []

        async def on_progress(text):
            await asyncio.sleep(0)
            seen.append(text)

        await notify_progress(TranscriberOptions(on_progress=on_progress), "hello")
        assert seen == ["hello"]


class TestBatchTranscriber:
    @pytest.mark.asyncio
    async def test_sequence_results_are_newline_joined(self):
        calls = {}

        def inference(model, samples):
            calls["args"] = (model, len(samples))
            return [types.SimpleNamespace(text=t) for t in ("one", "two", "three")]

        progress = ProgressRecorder()
        transcriber = BatchTranscriber(SpeechToTextModel.tiny, ASRSettings(), inference=inference)
        text = await transcriber.transcribe(
            StreamAudioInput(_stream([_samples(8)])),
            TranscriberOptions(on_progress=progress),
        )

        assert text == "one\ntwo\nthree"
        assert progress.calls == ["one\ntwo\nthree"]
        assert calls["args"] == ("tiny", 8)

    @pytest.mark.asyncio
    async def test_single_result_text_used_directly(self):
        progress = ProgressRecorder()
        transcriber = BatchTranscriber(
            inference=lambda model, samples: types.SimpleNamespace(text=" as is "),
        )
        text = await transcriber.transcribe(
            StreamAudioInput(_stream([_samples()])),
            TranscriberOptions(on_progress=progress),
        )
        assert text == " as is "
        assert progress.calls == [" as is "]

    @pytest.mark.asyncio
    async def test_file_input(self, tmp_path):
        path = tmp_path / "audio.f32"
        path.write_bytes(_samples(16))
        transcriber = BatchTranscriber(inference=lambda model, samples: [types.SimpleNamespace(text=str(len(samples)))])
        assert await transcriber.transcribe(FileAudioInput(path)) == "16"

    @pytest.mark.asyncio
    async def test_empty_stream_skips_inference(self):
        def inference(model, samples):
            raise AssertionError("engine should not run")

        progress = ProgressRecorder()
        transcriber = BatchTranscriber(inference=inference)
        text = await transcriber.transcribe(StreamAudioInput(_stream([])), TranscriberOptions(on_progress=progress))
        assert text == ""
        assert progress.calls == [""]

    @pytest.mark.asyncio
    async def test_engine_error_is_wrapped(self):
        def inference(model, samples):
            raise RuntimeError("CUDA out of memory")

        progress = ProgressRecorder()
        transcriber = BatchTranscriber(inference=inference)
        with pytest.raises(EngineInferenceError, match="CUDA out of memory"):
            await transcriber.transcribe(StreamAudioInput(_stream([_samples()])), TranscriberOptions(on_progress=progress))
        assert progress.calls == []

    @pytest.mark.asyncio
    async def test_engine_unavailable_propagates(self):
        def inference(model, samples):
            raise EngineUnavailableError("no weights")

        transcriber = BatchTranscriber(inference=inference)
        with pytest.raises(EngineUnavailableError):
            await transcriber.transcribe(StreamAudioInput(_stream([_samples()])))

    def test_join_results(self):
        assert join_results(types.SimpleNamespace(text="solo")) == "solo"
        assert join_results([]) == ""


class TestCreateTranscriber:
    def test_batch(self):
        transcriber = create_transcriber("batch", "tiny", ASRSettings())
        assert isinstance(transcriber, BatchTranscriber)
        assert transcriber.model is SpeechToTextModel.tiny

    def test_whisper_cli(self, tmp_path):
        settings = ASRSettings(whisper_model_path=tmp_path / "ggml.bin")
        transcriber = create_transcriber("whisper-cli", None, settings)
        assert isinstance(transcriber, WhisperCliTranscriber)
        assert transcriber.model is SpeechToTextModel.large_v3_turbo

    def test_auto_prefers_whisper_cli_when_model_configured(self, tmp_path):
        assert isinstance(
            create_transcriber("auto", None, ASRSettings(whisper_model_path=tmp_path)),
            WhisperCliTranscriber,
        )
        assert isinstance(create_transcriber("auto", None, ASRSettings()), BatchTranscriber)

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            create_transcriber("wav2vec", None, ASRSettings())

    def test_unknown_model(self):
        with pytest.raises(ValueError):
            create_transcriber("batch", "gigantic", ASRSettings())


class TestRecognizerRun:
    @pytest.mark.asyncio
    async def test_success_path(self):
        progress = ProgressRecorder()
        run = RecognizerRun(TranscriberOptions(on_progress=progress))
        assert run.state is RecognizerState.starting
        run.start()
        assert run.state is RecognizerState.running

        assert await run.feed("[00:00:00.000 --> 00:00:01.000]  -Hi\n") == "Hi"
        assert await run.feed("loading model...\n") == ""
        assert run.state is RecognizerState.running

        assert run.finish(0) == "[00:00:00.000 --> 00:00:01.000]  -Hi\nloading model...\n"
        assert run.state is RecognizerState.succeeded
        assert progress.calls == ["Hi", ""]

    @pytest.mark.asyncio
    async def test_non_zero_exit_fails(self):
        run = RecognizerRun()
        run.start()
        run.add_stderr("error: failed to open ")
        run.add_stderr("audio.wav")
        with pytest.raises(ProcessFailure) as exc_info:
            run.finish(2)
        assert exc_info.value.returncode == 2
        assert exc_info.value.stderr == "error: failed to open audio.wav"
        assert run.state is RecognizerState.failed
        assert run.error is exc_info.value

    @pytest.mark.asyncio
    async def test_feed_requires_running(self):
        run = RecognizerRun()
        with pytest.raises(RuntimeError):
            await run.feed("too early")
        run.start()
        run.finish(0)
        with pytest.raises(RuntimeError):
            await run.feed("too late")

    def test_cannot_fail_after_success(self):
        run = RecognizerRun()
        run.start()
        run.finish(0)
        with pytest.raises(RuntimeError):
            run.fail(ValueError("late"))


class FakeStream:
    def __init__(self, chunks):
        self._chunks = list(chunks)

    async def read(self, n=-1):
        if n == -1:
            data = b"".join(self._chunks)
            self._chunks.clear()
            return data
        return self._chunks.pop(0) if self._chunks else b""


class FakeProcess:
    def __init__(self, stdout_chunks, stderr=b"", returncode=0):
        self.stdout = FakeStream(stdout_chunks)
        self.stderr = FakeStream([stderr])
        self.returncode = None
        self.killed = False
        self._exit = returncode

    async def wait(self):
        self.returncode = self._exit
        return self._exit

    def kill(self):
        self.killed = True


class TestWhisperCliTranscriber:
    @pytest.fixture
    def settings(self, tmp_path):
        model = tmp_path / "ggml-large-v3-turbo.bin"
        model.write_bytes(b"ggml")
        work = tmp_path / "work"
        work.mkdir()
        return ASRSettings(whisper_model_path=model, temp_dir=work, whisper_cli_path="/opt/whisper-cli")

    @pytest.fixture
    def converted(self, monkeypatch):
        """Pretend every input needs conversion; records the converted paths."""
        paths = []

        async def fake_ensure_wav_format(path, ffprobe="ffprobe", ffmpeg="ffmpeg"):
            output = path.with_name(path.name + ".wav")
            output.write_bytes(b"RIFF")
            paths.append(output)
            return output

        monkeypatch.setattr(whisper_cli, "ensure_wav_format", fake_ensure_wav_format)
        return paths

    def _spawn(self, monkeypatch, process):
        calls = []

        async def fake_exec(*cmd, **kwargs):
            calls.append(list(cmd))
            if isinstance(process, Exception):
                raise process
            return process

        monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
        return calls

    @pytest.mark.asyncio
    async def test_progress_per_chunk_and_raw_stdout_returned(self, monkeypatch, settings, converted):
        chunks = [
            b"[00:00:00.000 --> 00:00:03.240]   -Good morning.\n",
            b"[00:00:03.240 --> 00:00:06.000]   After months\n[00:00:06.000 --> 00:00:08.000]   -\n",
        ]
        calls = self._spawn(monkeypatch, FakeProcess(chunks))
        progress = ProgressRecorder()

        text = await WhisperCliTranscriber(settings=settings).transcribe(
            StreamAudioInput(_stream([b"audio"])),
            TranscriberOptions(on_progress=progress),
        )

        assert text == b"".join(chunks).decode()
        assert progress.calls == ["Good morning.", "After months\n"]
        assert calls == [["/opt/whisper-cli", "-m", str(settings.whisper_model_path), "-f", str(converted[0])]]

    @pytest.mark.asyncio
    async def test_line_split_across_chunks_is_dropped_from_progress(self, monkeypatch, settings, converted):
        self._spawn(monkeypatch, FakeProcess([b"[00:00:00.000 --> 00:00:0", b"1.000]  hello\n"]))
        progress = ProgressRecorder()
        text = await WhisperCliTranscriber(settings=settings).transcribe(
            StreamAudioInput(_stream([b"audio"])),
            TranscriberOptions(on_progress=progress),
        )
        assert progress.calls == ["", ""]
        assert text == "[00:00:00.000 --> 00:00:01.000]  hello\n"

    @pytest.mark.asyncio
    async def test_multibyte_characters_split_across_chunks(self, monkeypatch, settings, converted):
        line = "[00:00:00.000 --> 00:00:01.000]  café\n".encode()
        split = line.index("é".encode()) + 1
        self._spawn(monkeypatch, FakeProcess([line[:split], line[split:]]))
        text = await WhisperCliTranscriber(settings=settings).transcribe(StreamAudioInput(_stream([b"a"])))
        assert text == "[00:00:00.000 --> 00:00:01.000]  café\n"

    @pytest.mark.asyncio
    async def test_temporary_files_removed_on_success(self, monkeypatch, settings, converted):
        self._spawn(monkeypatch, FakeProcess([b"ok\n"]))
        await WhisperCliTranscriber(settings=settings).transcribe(StreamAudioInput(_stream([b"audio"])))
        assert not converted[0].exists()
        assert list(settings.temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_exit_status_2_raises_process_failure(self, monkeypatch, settings, converted):
        self._spawn(monkeypatch, FakeProcess([b"partial\n"], stderr=b"error: invalid model data", returncode=2))

        with pytest.raises(ProcessFailure) as exc_info:
            await WhisperCliTranscriber(settings=settings).transcribe(StreamAudioInput(_stream([b"audio"])))

        assert exc_info.value.returncode == 2
        assert exc_info.value.stderr == "error: invalid model data"
        assert not converted[0].exists()
        assert list(settings.temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_original_file_is_left_alone(self, monkeypatch, settings, converted, tmp_path):
        source = tmp_path / "meeting.mp3"
        source.write_bytes(b"ID3")
        self._spawn(monkeypatch, FakeProcess([b"done\n"]))
        await WhisperCliTranscriber(settings=settings).transcribe(FileAudioInput(source))
        assert source.read_bytes() == b"ID3"
        assert converted[0] == tmp_path / "meeting.mp3.wav"
        assert not converted[0].exists()

    @pytest.mark.asyncio
    async def test_unconverted_input_is_not_deleted(self, monkeypatch, settings, tmp_path):
        async def already_wav(path, ffprobe="ffprobe", ffmpeg="ffmpeg"):
            return path

        monkeypatch.setattr(whisper_cli, "ensure_wav_format", already_wav)
        source = tmp_path / "ready.wav"
        source.write_bytes(b"RIFF")
        calls = self._spawn(monkeypatch, FakeProcess([b""]))
        assert await WhisperCliTranscriber(settings=settings).transcribe(FileAudioInput(source)) == ""
        assert source.exists()
        assert calls[0][-1] == str(source)

    @pytest.mark.asyncio
    async def test_missing_binary_is_engine_unavailable(self, monkeypatch, settings, converted):
        self._spawn(monkeypatch, FileNotFoundError("whisper-cli"))
        with pytest.raises(EngineUnavailableError):
            await WhisperCliTranscriber(settings=settings).transcribe(StreamAudioInput(_stream([b"audio"])))
        assert not converted[0].exists()

    @pytest.mark.asyncio
    async def test_callback_error_kills_process(self, monkeypatch, settings, converted):
        process = FakeProcess([b"[00:00:00.000 --> 00:00:01.000]  hi\n", b"more\n"])
        self._spawn(monkeypatch, process)

        def on_progress(text):
            raise RuntimeError("listener closed")

        with pytest.raises(RuntimeError, match="listener closed"):
            await WhisperCliTranscriber(settings=settings).transcribe(
                StreamAudioInput(_stream([b"audio"])),
                TranscriberOptions(on_progress=on_progress),
            )
        assert process.killed
        # the killed child was waited on
        assert process.returncode == 0

    @pytest.mark.asyncio
    async def test_cancel_while_receiving_audio_leaves_no_temp_file(self, monkeypatch, settings, converted):
        calls = self._spawn(monkeypatch, FakeProcess([b""]))
        first_written = asyncio.Event()

        async def stalled():
            yield b"audio"
            first_written.set()
            await asyncio.Event().wait()
            yield b"never"

        task = asyncio.create_task(WhisperCliTranscriber(settings=settings).transcribe(StreamAudioInput(stalled())))
        await first_written.wait()
        assert len(list(settings.temp_dir.iterdir())) == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert list(settings.temp_dir.iterdir()) == []
        assert converted == []
        assert calls == []

    @pytest.mark.asyncio
    async def test_missing_input_file_is_input_error(self, monkeypatch, settings, converted, tmp_path):
        calls = self._spawn(monkeypatch, FakeProcess([b""]))
        with pytest.raises(InputReadError):
            await WhisperCliTranscriber(settings=settings).transcribe(FileAudioInput(tmp_path / "missing.wav"))
        assert converted == []
        assert calls == []

    @pytest.mark.asyncio
    async def test_output_dump(self, monkeypatch, settings, converted, tmp_path):
        settings.output_dump_dir = tmp_path / "dump"
        self._spawn(monkeypatch, FakeProcess([b"out\n"], stderr=b"log\n"))
        await WhisperCliTranscriber(settings=settings).transcribe(StreamAudioInput(_stream([b"a"])))
        assert (tmp_path / "dump" / "whisper-cli.stdout").read_text() == "out\n"
        assert (tmp_path / "dump" / "whisper-cli.stderr").read_text() == "log\n"

    def test_model_directory_resolves_by_model_name(self, tmp_path):
        (tmp_path / "ggml-tiny.bin").write_bytes(b"ggml")
        transcriber = WhisperCliTranscriber("tiny", ASRSettings(whisper_model_path=tmp_path))
        assert transcriber.resolve_model_path() == tmp_path / "ggml-tiny.bin"

    @pytest.mark.asyncio
    async def test_unconfigured_model_path(self):
        with pytest.raises(EngineUnavailableError, match="ASR_WHISPER_MODEL_PATH"):
            await WhisperCliTranscriber(settings=ASRSettings()).transcribe(StreamAudioInput(_stream([b"a"])))

    def test_missing_model_file(self, tmp_path):
        transcriber = WhisperCliTranscriber(settings=ASRSettings(whisper_model_path=tmp_path / "nope.bin"))
        with pytest.raises(EngineUnavailableError, match="not found"):
            transcriber.resolve_model_path()
