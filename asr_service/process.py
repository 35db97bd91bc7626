from __future__ import annotations

from enum import Enum
from typing import Optional

from asr_service.errors import ProcessFailure
from asr_service.models import TranscriberOptions
from asr_service.parser import parse_lines, segments_text
from asr_service.transcriber import notify_progress


class RecognizerState(str, Enum):
    starting = "starting"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class RecognizerRun:
    """Output bookkeeping for one recognizer process.

    STARTING -> RUNNING -> SUCCEEDED | FAILED. Every stdout chunk fed while
    RUNNING is accumulated and produces exactly one progress notification
    carrying the text parsed from that chunk alone.
    """

    def __init__(self, options: Optional[TranscriberOptions] = None):
        self.options = options
        self.state = RecognizerState.starting
        self.error: Optional[BaseException] = None
        self._stdout: list[str] = []
        self._stderr: list[str] = []

    @property
    def stdout(self) -> str:
        return "".join(self._stdout)

    @property
    def stderr(self) -> str:
        return "".join(self._stderr)

    def _transition(self, allowed: tuple[RecognizerState, ...], target: RecognizerState) -> None:
        if self.state not in allowed:
            raise RuntimeError(f"Cannot move recognizer run from {self.state.value} to {target.value}")
        self.state = target

    def start(self) -> None:
        self._transition((RecognizerState.starting,), RecognizerState.running)

    async def feed(self, chunk: str) -> str:
        self._transition((RecognizerState.running,), RecognizerState.running)
        self._stdout.append(chunk)
        text = segments_text(parse_lines(chunk))
        await notify_progress(self.options, text)
        return text

    def add_stderr(self, text: str) -> None:
        self._stderr.append(text)

    def finish(self, returncode: int) -> str:
        """Close the run; returns the raw stdout or raises ProcessFailure."""
        if returncode != 0:
            failure = ProcessFailure(returncode, self.stderr)
            self.fail(failure)
            raise failure
        self._transition((RecognizerState.running,), RecognizerState.succeeded)
        return self.stdout

    def fail(self, error: BaseException) -> None:
        self._transition((RecognizerState.starting, RecognizerState.running), RecognizerState.failed)
        self.error = error
