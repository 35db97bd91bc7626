from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect

from common.config import ASRSettings
from common.schemas import (
    ClientMessageType,
    ErrorMessage,
    ProgressMessage,
    SpeechToTextModel,
    StartMessage,
    TranscribeResponse,
    TranscriptCompleteMessage,
)
from asr_service.errors import (
    ConversionError,
    EngineInferenceError,
    EngineUnavailableError,
    FormatProbeError,
    InputReadError,
    ProcessFailure,
    TranscriptionError,
)
from asr_service.models import StreamAudioInput, TranscriberOptions
from asr_service.session import SessionRegistry
from asr_service.transcriber import create_transcriber

logger = logging.getLogger(__name__)

settings = ASRSettings()
app = FastAPI(title="ASR Service")
sessions = SessionRegistry(max_sessions=settings.max_sessions)

_STATUS_CODES = {
    InputReadError: 422,
    FormatProbeError: 422,
    ConversionError: 422,
    EngineUnavailableError: 503,
    ProcessFailure: 502,
    EngineInferenceError: 502,
}


@app.get("/health")
async def health():
    return {"status": "ok", "active_sessions": sessions.active_count, "streams": sessions.stream_ids}


async def _cancel(task: asyncio.Task) -> None:
    """Cancel a transcription task and collect its outcome."""
    task.cancel()
    [outcome] = await asyncio.gather(task, return_exceptions=True)
    if isinstance(outcome, Exception):
        logger.info("Abandoned transcription ended with %s: %s", type(outcome).__name__, outcome)


@app.post("/transcribe", response_model=TranscribeResponse)
async def transcribe(
    request: Request,
    backend: Optional[str] = None,
    model: Optional[SpeechToTextModel] = None,
):
    try:
        transcriber = create_transcriber(backend, model, settings)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        text = await transcriber.transcribe(StreamAudioInput(request.stream()), TranscriberOptions())
    except TranscriptionError as exc:
        logger.warning("Transcription failed (%s): %s", exc.kind, exc)
        raise HTTPException(status_code=_STATUS_CODES.get(type(exc), 500), detail=str(exc))

    return TranscribeResponse(text=text)


@app.websocket("/stream")
async def stream_endpoint(ws: WebSocket):
    await ws.accept()
    stream_id: str | None = None
    task: asyncio.Task | None = None

    try:
        # Expect start message
        raw = await ws.receive_text()
        msg = json.loads(raw)
        if msg.get("type") != ClientMessageType.start:
            await ws.send_text(ErrorMessage(stream_id="", detail="Expected start message").model_dump_json())
            await ws.close()
            return

        start = StartMessage(**msg)
        transcriber = create_transcriber(start.backend, start.model, settings)
        session = await sessions.open(
            stream_id=start.stream_id,
            backend=start.backend,
            model=start.model.value if start.model else None,
        )
        stream_id = session.stream_id
        logger.info("Transcription session started: %s", stream_id)

        async def on_progress(text: str) -> None:
            await ws.send_text(ProgressMessage(stream_id=session.stream_id, text=text).model_dump_json())

        task = asyncio.create_task(
            transcriber.transcribe(
                StreamAudioInput(session.audio_chunks()),
                TranscriberOptions(on_progress=on_progress),
            )
        )

        while True:
            message = await ws.receive()
            if message.get("type") == "websocket.disconnect":
                raise WebSocketDisconnect()

            if message.get("bytes") is not None:
                session.push_audio(message["bytes"])
            elif message.get("text") is not None:
                data = json.loads(message["text"])
                if data.get("type") == ClientMessageType.end:
                    break

        session.close_audio()
        logger.info("Audio complete for %s: %d bytes", stream_id, session.bytes_received)
        text = await task
        await ws.send_text(TranscriptCompleteMessage(stream_id=stream_id, text=text).model_dump_json())

    except WebSocketDisconnect:
        logger.info("Client disconnected: %s", stream_id)
        if task is not None:
            await _cancel(task)
    except TranscriptionError as exc:
        logger.warning("Transcription failed for %s (%s): %s", stream_id, exc.kind, exc)
        await ws.send_text(
            ErrorMessage(stream_id=stream_id or "", detail=str(exc), kind=exc.kind).model_dump_json()
        )
    except (ValueError, RuntimeError) as exc:
        logger.warning("Session error: %s", exc)
        if task is not None:
            await _cancel(task)
        await ws.send_text(ErrorMessage(stream_id=stream_id or "", detail=str(exc)).model_dump_json())
    except Exception:
        logger.exception("Unexpected error in stream endpoint")
        if task is not None:
            await _cancel(task)
    finally:
        if stream_id:
            await sessions.close(stream_id)
        logger.info("Transcription session ended: %s", stream_id or "unknown")


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=settings.host, port=settings.port)
