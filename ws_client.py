import asyncio
import json
import sys
import uuid
from pathlib import Path

import websockets


async def stream_file(path, uri="ws://localhost:8001/stream", backend=None, model=None):
    stream_id = f"cli-{uuid.uuid4().hex[:8]}"
    async with websockets.connect(uri, close_timeout=2) as ws:
        await ws.send(json.dumps({
            "type": "start",
            "stream_id": stream_id,
            "backend": backend,
            "model": model,
        }))
        print(f"Sent start ({stream_id})")

        data = Path(path).read_bytes()
        chunk_size = 64 * 1024
        total_chunks = (len(data) + chunk_size - 1) // chunk_size
        for i in range(0, len(data), chunk_size):
            await ws.send(data[i:i + chunk_size])
            print(f"Sent chunk {i // chunk_size + 1}/{total_chunks}")

        await ws.send(json.dumps({"type": "end", "stream_id": stream_id}))
        print("Sent end, waiting...\n")

        async for msg in ws:
            resp = json.loads(msg)
            if resp.get("type") == "progress":
                if resp["text"]:
                    print(resp["text"])
            else:
                print(json.dumps(resp, indent=2))
            if resp.get("type") in ("transcript_complete", "error"):
                break

    print("\nDone.")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: python ws_client.py AUDIO_FILE [BACKEND] [MODEL]")
        sys.exit(2)
    path = sys.argv[1]
    backend = sys.argv[2] if len(sys.argv) > 2 else None
    model = sys.argv[3] if len(sys.argv) > 3 else None
    try:
        asyncio.run(stream_file(path, backend=backend, model=model))
    except websockets.exceptions.ConnectionClosedError:
        pass
