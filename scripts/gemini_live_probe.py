"""
Utility probe for validating the Gemini Live wire format outside the session core.

Usage:
    GEMINI_API_KEY=... python scripts/gemini_live_probe.py

The script:
  * establishes a bare Gemini Live WebSocket session using GEMINI_API_KEY
  * sends the setup message (AUDIO modality, prebuilt voice) and waits for setupComplete
  * streams a synthetic 440 Hz sine wave (roughly 1.2 s) as PCM16 @ 16 kHz in 20 ms frames
  * appends any returned 24 kHz PCM16 audio to probe_output.raw until turnComplete

Convert probe_output.raw to WAV for listening:
    sox -t raw -b 16 -e signed-integer -r 24000 -c 1 probe_output.raw probe_output.wav
"""

from __future__ import annotations

import asyncio
import base64
import json
import os
import pathlib
import sys
from typing import Iterator

import numpy as np
import websockets

from colloquy.audio.convert import encode_pcm16
from colloquy.config import GEMINI_LIVE_ENDPOINT

ENDPOINT = os.environ.get("GEMINI_LIVE_URL", GEMINI_LIVE_ENDPOINT)
MODEL = os.environ.get("GEMINI_LIVE_MODEL", "gemini-2.0-flash-exp")
API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
VOICE = os.environ.get("GEMINI_LIVE_VOICE", "Fenrir")
INPUT_RATE = 16_000
BYTES_PER_SAMPLE = 2  # PCM16
FRAME_MS = 20

OUTPUT_FILE = pathlib.Path("probe_output.raw")


def require_api_key() -> str:
    if not API_KEY:
        print("GEMINI_API_KEY env var is required", file=sys.stderr)
        sys.exit(1)
    return API_KEY


def generate_tone(duration_sec: float = 1.2, freq_hz: float = 440.0, amplitude: float = 0.4) -> bytes:
    """PCM16 sine wave at INPUT_RATE."""
    t = np.arange(int(duration_sec * INPUT_RATE)) / INPUT_RATE
    return encode_pcm16(amplitude * np.sin(2 * np.pi * freq_hz * t))


def iter_frames(pcm: bytes) -> Iterator[bytes]:
    frame_size = int(INPUT_RATE * (FRAME_MS / 1000.0)) * BYTES_PER_SAMPLE
    for offset in range(0, len(pcm), frame_size):
        yield pcm[offset : offset + frame_size]


async def main() -> None:
    api_key = require_api_key()
    pcm = generate_tone()

    async with websockets.connect(f"{ENDPOINT}?key={api_key}", max_size=10 * 1024 * 1024) as ws:
        setup = {
            "setup": {
                "model": f"models/{MODEL}",
                "generation_config": {
                    "responseModalities": ["AUDIO"],
                    "speechConfig": {"voiceConfig": {"prebuiltVoiceConfig": {"voiceName": VOICE}}},
                },
                "system_instruction": {"parts": [{"text": "Please greet the caller clearly."}]},
            }
        }
        await ws.send(json.dumps(setup))
        print("sent setup")

        ack = json.loads(await ws.recv())
        if "setupComplete" not in ack:
            print("unexpected first message:", list(ack.keys()), file=sys.stderr)
            sys.exit(1)
        print("recv setupComplete")

        for frame in iter_frames(pcm):
            payload = {
                "realtimeInput": {
                    "mediaChunks": [
                        {"mimeType": f"audio/pcm;rate={INPUT_RATE}", "data": base64.b64encode(frame).decode("ascii")}
                    ]
                }
            }
            await ws.send(json.dumps(payload))
            await asyncio.sleep(FRAME_MS / 1000.0)
        print("sent tone")

        OUTPUT_FILE.unlink(missing_ok=True)
        async for message in ws:
            data = json.loads(message)
            content = data.get("serverContent") or {}
            print("recv", list(data.keys()))
            for part in (content.get("modelTurn") or {}).get("parts", []):
                inline = part.get("inlineData") or {}
                if inline.get("mimeType", "").startswith("audio/pcm"):
                    with OUTPUT_FILE.open("ab") as fh:
                        fh.write(base64.b64decode(inline["data"]))
            if content.get("turnComplete"):
                break

        print("probe finished. output audio written to", OUTPUT_FILE.resolve())


if __name__ == "__main__":
    asyncio.run(main())
