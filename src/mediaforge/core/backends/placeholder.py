"""Offline placeholder backend.

Produces small but real artifacts for every mode without any model, so the
whole pipeline (queue, dispatch, storage, signed URLs) can run on a laptop or
in CI:

- **image** — a PNG of the requested resolution, tinted from the prompt hash,
  with the prompt drawn on it.
- **video** — an animated GIF whose frame count follows ``duration``.
- **audio** — a mono 16-bit WAV sine tone of ``duration`` seconds.
- **web** — a self-contained HTML page presenting the prompt.

Rendering is deterministic: the same prompt and options give the same bytes.
"""

from __future__ import annotations

import asyncio
import hashlib
import html
import io
import math
import struct
import textwrap
import wave

from PIL import Image, ImageDraw

from mediaforge.core.errors import PermanentBackendError
from mediaforge.core.jobs import JobOptions, Mode

from .base import BackendOutput, ModelBackend, ProgressReporter, backend_registry

MAX_SIDE = 2048
VIDEO_FPS = 8
MAX_VIDEO_FRAMES = 96
AUDIO_RATE = 16000


def _tint(prompt: str, style: str) -> tuple[int, int, int]:
    digest = hashlib.sha256(f"{style}:{prompt}".encode()).digest()
    return digest[0], digest[1], digest[2]


def _frame(prompt: str, size: tuple[int, int], color: tuple[int, int, int]) -> Image.Image:
    image = Image.new("RGB", size, color=color)
    draw = ImageDraw.Draw(image)
    text = "\n".join(textwrap.wrap(prompt, width=max(10, size[0] // 8))[:12])
    # Contrasting ink for legibility on any tint.
    ink = (0, 0, 0) if sum(color) > 382 else (255, 255, 255)
    draw.multiline_text((8, 8), text, fill=ink)
    return image


@backend_registry.register
class PlaceholderBackend(ModelBackend):
    """Deterministic offline renderer for all four modes."""

    name = "placeholder"
    description = "Offline placeholder renderer (PNG, GIF, WAV, HTML)"

    async def invoke(
        self, prompt: str, options: JobOptions, report: ProgressReporter
    ) -> BackendOutput:
        renderer = self._renderers[self.mode]
        report(f"Rendering placeholder {self.mode.value}")
        output = await asyncio.to_thread(renderer, self, prompt, options)
        report("Placeholder ready")
        return output

    def _size(self, options: JobOptions) -> tuple[int, int]:
        try:
            width, height = options.size
        except ValueError as e:
            raise PermanentBackendError(f"Unparseable resolution: {options.resolution}") from e
        return min(max(width, 1), MAX_SIDE), min(max(height, 1), MAX_SIDE)

    def _render_image(self, prompt: str, options: JobOptions) -> BackendOutput:
        image = _frame(prompt, self._size(options), _tint(prompt, options.style))
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return BackendOutput(data=buffer.getvalue(), mime="image/png")

    def _render_video(self, prompt: str, options: JobOptions) -> BackendOutput:
        size = self._size(options)
        base = _tint(prompt, options.style)
        count = max(1, min(MAX_VIDEO_FRAMES, int((options.duration or 1) * VIDEO_FPS)))
        frames = []
        for index in range(count):
            shift = int(255 * index / count)
            color = tuple((channel + shift) % 256 for channel in base)
            frames.append(_frame(prompt, size, color))
        buffer = io.BytesIO()
        frames[0].save(
            buffer,
            format="GIF",
            save_all=True,
            append_images=frames[1:],
            duration=int(1000 / VIDEO_FPS),
            loop=0,
        )
        return BackendOutput(data=buffer.getvalue(), mime="image/gif")

    def _render_audio(self, prompt: str, options: JobOptions) -> BackendOutput:
        frequency = 220 + _tint(prompt, options.style)[0] * 2
        samples = int(AUDIO_RATE * (options.duration or 1))
        step = 2 * math.pi * frequency / AUDIO_RATE
        pcm = b"".join(struct.pack("<h", int(12000 * math.sin(step * i))) for i in range(samples))
        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wav:
            wav.setnchannels(1)
            wav.setsampwidth(2)
            wav.setframerate(AUDIO_RATE)
            wav.writeframes(pcm)
        return BackendOutput(data=buffer.getvalue(), mime="audio/wav")

    def _render_web(self, prompt: str, options: JobOptions) -> BackendOutput:
        red, green, blue = _tint(prompt, options.style)
        page = (
            "<!DOCTYPE html>\n<html>\n<head>\n<meta charset=\"utf-8\">\n"
            f"<title>{html.escape(prompt[:60])}</title>\n"
            f"<style>body{{font-family:sans-serif;background:rgb({red},{green},{blue});}}"
            "main{max-width:40em;margin:4em auto;background:#fff;padding:2em;}</style>\n"
            "</head>\n<body>\n<main>\n"
            f"<h1>{html.escape(prompt)}</h1>\n"
            f"<p>Style: {html.escape(options.style or 'default')}</p>\n"
            "</main>\n</body>\n</html>\n"
        )
        return BackendOutput(data=page.encode("utf-8"), mime="text/html")

    _renderers = {
        Mode.IMAGE: _render_image,
        Mode.VIDEO: _render_video,
        Mode.AUDIO: _render_audio,
        Mode.WEB: _render_web,
    }
