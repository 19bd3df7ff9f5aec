"""Local diffusers text-to-image backend.

Runs a HuggingFace diffusers pipeline in-process for image mode.  ``torch``
and ``diffusers`` are imported lazily on first use, so the rest of the
package works without them installed (``pip install mediaforge[diffusers]``).

Key Behaviour
-------------
- **Lazy loading** — the pipeline loads on the first job, inside a worker
  thread, never at startup.
- **Turbo enforcement** — models whose id contains ``"turbo"`` run with
  ``guidance_scale`` 0.0.
- **Deterministic seeds** — the seed is derived from the prompt and style, so
  the same request reproduces the same image.
- **Progress** — the pipeline's step-end callback relays ``Step i/n`` from the
  inference thread back to the event loop.
- **Abort** — a running pipeline cannot be interrupted; if the job is
  cancelled the dispatcher discards the result.

Memory is released in :meth:`DiffusersImageBackend.close` (garbage
collection plus ``torch.cuda.empty_cache()`` when CUDA is available).
"""

from __future__ import annotations

import asyncio
import gc
import hashlib
import io
import logging
import threading

from mediaforge.core.config import MediaforgeConfig
from mediaforge.core.errors import PermanentBackendError, TransientBackendError
from mediaforge.core.jobs import JobOptions, Mode

from .base import BackendOutput, ModelBackend, ProgressReporter, backend_registry

logger = logging.getLogger(__name__)

_DTYPE_MAP: dict | None = None


def _get_dtype_map() -> dict:
    """Return the dtype string -> ``torch.dtype`` mapping, importing torch lazily."""
    global _DTYPE_MAP
    if _DTYPE_MAP is None:
        import torch

        _DTYPE_MAP = {
            "bfloat16": torch.bfloat16,
            "float16": torch.float16,
            "float32": torch.float32,
        }
    return _DTYPE_MAP


@backend_registry.register
class DiffusersImageBackend(ModelBackend):
    """In-process diffusers pipeline for image jobs."""

    name = "diffusers"
    description = "Local HuggingFace diffusers text-to-image pipeline"

    def __init__(self, mode: Mode, config: MediaforgeConfig) -> None:
        if mode is not Mode.IMAGE:
            raise ValueError(f"The diffusers backend only serves image mode, not {mode.value}")
        super().__init__(mode, config)
        self._pipeline = None
        # One pipeline, one inference at a time across the image worker pool.
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._pipeline is not None

    def _load(self) -> None:
        if self._pipeline is not None:
            return

        import torch
        from diffusers import AutoPipelineForText2Image

        torch_dtype = _get_dtype_map().get(self.config.torch_dtype, torch.bfloat16)
        model_id = self.config.diffusers_model_id
        logger.info(
            "Loading model '%s' (dtype=%s, device=%s).",
            model_id,
            self.config.torch_dtype,
            self.config.device,
        )
        try:
            pipeline = AutoPipelineForText2Image.from_pretrained(model_id, torch_dtype=torch_dtype)
            self._pipeline = pipeline.to(self.config.device)
        except Exception as e:
            self._pipeline = None
            logger.exception("Failed to load model '%s'.", model_id)
            raise PermanentBackendError(f"Could not load model {model_id}: {e}") from e
        logger.info("Model '%s' loaded successfully.", model_id)

    def _generate(self, prompt: str, options: JobOptions, report: ProgressReporter) -> bytes:
        import torch

        with self._lock:
            self._load()
            width, height = options.size
            steps = self.config.diffusers_steps
            guidance = 0.0 if "turbo" in self.config.diffusers_model_id.lower() else 7.5
            digest = hashlib.sha256(f"{options.style}:{prompt}".encode()).digest()
            seed = int.from_bytes(digest[:4], "big")
            generator = torch.Generator(device=self.config.device).manual_seed(seed)
            full_prompt = f"{prompt}, {options.style}" if options.style else prompt

            def on_step_end(pipeline, step, timestep, callback_kwargs):
                report(f"Step {step + 1}/{steps}")
                return callback_kwargs

            try:
                output = self._pipeline(
                    prompt=full_prompt,
                    width=width,
                    height=height,
                    num_inference_steps=steps,
                    guidance_scale=guidance,
                    generator=generator,
                    callback_on_step_end=on_step_end,
                )
            except torch.cuda.OutOfMemoryError as e:
                raise TransientBackendError(f"CUDA out of memory: {e}") from e

        buffer = io.BytesIO()
        output.images[0].save(buffer, format="PNG")
        return buffer.getvalue()

    async def invoke(
        self, prompt: str, options: JobOptions, report: ProgressReporter
    ) -> BackendOutput:
        loop = asyncio.get_running_loop()

        def threadsafe_report(text: str) -> None:
            loop.call_soon_threadsafe(report, text)

        report("Waiting for image pipeline")
        data = await asyncio.to_thread(self._generate, prompt, options, threadsafe_report)
        return BackendOutput(data=data, mime="image/png")

    async def close(self) -> None:
        if self._pipeline is None:
            return
        logger.info("Unloading model '%s'.", self.config.diffusers_model_id)
        self._pipeline = None
        gc.collect()
        try:
            import torch

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
        except ImportError:
            pass
