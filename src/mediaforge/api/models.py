"""Pydantic request models for the MediaForge API.

These models define the JSON schema of the request bodies.  FastAPI uses
them for structural validation and OpenAPI documentation; semantic rules
(prompt length, resolution bounds, duration required for video and audio)
are enforced by the orchestrator so that every caller gets the same checks.

Models
------
GenerateOptions
    The ``options`` object of ``POST /api/generate``.
GenerateRequest
    Payload for ``POST /api/generate``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from mediaforge.core.jobs import JobOptions, Mode
from mediaforge.core.orchestrator import GenerationRequest


class GenerateOptions(BaseModel):
    """Rendering options.

    Attributes:
        style: Free-form style hint, e.g. ``"minimal"``.
        resolution: ``"<width>x<height>"``, e.g. ``"512x512"``.
        duration: Length in seconds.  Required for video and audio.
    """

    style: str = Field(default="", max_length=200, description="Style hint (e.g. 'minimal').")
    resolution: str = Field(default="512x512", description="Output size as '<W>x<H>'.")
    duration: float | None = Field(
        default=None,
        description="Length in seconds (required for video and audio).",
    )

    def to_job_options(self) -> JobOptions:
        return JobOptions(style=self.style, resolution=self.resolution, duration=self.duration)


class GenerateRequest(BaseModel):
    """Request body for the ``POST /api/generate`` endpoint.

    Attributes:
        mode: One of ``image``, ``video``, ``audio`` or ``web``.
        prompt: What to generate.
        options: Rendering options.
    """

    mode: Mode = Field(..., description="Generation mode: image, video, audio or web.")
    prompt: str = Field(..., description="Prompt text.")
    options: GenerateOptions = Field(default_factory=GenerateOptions)

    def to_generation_request(self, user_id: str) -> GenerationRequest:
        return GenerationRequest(
            mode=self.mode,
            prompt=self.prompt,
            options=self.options.to_job_options(),
            user_id=user_id,
        )
