"""Remote inference backend over HTTP.

Posts ``{"mode", "prompt", "options"}`` as JSON to the inference URL configured
for the mode (``MEDIAFORGE_BACKEND_URLS``) and treats the response body as the
generated asset, typed by its ``Content-Type`` header.

Failure mapping
---------------
==========================================  ==========================
Condition                                   Raised
==========================================  ==========================
transport timeout, connection failure       TransientBackendError
HTTP 5xx                                    TransientBackendError
HTTP 429 (quota / rate exhausted upstream)  PermanentBackendError
other HTTP 4xx (prompt refused, bad input)  PermanentBackendError
empty body                                  PermanentBackendError
==========================================  ==========================
"""

from __future__ import annotations

import logging

import httpx

from mediaforge.core.config import MediaforgeConfig
from mediaforge.core.errors import PermanentBackendError, TransientBackendError
from mediaforge.core.jobs import JobOptions, Mode

from .base import BackendOutput, ModelBackend, ProgressReporter, backend_registry

logger = logging.getLogger(__name__)


def _describe(response: httpx.Response) -> str:
    body = response.text[:200] if response.content else ""
    return f"HTTP {response.status_code} from inference service: {body}".strip()


@backend_registry.register
class HttpBackend(ModelBackend):
    """Invoke a remote model service with one POST per attempt."""

    name = "http"
    description = "Remote inference service reached over HTTP"

    def __init__(
        self,
        mode: Mode,
        config: MediaforgeConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(mode, config)
        url = config.backend_urls.get(mode.value)
        if not url:
            raise ValueError(f"No backend URL configured for {mode.value} mode")
        self.url = url
        self._client = httpx.AsyncClient(
            timeout=config.backend_request_timeout,
            transport=transport,
        )

    async def invoke(
        self, prompt: str, options: JobOptions, report: ProgressReporter
    ) -> BackendOutput:
        payload = {"mode": self.mode.value, "prompt": prompt, "options": options.to_dict()}
        report("Submitted to inference service")

        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientBackendError(f"Inference request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientBackendError(f"Inference service unreachable: {e}") from e

        if response.status_code >= 500:
            raise TransientBackendError(_describe(response))
        if response.status_code == 429:
            raise PermanentBackendError(f"Quota exhausted: {_describe(response)}")
        if response.status_code >= 400:
            raise PermanentBackendError(_describe(response))
        if not response.content:
            raise PermanentBackendError("Inference service returned an empty body")

        mime = response.headers.get("content-type", "application/octet-stream")
        mime = mime.split(";")[0].strip()
        report("Output received")
        logger.debug("Received %d bytes (%s) from %s", len(response.content), mime, self.url)
        return BackendOutput(data=response.content, mime=mime)

    async def close(self) -> None:
        await self._client.aclose()
