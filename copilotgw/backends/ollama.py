from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from ollama import AsyncClient, RequestError, ResponseError

from ..config import BackendSettings
from ..errors import BackendError, BackendInitError
from .base import BackendClient, GenerationRequest, StreamChunk


class OllamaBackend(BackendClient):
    _METRIC_KEYS = (
        "total_duration",
        "load_duration",
        "prompt_eval_count",
        "prompt_eval_duration",
        "eval_count",
        "eval_duration",
    )

    def __init__(self, definition: BackendSettings, *, logger: Optional[logging.Logger] = None):
        super().__init__(definition, logger=logger)
        client_kwargs: Dict[str, Any] = {"host": definition.base_url}
        if definition.request_timeout_s is not None:
            client_kwargs["timeout"] = definition.request_timeout_s
        try:
            self._client = AsyncClient(**client_kwargs)
        except (ValueError, TypeError) as exc:
            raise BackendInitError(f"Unable to create Ollama client: {exc}") from exc

    async def check(self) -> None:
        try:
            response = await self._client.list()
        except (RequestError, ResponseError, httpx.HTTPError, ConnectionError) as exc:
            raise BackendInitError(f"Ollama is not reachable: {exc}") from exc
        available = {getattr(entry, "model", None) for entry in response.models}
        if self.model not in available:
            self._log.warning("Model %s is not available locally; Ollama will try to pull it", self.model)

    async def generate_stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "prompt": request.prompt,
            "system": request.system,
            "options": request.options.as_backend_options(),
            "stream": True,
        }
        if request.keep_alive is not None:
            kwargs["keep_alive"] = request.keep_alive

        stream = None
        try:
            stream = await self._client.generate(**kwargs)
            async for part in stream:
                yield self._to_chunk(part)
        except (RequestError, ResponseError) as exc:
            raise BackendError(f"Ollama generate error: {exc}") from exc
        except (httpx.HTTPError, ConnectionError) as exc:
            raise BackendError(f"Ollama connection error: {exc}") from exc
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def aclose(self) -> None:
        # the httpx pool of ollama.AsyncClient lives in its _client attribute
        http = getattr(self._client, "_client", None)
        if isinstance(http, httpx.AsyncClient) and not http.is_closed:
            await http.aclose()
            self._log.debug("Closed Ollama client")

    def _to_chunk(self, part: Any) -> StreamChunk:
        metrics: Dict[str, int] = {}
        for key in self._METRIC_KEYS:
            value = getattr(part, key, None)
            if value is not None:
                metrics[key] = int(value)
        return StreamChunk(
            text=getattr(part, "response", "") or "",
            final=bool(getattr(part, "done", False)),
            done_reason=getattr(part, "done_reason", None),
            metrics=metrics,
        )


__all__ = ["OllamaBackend"]
