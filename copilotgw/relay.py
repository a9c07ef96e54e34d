"""Streaming completion relay.

A completion request walks through ``RECEIVED -> BUILDING -> STREAMING`` and
ends in ``COMPLETED``, ``CANCELLED`` or ``FAILED``. Errors before the first
response byte surface as HTTP status codes (``FAILED``). Once streaming has
started the status is committed, so a deadline, a client disconnect or a
backend failure can only be reported in-band with a synthetic terminal record
(``CANCELLED``). Nothing in here retries.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional

from .backends.base import BackendClient, GenerationOptions, GenerationRequest, StreamChunk
from .config import Settings
from .errors import (
    BackendError,
    CopilotGatewayError,
    DecodeError,
    OptionsError,
    StreamCancelled,
    StreamTimeout,
    TemplateError,
)
from .filters import ChunkFilter, FilterFactory
from .log import component_logger, redact_prompt
from .prompt import PromptBuilder
from .sse import encode_record

DisconnectProbe = Callable[[], Awaitable[bool]]


class RelayState(enum.Enum):
    RECEIVED = "received"
    BUILDING = "building"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


_TRANSITIONS = {
    RelayState.RECEIVED: {RelayState.BUILDING, RelayState.FAILED},
    RelayState.BUILDING: {RelayState.STREAMING, RelayState.FAILED},
    RelayState.STREAMING: {RelayState.COMPLETED, RelayState.CANCELLED},
    RelayState.COMPLETED: set(),
    RelayState.CANCELLED: set(),
    RelayState.FAILED: set(),
}

TERMINAL_STATES = frozenset({RelayState.COMPLETED, RelayState.CANCELLED, RelayState.FAILED})


@dataclass(slots=True)
class CompletionExtra:
    """Windowing hints sent by the client. Accepted but not used."""

    language: str = ""
    next_indent: int = 0
    prompt_tokens: int = 0
    suffix_tokens: int = 0
    trim_by_indentation: bool = False


@dataclass(slots=True)
class CompletionRequest:
    prompt: str = ""
    suffix: str = ""
    max_tokens: Optional[int] = None
    temperature: float = 0.0
    top_p: float = 1.0
    n: int = 1
    stop: List[str] = field(default_factory=list)
    stream: bool = True
    extra: CompletionExtra = field(default_factory=CompletionExtra)

    @property
    def language(self) -> str:
        return self.extra.language


def _typed(payload: Mapping[str, Any], key: str, kinds: tuple, default: Any) -> Any:
    value = payload.get(key)
    if value is None:
        return default
    # bool is an int subclass; only accept it where bool is asked for
    if isinstance(value, bool) and bool not in kinds:
        raise DecodeError(f"Field '{key}' has invalid type bool")
    if not isinstance(value, kinds):
        raise DecodeError(f"Field '{key}' has invalid type {type(value).__name__}")
    return value


def _decode_extra(raw: Any) -> CompletionExtra:
    if raw is None:
        return CompletionExtra()
    if not isinstance(raw, Mapping):
        raise DecodeError("Field 'extra' must be an object")
    return CompletionExtra(
        language=_typed(raw, "language", (str,), ""),
        next_indent=_typed(raw, "next_indent", (int,), 0),
        prompt_tokens=_typed(raw, "prompt_tokens", (int,), 0),
        suffix_tokens=_typed(raw, "suffix_tokens", (int,), 0),
        trim_by_indentation=_typed(raw, "trim_by_indentation", (bool,), False),
    )


def decode_request(body: bytes) -> CompletionRequest:
    """Decode a JSON completion request body or raise :class:`DecodeError`."""
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"Request body is not valid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise DecodeError("Request body must be a JSON object")

    stop = _typed(payload, "stop", (list, str), [])
    if isinstance(stop, str):
        stop = [stop]
    if not all(isinstance(item, str) for item in stop):
        raise DecodeError("Field 'stop' must be a list of strings")

    temperature = float(_typed(payload, "temperature", (int, float), 0.0))
    top_p = float(_typed(payload, "top_p", (int, float), 1.0))
    if not 0.0 <= temperature <= 2.0:
        raise DecodeError(f"temperature out of range: {temperature}")
    if not 0.0 <= top_p <= 1.0:
        raise DecodeError(f"top_p out of range: {top_p}")

    return CompletionRequest(
        prompt=_typed(payload, "prompt", (str,), ""),
        suffix=_typed(payload, "suffix", (str,), ""),
        max_tokens=_typed(payload, "max_tokens", (int,), None),
        temperature=temperature,
        top_p=top_p,
        n=_typed(payload, "n", (int,), 1),
        stop=list(stop),
        stream=_typed(payload, "stream", (bool,), True),
        extra=_decode_extra(payload.get("extra")),
    )


class CompletionGate:
    """One-shot latch; only the first ``fire`` call reports success."""

    __slots__ = ("_fired",)

    def __init__(self) -> None:
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def fire(self) -> bool:
        if self._fired:
            return False
        self._fired = True
        return True


class CompletionSession:
    """Per-request state: the generation call, the filter and the gate."""

    def __init__(
        self,
        request: CompletionRequest,
        *,
        model: str,
        logger: logging.Logger,
    ):
        self.request = request
        self.model = model
        self.state = RelayState.RECEIVED
        self.gate = CompletionGate()
        self.generation: Optional[GenerationRequest] = None
        self.chunk_filter: Optional[ChunkFilter] = None
        self.records_emitted = 0
        self._started_ns = time.monotonic_ns()
        self._log = logger

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def elapsed_ns(self) -> int:
        return time.monotonic_ns() - self._started_ns

    def transition(self, target: RelayState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal relay transition {self.state.value} -> {target.value}")
        self._log.debug("Relay state %s -> %s", self.state.value, target.value)
        self.state = target

    def envelope(self, text: str, finish_reason: Optional[str] = None) -> Dict[str, Any]:
        choice: Dict[str, Any] = {"text": text, "index": 0}
        if finish_reason:
            choice["finish_reason"] = finish_reason
        return {
            "id": str(uuid.uuid4()),
            "created": int(time.time()),
            "choices": [choice],
        }

    def accept(self, chunk: StreamChunk) -> Optional[Dict[str, Any]]:
        """Filter one backend fragment into an envelope.

        Returns ``None`` for suppressed fragments and for every call after the
        completion gate fired.
        """
        if self.gate.fired or self.finished:
            return None
        if self.chunk_filter is None:
            raise RuntimeError("Session was not prepared")
        text = self.chunk_filter.apply(chunk.text)
        record = None
        if text is not None:
            finish_reason = (chunk.done_reason or "stop") if chunk.final else None
            record = self.envelope(text, finish_reason)
            self.records_emitted += 1
        if chunk.final and self.gate.fire():
            self.transition(RelayState.COMPLETED)
        return record

    def cancel(self, reason: str) -> Optional[Dict[str, Any]]:
        """Produce the synthetic terminal record, at most once."""
        if self.gate.fired or self.finished:
            return None
        self.gate.fire()
        self.transition(RelayState.CANCELLED)
        record = self.envelope("", finish_reason=reason)
        record["chunk"] = {
            "model": self.model,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "response": "",
            "done": True,
            "context": [],
            "total_duration": self.elapsed_ns,
            "load_duration": 0,
            "prompt_eval_count": 0,
            "prompt_eval_duration": 0,
            "eval_count": 0,
            "eval_duration": 0,
        }
        return record


@dataclass(frozen=True, slots=True)
class RelaySettings:
    model: str
    num_predict: int = 200
    timeout_s: float = 60.0
    keep_alive: Optional[str] = None
    redact_prompts: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "RelaySettings":
        return cls(
            model=settings.backend.model,
            num_predict=settings.backend.num_predict,
            timeout_s=settings.completion.timeout_s,
            keep_alive=settings.backend.keep_alive,
            redact_prompts=settings.logging.redact_prompts,
        )


def _cancel_reason(exc: CopilotGatewayError) -> str:
    if isinstance(exc, StreamTimeout):
        return "timeout"
    if isinstance(exc, StreamCancelled):
        return "cancelled"
    return "error"


class CompletionRelay:
    """Turns Copilot style completion requests into one backend stream.

    Holds only static configuration; every request gets its own
    :class:`CompletionSession`.
    """

    def __init__(
        self,
        backend: BackendClient,
        prompt_builder: PromptBuilder,
        settings: RelaySettings,
        *,
        filters: Optional[FilterFactory] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.backend = backend
        self.prompt_builder = prompt_builder
        self.settings = settings
        self.filters = filters or FilterFactory(enabled=False)
        self._log = component_logger("relay", logger)

    def decode(self, body: bytes) -> CompletionRequest:
        try:
            return decode_request(body)
        except DecodeError as exc:
            self._log.error("Failed to decode request: %s", exc)
            raise

    def prepare(self, request: CompletionRequest) -> CompletionSession:
        """Build prompts and options; raises before anything is written."""
        session = CompletionSession(request, model=self.settings.model, logger=self._log)
        session.transition(RelayState.BUILDING)
        try:
            system = self.prompt_builder.build_system_prompt(request.language)
            prompt = self.prompt_builder.build_task_prompt(request.prompt, request.suffix, request.language)
            options = GenerationOptions.build(
                temperature=request.temperature,
                top_p=request.top_p,
                requested_tokens=request.max_tokens,
                ceiling=self.settings.num_predict,
                stop=request.stop,
            )
        except (TemplateError, OptionsError):
            session.transition(RelayState.FAILED)
            raise

        session.generation = GenerationRequest(
            model=self.settings.model,
            prompt=prompt,
            system=system,
            options=options,
            keep_alive=self.settings.keep_alive,
        )
        session.chunk_filter = self.filters.create(request.language)
        self._log.debug(
            "Prepared completion language=%s num_predict=%d stop=%r prompt=%s",
            request.language,
            options.num_predict,
            options.stop,
            redact_prompt(prompt, self.settings.redact_prompts),
        )
        return session

    async def _records(
        self,
        session: CompletionSession,
        is_disconnected: Optional[DisconnectProbe],
    ) -> AsyncIterator[Dict[str, Any]]:
        if session.generation is None:
            raise RuntimeError("Session was not prepared")
        session.transition(RelayState.STREAMING)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.timeout_s

        async with aclosing(self.backend.generate_stream(session.generation)) as chunks:
            iterator = chunks.__aiter__()
            while not session.finished:
                if is_disconnected is not None and await is_disconnected():
                    raise StreamCancelled("Client disconnected")
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise StreamTimeout(f"No final fragment within {self.settings.timeout_s}s")
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
                except asyncio.TimeoutError as exc:
                    raise StreamTimeout(f"No final fragment within {self.settings.timeout_s}s") from exc
                except StopAsyncIteration as exc:
                    raise BackendError("Backend stream ended without a final fragment") from exc
                self._log.debug("Chunk generated: %r final=%s", chunk.text, chunk.final)
                record = session.accept(chunk)
                if record is not None:
                    yield record

    async def stream(
        self,
        session: CompletionSession,
        *,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> AsyncIterator[bytes]:
        """Relay the backend stream as event records, always ending cleanly."""
        try:
            async with aclosing(self._records(session, is_disconnected)) as records:
                async for record in records:
                    yield encode_record(record)
        except (StreamTimeout, StreamCancelled, BackendError) as exc:
            self._log.warning("Generator ended with error: %s", exc)
            terminal = session.cancel(_cancel_reason(exc))
            if terminal is not None:
                yield encode_record(terminal)
            return
        except (asyncio.CancelledError, GeneratorExit):
            # the response was torn down; nothing can be written any more
            if session.state is RelayState.STREAMING:
                session.cancel("cancelled")
                self._log.info("Completion abandoned by the client after %d records", session.records_emitted)
            raise
        self._log.info(
            "Completion finished with %d records in %.3fs",
            session.records_emitted,
            session.elapsed_ns / 1e9,
        )

    async def complete(self, session: CompletionSession) -> Dict[str, Any]:
        """Non-streaming variant: aggregate all accepted text into one envelope."""
        parts: List[str] = []
        finish_reason: Optional[str] = None
        try:
            async with aclosing(self._records(session, None)) as records:
                async for record in records:
                    choice = record["choices"][0]
                    parts.append(choice["text"])
                    finish_reason = choice.get("finish_reason") or finish_reason
        except (StreamTimeout, BackendError) as exc:
            self._log.warning("Completion failed: %s", exc)
            session.cancel(_cancel_reason(exc))
            raise
        return session.envelope("".join(parts), finish_reason or "stop")


__all__ = [
    "CompletionExtra",
    "CompletionGate",
    "CompletionRelay",
    "CompletionRequest",
    "CompletionSession",
    "RelaySettings",
    "RelayState",
    "TERMINAL_STATES",
    "decode_request",
]
