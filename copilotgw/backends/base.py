from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Tuple

from ..config import BackendSettings
from ..errors import OptionsError
from ..log import component_logger

END_OF_TURN = "<|im_end|>"


def ensure_stop_marker(stop: Iterable[str], marker: str = END_OF_TURN) -> Tuple[str, ...]:
    """Deduplicate ``stop`` keeping first occurrences and make sure ``marker`` is present once."""
    seen: Dict[str, None] = {}
    for token in stop:
        seen.setdefault(token, None)
    seen.setdefault(marker, None)
    return tuple(seen)


@dataclass(frozen=True, slots=True)
class GenerationOptions:
    """Sampling parameters sent to the backend.

    Validated at construction so the backend never gets to reject them.
    """

    temperature: float
    top_p: float
    num_predict: int
    stop: Tuple[str, ...] = (END_OF_TURN,)

    def __post_init__(self) -> None:
        if not 0.0 <= self.temperature <= 2.0:
            raise OptionsError(f"temperature must be within [0, 2], got {self.temperature}")
        if not 0.0 <= self.top_p <= 1.0:
            raise OptionsError(f"top_p must be within [0, 1], got {self.top_p}")
        if self.num_predict < 1:
            raise OptionsError(f"num_predict must be positive, got {self.num_predict}")
        if self.stop.count(END_OF_TURN) != 1:
            raise OptionsError(f"stop set must contain {END_OF_TURN} exactly once")

    @classmethod
    def build(
        cls,
        *,
        temperature: float,
        top_p: float,
        requested_tokens: Optional[int],
        ceiling: int,
        stop: Iterable[str] = (),
    ) -> "GenerationOptions":
        if requested_tokens is None or requested_tokens <= 0:
            num_predict = ceiling
        else:
            num_predict = min(requested_tokens, ceiling)
        return cls(
            temperature=temperature,
            top_p=top_p,
            num_predict=num_predict,
            stop=ensure_stop_marker(stop),
        )

    def as_backend_options(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "stop": list(self.stop),
            "num_predict": self.num_predict,
        }


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    model: str
    prompt: str
    system: str
    options: GenerationOptions
    keep_alive: Optional[str] = None


@dataclass(frozen=True, slots=True)
class StreamChunk:
    """One incremental fragment of backend output."""

    text: str
    final: bool = False
    done_reason: Optional[str] = None
    metrics: Dict[str, int] = field(default_factory=dict)


class BackendClient:
    """Abstract base class for streaming generation backends."""

    def __init__(self, definition: BackendSettings, *, logger: Optional[logging.Logger] = None):
        self.definition = definition
        self._log = component_logger(f"backends.{definition.type}", logger)

    @property
    def model(self) -> str:
        return self.definition.model

    async def check(self) -> None:
        """Verify the backend is reachable; raise ``BackendInitError`` otherwise."""
        raise NotImplementedError

    def generate_stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        """Issue one streaming generate call and yield its fragments in order."""
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release connections; must tolerate repeated calls."""
        return None


__all__ = [
    "BackendClient",
    "END_OF_TURN",
    "GenerationOptions",
    "GenerationRequest",
    "StreamChunk",
    "ensure_stop_marker",
]
