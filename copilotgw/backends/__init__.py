from __future__ import annotations

import logging
from typing import Dict, Optional, Type

from ..config import BackendSettings
from ..errors import BackendInitError
from .base import BackendClient, GenerationOptions, GenerationRequest, StreamChunk
from .ollama import OllamaBackend


_BACKEND_TYPES: Dict[str, Type[BackendClient]] = {
    "ollama": OllamaBackend,
}


def create_backend(definition: BackendSettings, *, logger: Optional[logging.Logger] = None) -> BackendClient:
    backend_type = definition.type.lower()
    try:
        cls = _BACKEND_TYPES[backend_type]
    except KeyError as exc:
        raise BackendInitError(f"Unknown backend type: {definition.type}") from exc
    return cls(definition, logger=logger)


__all__ = [
    "BackendClient",
    "GenerationOptions",
    "GenerationRequest",
    "StreamChunk",
    "create_backend",
]
