"""Fragment filters applied to backend output before it reaches the client.

Some models echo markdown fencing around FIM output even when told not to.
Which artifacts show up depends on the model in use, so filtering is
configurable and pluggable rather than a fixed rule.
"""
from __future__ import annotations

from typing import Iterable, Optional, Protocol

from .config import CompletionConfig


class ChunkFilter(Protocol):
    def apply(self, text: str) -> Optional[str]:
        """Return the text to forward, or ``None`` to suppress the fragment."""


class PassthroughFilter:
    def apply(self, text: str) -> Optional[str]:
        return text


class ArtifactFilter:
    """Suppresses bare formatting artifacts such as a lone code fence.

    A fragment whose stripped text equals one of the artifacts is dropped. The
    fragment right after a dropped one loses a single leading newline, which
    otherwise would be the line break belonging to the fence.
    """

    def __init__(self, artifacts: Iterable[str], language: Optional[str] = None):
        self.artifacts = frozenset(item.strip() for item in artifacts if item.strip())
        if language and language.strip():
            self.artifacts = self.artifacts | {language.strip()}
        self._previous_suppressed = False

    def apply(self, text: str) -> Optional[str]:
        if text.strip() in self.artifacts:
            self._previous_suppressed = True
            return None
        if self._previous_suppressed and text.startswith("\n"):
            text = text[1:]
        self._previous_suppressed = False
        return text


class FilterFactory:
    """Creates a fresh filter per request; filters carry per-stream state."""

    def __init__(self, enabled: bool = True, artifacts: Iterable[str] = (), match_request_language: bool = False):
        self.enabled = enabled
        self.artifacts = tuple(artifacts)
        self.match_request_language = match_request_language

    @classmethod
    def from_config(cls, config: CompletionConfig) -> "FilterFactory":
        return cls(
            enabled=config.filter_artifacts,
            artifacts=config.artifacts,
            match_request_language=config.match_request_language,
        )

    def create(self, language: Optional[str] = None) -> ChunkFilter:
        if not self.enabled:
            return PassthroughFilter()
        return ArtifactFilter(
            self.artifacts,
            language=language if self.match_request_language else None,
        )


__all__ = ["ArtifactFilter", "ChunkFilter", "FilterFactory", "PassthroughFilter"]
