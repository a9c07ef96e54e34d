import asyncio
from typing import List, Optional, Sequence

import pytest

from copilotgw.backends.base import BackendClient, GenerationRequest, StreamChunk
from copilotgw.config import BackendSettings
from copilotgw.errors import BackendInitError


class FakeBackend(BackendClient):
    """Replays a fixed list of fragments, optionally hanging or failing afterwards."""

    def __init__(
        self,
        chunks: Sequence[StreamChunk] = (),
        *,
        hang: bool = False,
        error: Optional[Exception] = None,
        check_error: Optional[Exception] = None,
    ):
        super().__init__(BackendSettings(model="test-model"))
        self.chunks = list(chunks)
        self.hang = hang
        self.error = error
        self.check_error = check_error
        self.requests: List[GenerationRequest] = []
        self.closed = False

    async def check(self) -> None:
        if self.check_error is not None:
            raise BackendInitError(str(self.check_error))

    async def generate_stream(self, request):
        self.requests.append(request)
        try:
            for chunk in self.chunks:
                await asyncio.sleep(0)
                yield chunk
            if self.error is not None:
                raise self.error
            if self.hang:
                await asyncio.sleep(3600)
        finally:
            self.closed = True


def fragments(*texts: str, final: bool = True) -> List[StreamChunk]:
    chunks = [StreamChunk(text=text) for text in texts]
    if final:
        chunks.append(StreamChunk(text="", final=True, done_reason="stop"))
    return chunks


@pytest.fixture
def fake_backend():
    return FakeBackend(fragments("```", "\ndef foo():", " pass"))
