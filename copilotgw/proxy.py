"""Protocol agnostic TCP relay between a public and an internal port."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from .errors import ListenerBindError
from .log import component_logger

CHUNK_SIZE = 64 * 1024


class ConnectionProxy:
    """Relays every accepted connection to a fresh connection on the target.

    Payload is never inspected, so plaintext and TLS streams behave the same.
    A client EOF is forwarded as a half-close so the target can still answer.
    The pair is torn down once the target side is done or either direction
    fails.
    """

    def __init__(
        self,
        listen_host: str,
        listen_port: int,
        target_host: str,
        target_port: int,
        *,
        logger: Optional[logging.Logger] = None,
    ):
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.target_host = target_host
        self.target_port = target_port
        self._log = component_logger("proxy", logger)
        self._server: Optional[asyncio.AbstractServer] = None
        self._closing = False
        self._connections: Set[asyncio.Task[None]] = set()
        self._pumps: Set[asyncio.Task[bool]] = set()

    @property
    def listen_address(self) -> str:
        return f"{self.listen_host}:{self.listen_port}"

    @property
    def target_address(self) -> str:
        return f"{self.target_host}:{self.target_port}"

    @property
    def bound_port(self) -> Optional[int]:
        """Actual listening port, useful when binding port 0."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> asyncio.AbstractServer:
        try:
            self._server = await asyncio.start_server(
                self._accept,
                host=self.listen_host,
                port=self.listen_port,
            )
        except OSError as exc:
            raise ListenerBindError(f"Unable to bind proxy listener {self.listen_address}: {exc}") from exc
        self._closing = False
        self._log.info("Relaying %s -> %s", self.listen_address, self.target_address)
        return self._server

    async def serve_forever(self) -> None:
        server = self._server or await self.start()
        await server.serve_forever()

    async def close(self) -> None:
        self._closing = True
        server, self._server = self._server, None
        if server is not None:
            server.close()
        # ending the pumps lets every connection task finish on its own
        for pump in list(self._pumps):
            pump.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)
        if server is not None:
            await server.wait_closed()

    async def _accept(self, client_reader: asyncio.StreamReader, client_writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        try:
            await self._relay_pair(client_reader, client_writer)
        finally:
            if task is not None:
                self._connections.discard(task)

    async def _relay_pair(self, client_reader: asyncio.StreamReader, client_writer: asyncio.StreamWriter) -> None:
        peer = client_writer.get_extra_info("peername")
        try:
            target_reader, target_writer = await asyncio.open_connection(self.target_host, self.target_port)
        except OSError as exc:
            self._log.warning("Connection to %s failed for %s: %s", self.target_address, peer, exc)
            await _close_writer(client_writer)
            return

        if self._closing:
            await _close_writer(target_writer)
            await _close_writer(client_writer)
            return

        self._log.debug("Opened relay %s -> %s", peer, self.target_address)
        upstream = asyncio.create_task(self._pump(client_reader, target_writer))
        downstream = asyncio.create_task(self._pump(target_reader, client_writer))
        pending = {upstream, downstream}
        self._pumps.update(pending)
        try:
            while downstream in pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if upstream in done and not _ended_cleanly(upstream):
                    break
        finally:
            for pump in pending:
                pump.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._pumps.difference_update((upstream, downstream))
            await _close_writer(target_writer)
            await _close_writer(client_writer)
        self._log.debug("Closed relay %s -> %s", peer, self.target_address)

    async def _pump(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> bool:
        """Copy ``reader`` into ``writer``; ``True`` when it ended on a clean EOF."""
        try:
            while True:
                data = await reader.read(CHUNK_SIZE)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except (ConnectionError, OSError) as exc:
            self._log.debug("Relay direction ended with error: %s", exc)
            return False
        if writer.can_write_eof() and not writer.is_closing():
            try:
                writer.write_eof()
            except OSError:
                return False
        return True


def _ended_cleanly(task: asyncio.Task[bool]) -> bool:
    if task.cancelled() or task.exception() is not None:
        return False
    return task.result()


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    if not writer.is_closing():
        writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass


__all__ = ["CHUNK_SIZE", "ConnectionProxy"]
