"""Runtime wiring: HTTP and HTTPS listeners plus the public port relays."""
from __future__ import annotations

import asyncio
import logging
import ssl
from typing import List, Optional

import uvicorn
from fastapi import FastAPI

from .app import create_app
from .certs import CertificateIssuer, IssuedCertificate, build_server_ssl_context
from .config import Settings
from .errors import ListenerBindError
from .log import component_logger
from .proxy import ConnectionProxy


class GatewayRuntime:
    """Owns every long-lived unit of the process.

    Runs the plaintext and TLS uvicorn servers for the same application and,
    when enabled, two :class:`ConnectionProxy` instances relaying the fixed
    public ports to them. When any unit stops, the others are stopped too.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        app: Optional[FastAPI] = None,
        issuer: Optional[CertificateIssuer] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self._log = component_logger("runtime", logger)
        self._app = app
        self._issuer = issuer or CertificateIssuer()
        self._certificate: Optional[IssuedCertificate] = None
        self._servers: List[uvicorn.Server] = []
        self._proxies: List[ConnectionProxy] = []

    @property
    def app(self) -> FastAPI:
        if self._app is None:
            self._app = create_app(self.settings)
        return self._app

    @property
    def certificate(self) -> Optional[IssuedCertificate]:
        return self._certificate

    def ssl_context(self) -> ssl.SSLContext:
        tls = self.settings.tls
        if tls.configured:
            return build_server_ssl_context(certfile=tls.cert, keyfile=tls.key)
        if self._certificate is None:
            self._log.info("No certificate configured; issuing a self-signed one")
            self._certificate = self._issuer.issue_self_signed()
        return build_server_ssl_context(certificate=self._certificate)

    def _build_server(self, port: int, ssl_context: Optional[ssl.SSLContext] = None) -> uvicorn.Server:
        config = uvicorn.Config(
            self.app,
            host=self.settings.listen.host,
            port=port,
            log_config=None,
            log_level=self.settings.logging.level.lower(),
            access_log=self.settings.logging.access_log,
            lifespan="on",
        )
        config.load()
        if ssl_context is not None:
            # uvicorn only accepts certificate files; hand it the prepared context instead
            config.ssl = ssl_context
        return uvicorn.Server(config)

    def _build_proxies(self) -> List[ConnectionProxy]:
        proxy = self.settings.proxy
        if not proxy.enabled:
            return []
        listen = self.settings.listen
        return [
            ConnectionProxy(proxy.host, proxy.port, listen.host, listen.port),
            ConnectionProxy(proxy.host, proxy.tls_port, listen.host, listen.tls_port),
        ]

    async def serve(self) -> None:
        listen = self.settings.listen
        ssl_context = self.ssl_context()
        self._servers = [
            self._build_server(listen.port),
            self._build_server(listen.tls_port, ssl_context),
        ]
        self._proxies = self._build_proxies()

        # a relay that cannot bind is fatal before anything else starts
        try:
            for proxy in self._proxies:
                await proxy.start()
        except ListenerBindError as exc:
            self._log.critical("%s", exc)
            await self.shutdown()
            raise

        tasks = [asyncio.create_task(server.serve(), name=f"uvicorn:{server.config.port}") for server in self._servers]
        tasks += [
            asyncio.create_task(proxy.serve_forever(), name=f"proxy:{proxy.listen_port}")
            for proxy in self._proxies
        ]
        self._log.info(
            "Serving http on %s:%d and https on %s:%d",
            listen.host,
            listen.port,
            listen.host,
            listen.tls_port,
        )

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await self.shutdown()
            results = await asyncio.gather(*tasks, return_exceptions=True)

        for task, result in zip(tasks, results):
            if task in done and isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                self._log.critical("%s stopped with error: %s", task.get_name(), result)
                raise result

    async def shutdown(self) -> None:
        for server in self._servers:
            server.should_exit = True
        for proxy in self._proxies:
            await proxy.close()


__all__ = ["GatewayRuntime"]
