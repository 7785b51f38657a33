#!/usr/bin/env python3
"""
Static Asset Server
Serves the WebAR page, scripts and video over HTTPS, with an optional
plaintext listener that permanently redirects to the HTTPS listener
"""

import asyncio
import errno
import logging
import socket
import ssl
from pathlib import Path
from typing import Optional

from aiohttp import web

try:
    from .config import ServerConfig, DEFAULT_CONTENT_TYPE
except ImportError:
    # Fallback for when running as standalone script
    from src.webar.config import ServerConfig, DEFAULT_CONTENT_TYPE

logger = logging.getLogger(__name__)

NOT_FOUND_BODY = b"<h1>404 Not Found</h1>"
METHOD_NOT_ALLOWED_BODY = b"<h1>405 Method Not Allowed</h1>"
ALLOWED_METHODS = ("GET", "HEAD")


class TLSConfigurationError(RuntimeError):
    """TLS key/certificate could not be loaded; the listener must not start"""


def lan_address() -> Optional[str]:
    """Best-effort LAN IP, so a phone on the same network can be pointed at the server"""
    try:
        # Connecting a UDP socket sends nothing, it only picks the outbound interface
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError:
        return None


class StaticAssetServer:
    """Static file server bound to one root directory and one MIME table"""

    def __init__(self, config: Optional[ServerConfig] = None):
        self.config = config or ServerConfig()
        self.root = Path(self.config.root).resolve()
        self.mime_types = self.config.mime_types

        self.https_port: Optional[int] = None
        self.http_port: Optional[int] = None

        self._runner: Optional[web.AppRunner] = None
        self._redirect_runner: Optional[web.AppRunner] = None
        self._stopped: Optional[asyncio.Event] = None
        self.running = False

    # ---- Request handling ----

    def resolve_path(self, url_path: str) -> Optional[Path]:
        """
        Map a decoded URL path onto a file under the root

        Returns None when the canonical path escapes the root. Directories
        (including the root itself) map to the default document inside them.
        """
        relative = url_path.lstrip("/")
        try:
            candidate = (self.root / relative).resolve()
        except (OSError, ValueError, RuntimeError):
            return None

        if candidate != self.root and self.root not in candidate.parents:
            return None

        try:
            is_dir = candidate.is_dir()
        except OSError:
            # Unreadable parent; the read below reports the real error
            is_dir = False

        if is_dir:
            candidate = candidate / self.config.default_document
        return candidate

    def content_type_for(self, path: Path) -> str:
        return self.mime_types.get(path.suffix.lower(), DEFAULT_CONTENT_TYPE)

    def _not_found(self) -> web.Response:
        return web.Response(status=404, body=NOT_FOUND_BODY, content_type="text/html")

    async def handle_request(self, request: web.Request) -> web.StreamResponse:
        """Serve one file, or 404/405/500"""
        if request.method not in ALLOWED_METHODS:
            return web.Response(
                status=405,
                body=METHOD_NOT_ALLOWED_BODY,
                content_type="text/html",
                headers={"Allow": ", ".join(ALLOWED_METHODS)},
            )

        path = self.resolve_path(request.path)
        if path is None:
            logger.warning(f"Rejected path outside root from {request.remote}: {request.path!r}")
            return self._not_found()

        try:
            content = await asyncio.to_thread(path.read_bytes)
        except (FileNotFoundError, NotADirectoryError):
            return self._not_found()
        except OSError as e:
            code = errno.errorcode.get(e.errno, "EIO") if e.errno else "EIO"
            logger.error(f"Error reading {path}: {type(e).__name__}: {e}")
            return web.Response(status=500, text=f"Server Error: {code}")

        return web.Response(status=200, body=content, content_type=self.content_type_for(path))

    def redirect_handler(self, https_port: int):
        """Build a handler that 301s any request to the same path on the asset listener"""
        redirect_host = self.config.redirect_host
        scheme = self.config.scheme

        async def handle_redirect(request: web.Request) -> web.StreamResponse:
            target = request.url.with_scheme(scheme).with_port(https_port)
            if redirect_host:
                target = target.with_host(redirect_host)
            raise web.HTTPMovedPermanently(location=str(target))

        return handle_redirect

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self.handle_request)
        return app

    def build_redirect_app(self, https_port: int) -> web.Application:
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self.redirect_handler(https_port))
        return app

    # ---- Lifecycle ----

    def _create_ssl_context(self) -> ssl.SSLContext:
        """Create SSL context from the bootstrapped key/certificate pair"""
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)

        try:
            ssl_context.load_cert_chain(self.config.ssl_cert_path, self.config.ssl_key_path)
            logger.info(f"SSL enabled with cert: {self.config.ssl_cert_path}")
            return ssl_context
        except (OSError, ssl.SSLError) as e:
            logger.error(f"Failed to load SSL certificates: {e}")
            raise TLSConfigurationError(
                f"Cannot load {self.config.ssl_cert_path} / {self.config.ssl_key_path}: {e}"
            ) from e

    @staticmethod
    def _bound_port(runner: web.AppRunner) -> int:
        return runner.addresses[0][1]

    async def start(self):
        """Bind the asset listener and, if configured, the redirect listener"""
        # TLS material is loaded before anything is bound
        ssl_context = self._create_ssl_context() if self.config.tls_enabled else None

        self._stopped = asyncio.Event()
        try:
            self._runner = web.AppRunner(self.build_app())
            await self._runner.setup()
            await web.TCPSite(
                self._runner, self.config.host, self.config.port, ssl_context=ssl_context
            ).start()
            self.https_port = self._bound_port(self._runner)

            if self.config.redirect_port is not None:
                self._redirect_runner = web.AppRunner(self.build_redirect_app(self.https_port))
                await self._redirect_runner.setup()
                await web.TCPSite(
                    self._redirect_runner, self.config.host, self.config.redirect_port
                ).start()
                self.http_port = self._bound_port(self._redirect_runner)
        except Exception as e:
            logger.error(f"Failed to start asset server: {e}")
            await self._cleanup()
            raise

        self.running = True
        self._log_startup()

    def _log_startup(self):
        scheme = self.config.scheme
        logger.info(f"Serving {self.root} on {scheme}://{self.config.host}:{self.https_port}")
        logger.info(f"Open the WebAR app at {scheme}://localhost:{self.https_port}")

        lan = lan_address()
        if lan:
            logger.info(f"Mobile URL: {scheme}://{lan}:{self.https_port}")
        if self.http_port is not None:
            logger.info(f"HTTP on port {self.http_port} redirects to port {self.https_port}")
        if self.config.tls_enabled:
            logger.info("Browsers will warn about the self-signed certificate; accept it to enable camera access")

    async def serve_forever(self):
        """Start (if needed) and block until stop() is called"""
        if not self.running:
            await self.start()
        await self._stopped.wait()

    async def _cleanup(self):
        for runner in (self._redirect_runner, self._runner):
            if runner is not None:
                await runner.cleanup()
        self._runner = None
        self._redirect_runner = None

    async def stop(self):
        """Close both listeners"""
        if self.running:
            await self._cleanup()
            self.running = False
            logger.info("Asset server stopped")
        if self._stopped is not None:
            self._stopped.set()
