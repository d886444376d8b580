"""Main entry point for the room relay."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import ssl
import sys
from pathlib import Path

from aiohttp import WSCloseCode, web

from .auth import Unauthorized, extract_token, security_headers_middleware
from .codec import (
    CODEC_CBOR,
    CODEC_JSON,
    CODECS,
    FrameError,
    decode,
    decode_text,
    encode,
    encode_text,
)
from .config import ConfigError, RelayConfig, load_config
from .constants import MAX_FRAME_SIZE, R_UNAUTHORIZED
from .router import error_frame
from .service import RelayService
from .session import Connection

logger = logging.getLogger(__name__)

SERVICE_KEY = web.AppKey("relay_service", RelayService)


def configure_logging(level: str | None = None) -> None:
    """Configure root logging from ``RELAY_LOG_LEVEL``."""
    log_level = (level or os.environ.get("RELAY_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class HTTPServer:
    """HTTP server exposing the relay WebSocket endpoint and a health check."""

    def __init__(self, service: RelayService, ssl_context: ssl.SSLContext | None = None):
        """Initialize HTTP server.

        Args:
            service: Relay service instance holding all shared state
            ssl_context: SSL context for wss:// (plain ws:// when None)
        """
        self.service = service
        self.ssl_context = ssl_context
        self.config: RelayConfig = service.config
        self.app = web.Application(middlewares=[security_headers_middleware])
        self.app[SERVICE_KEY] = service
        self.runner: web.AppRunner | None = None
        self.setup_routes()

    def setup_routes(self):
        """Set up HTTP routes."""
        self.app.router.add_get("/health", self.health_handler)
        self.app.router.add_get("/ws", self.websocket_handler)

    async def health_handler(self, _request: web.Request) -> web.Response:
        return web.json_response({"ok": True})

    def _origin_allowed(self, origin: str) -> bool:
        scheme = "https" if self.ssl_context else "http"
        allowed_origins = set(self.config.allowed_origins)
        allowed_origins.update(
            {
                f"{scheme}://{self.config.host}:{self.config.port}",
                f"{scheme}://localhost:{self.config.port}",
                f"{scheme}://127.0.0.1:{self.config.port}",
            }
        )
        return origin in allowed_origins

    async def websocket_handler(self, request: web.Request) -> web.StreamResponse:
        """Admit, upgrade and serve one relay connection.

        Frames from a connection are handled strictly one after another;
        outbound frames are written by a separate writer task draining the
        connection's outbox.

        Args:
            request: WebSocket upgrade request

        Returns:
            WebSocket response, or an HTTP error if admission fails
        """
        origin = request.headers.get("Origin")
        if origin and not self._origin_allowed(origin):
            logger.warning("WebSocket connection rejected: invalid origin %s", origin)
            return web.Response(status=403, text="Forbidden: Invalid origin")

        try:
            self.service.gate.admit(extract_token(request))
        except Unauthorized:
            self.service.inc("rejected")
            logger.warning(
                "WebSocket connection rejected: %s remote=%s", R_UNAUTHORIZED, request.remote
            )
            return web.Response(status=401, text=R_UNAUTHORIZED)

        if self.service.connection_count >= self.config.max_connections:
            logger.warning(
                "WebSocket connection rejected: limit of %d reached", self.config.max_connections
            )
            return web.Response(status=503, text="Server is at maximum capacity")

        codec = request.query.get("codec", CODEC_JSON)
        if codec not in CODECS:
            return web.Response(status=400, text=f"Unsupported codec: {codec}")

        ws = web.WebSocketResponse(
            max_msg_size=MAX_FRAME_SIZE,
            heartbeat=self.config.heartbeat_s or None,
        )
        await ws.prepare(request)

        connection = self.service.open_connection(origin=origin, codec=codec)
        connection.on_stall = lambda _c: asyncio.ensure_future(
            ws.close(code=WSCloseCode.TRY_AGAIN_LATER, message=b"outbox full")
        )
        writer = asyncio.create_task(self._pump(ws, connection))
        reason = "closed"

        try:
            async for msg in ws:
                if msg.type == web.WSMsgType.TEXT:
                    self._handle_raw(connection, msg.data, decode_text)
                elif msg.type == web.WSMsgType.BINARY:
                    self._handle_raw(connection, msg.data, decode)
                elif msg.type == web.WSMsgType.ERROR:
                    logger.error("WebSocket error conn=%s: %s", connection.conn_id, ws.exception())
                    reason = "error"

        except asyncio.CancelledError:
            logger.info("WebSocket handler cancelled conn=%s", connection.conn_id)
            reason = "cancelled"
            raise
        except ConnectionResetError:
            logger.info("WebSocket connection reset by client conn=%s", connection.conn_id)
            reason = "reset"
        except Exception as e:
            logger.error("WebSocket handler error conn=%s: %s", connection.conn_id, e, exc_info=True)
            reason = "error"
        finally:
            self.service.close_connection(connection, reason)
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer

        return ws

    def _handle_raw(self, connection: Connection, data, decoder) -> None:
        try:
            frame = decoder(data)
        except FrameError as e:
            logger.warning("Bad frame conn=%s: %s", connection.conn_id, e)
            self.service.inc("frames_bad")
            connection.deliver(error_frame(str(e)))
            return
        self.service.handle_frame(connection, frame)

    async def _pump(self, ws: web.WebSocketResponse, connection: Connection) -> None:
        """Write queued frames to the socket in order."""
        while True:
            frame = await connection.outbox.get()
            try:
                if connection.codec == CODEC_CBOR:
                    await ws.send_bytes(encode(frame))
                else:
                    await ws.send_str(encode_text(frame))
            except (ConnectionResetError, RuntimeError) as e:
                logger.debug("Send failed conn=%s: %s", connection.conn_id, e)
                return

    async def start(self):
        """Start the HTTP server."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        site = web.TCPSite(
            self.runner, self.config.host, self.config.port, ssl_context=self.ssl_context
        )
        await site.start()

        scheme = "wss" if self.ssl_context else "ws"
        logger.info("listening on %s://%s:%d/ws", scheme, self.config.host, self.config.port)
        logger.info("allowing origins %s", ", ".join(self.config.allowed_origins) or "(none)")
        if self.service.gate.open_mode:
            logger.warning("invite-only disabled (open mode)")
        else:
            logger.info("invite-only enabled (tokens=%d)", self.service.gate.token_count)
        logger.info("rooms: %s", ", ".join(self.config.rooms))

    async def stop(self):
        """Stop the HTTP server."""
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None


def create_app(service: RelayService) -> web.Application:
    """Build the aiohttp application for a relay service."""
    return HTTPServer(service).app


def create_ssl_context(config: RelayConfig) -> ssl.SSLContext | None:
    """Build a server SSL context from the configured certificate, if any.

    Missing or unreadable certificate files are logged and the relay falls
    back to plain ws://.
    """
    if not config.tls_enabled:
        return None

    cert_path = Path(config.tls_cert)
    key_path = Path(config.tls_key)
    if not (cert_path.exists() and key_path.exists()):
        logger.warning("TLS enabled but certificate files not found")
        logger.warning("Use roomrelay-gencert to create certificates")
        logger.warning("Continuing without TLS")
        return None

    ssl_context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        ssl_context.load_cert_chain(cert_path, key_path)
    except (OSError, ssl.SSLError) as e:
        logger.error("Failed to load TLS certificate: %s", e)
        logger.error("Continuing without TLS")
        return None
    logger.info("TLS enabled")
    return ssl_context


async def main_async(config: RelayConfig):
    """Main async entry point.

    Args:
        config: Validated relay configuration
    """
    service = RelayService(config)
    http_server = HTTPServer(service, ssl_context=create_ssl_context(config))
    await http_server.start()

    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    logger.info("Relay started. Press Ctrl+C to stop.")
    await stop_event.wait()

    logger.info("Shutting down...")
    await http_server.stop()
    logger.info("Final stats: %s", service.stats())


def main():
    """Main entry point."""
    configure_logging()
    try:
        config = load_config()
    except ConfigError as e:
        logger.error("%s", e)
        sys.exit(1)

    try:
        asyncio.run(main_async(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
