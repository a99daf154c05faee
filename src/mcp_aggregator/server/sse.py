"""
HTTP/SSE binding of the exposed tool surface.

``GET /sse`` opens an event stream whose first event (``endpoint``) carries
the per-session URL to POST JSON-RPC messages to; responses and
notifications come back as ``message`` events. ``POST /mcp`` answers a
JSON-RPC request directly in the HTTP response.
"""

import asyncio
import json
import time
import uuid
from typing import Any, Dict, Optional

from aiohttp import web
from aiohttp.web import Application, Request, Response, StreamResponse

from mcp_aggregator.core.aggregator import Aggregator
from mcp_aggregator.core.models import AggregatedRegistry
from mcp_aggregator.core.surface import (
    INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND, PARSE_ERROR, error_response,
)
from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)

MESSAGES_PATH = "/messages"


class SseSession:
    """One connected event-stream client."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.connected_at = time.time()

    def send(self, message: Any) -> None:
        self.queue.put_nowait(message)


class SseServer:
    """
    aiohttp server exposing the aggregator over SSE and plain HTTP.

    Starting the server starts the aggregator; stopping it stops both.
    """

    def __init__(
        self,
        aggregator: Aggregator,
        host: Optional[str] = None,
        port: Optional[int] = None,
        keepalive_interval: float = 15.0,
    ):
        self.aggregator = aggregator
        self.surface = aggregator.surface
        self.host = host or aggregator.config.host
        self.port = port if port is not None else aggregator.config.port
        self.sse_endpoint = aggregator.config.sse_endpoint
        self.keepalive_interval = keepalive_interval

        self.app: Optional[Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

        self.sessions: Dict[str, SseSession] = {}
        self._unsubscribe = None

    async def start(self) -> None:
        """Start the aggregator and the HTTP server."""
        try:
            await self.aggregator.start()
            self._unsubscribe = self.aggregator.registry.subscribe(self._on_reload)

            self.app = self.create_app()
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()

            self.site = web.TCPSite(self.runner, self.host, self.port)
            await self.site.start()

            logger.info(f"SSE server listening on http://{self.host}:{self.port}{self.sse_endpoint}")

        except Exception as e:
            logger.error(f"Failed to start SSE server: {e}")
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the HTTP server and the aggregator."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        for session in list(self.sessions.values()):
            session.send(None)

        if self.site:
            await self.site.stop()
            self.site = None
        if self.runner:
            await self.runner.cleanup()
            self.runner = None

        await self.aggregator.stop()
        logger.info("SSE server stopped")

    def create_app(self) -> Application:
        """Create aiohttp web application with routes."""
        app = Application()

        app.middlewares.append(self._request_logging_middleware)
        app.middlewares.append(self._error_handling_middleware)

        app.router.add_get(self.sse_endpoint, self._handle_sse)
        app.router.add_post(MESSAGES_PATH, self._handle_message)
        app.router.add_post("/mcp", self._handle_mcp_request)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/status", self._handle_status)

        return app

    async def _handle_sse(self, request: Request) -> StreamResponse:
        """Open an event stream for one client session."""
        session = SseSession(uuid.uuid4().hex)
        self.sessions[session.session_id] = session

        response = StreamResponse(headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        })
        await response.prepare(request)
        logger.info(f"SSE session opened: {session.session_id}")

        try:
            await response.write(
                format_event("endpoint", f"{MESSAGES_PATH}?session_id={session.session_id}")
            )
            while True:
                try:
                    message = await asyncio.wait_for(session.queue.get(), timeout=self.keepalive_interval)
                except asyncio.TimeoutError:
                    await response.write(b": ping\n\n")
                    continue

                if message is None:
                    break
                await response.write(format_event("message", json.dumps(message)))

        except ConnectionError:
            logger.debug(f"SSE client went away: {session.session_id}")

        finally:
            self.sessions.pop(session.session_id, None)
            logger.info(f"SSE session closed: {session.session_id}")

        return response

    async def _handle_message(self, request: Request) -> Response:
        """Accept a JSON-RPC message for an open session."""
        session_id = request.query.get("session_id")
        session = self.sessions.get(session_id) if session_id else None
        if session is None:
            return web.json_response({"error": f"Unknown session: {session_id}"}, status=404)

        body = await request.text()
        reply = await self.surface.handle_raw(body)
        if reply is not None:
            session.send(reply)

        return web.Response(status=202, text="Accepted")

    async def _handle_mcp_request(self, request: Request) -> Response:
        """Answer a JSON-RPC request in the HTTP response."""
        body = await request.text()
        reply = await self.surface.handle_raw(body)
        if reply is None:
            return web.Response(status=202)
        return web.json_response(reply, status=http_status(reply))

    async def _handle_health(self, request: Request) -> Response:
        """Handle health check request."""
        registry = self.aggregator.registry
        return web.json_response({
            "status": "healthy",
            "timestamp": time.time(),
            "registry_state": registry.state.value,
            "generation": registry.generation,
            "tool_count": len(registry.live.tools),
            "sessions": len(self.sessions),
        })

    async def _handle_status(self, request: Request) -> Response:
        """Handle status request with detailed information."""
        status = self.aggregator.status()
        status["sessions"] = sorted(self.sessions)
        return web.json_response(status)

    def _on_reload(self, registry: AggregatedRegistry) -> None:
        notification = self.surface.list_changed_notification()
        for session in list(self.sessions.values()):
            session.send(notification)
        logger.debug(f"Notified {len(self.sessions)} session(s) of generation {registry.generation}")

    @web.middleware
    async def _request_logging_middleware(self, request: Request, handler) -> Response:
        """Log all requests."""
        start_time = time.time()
        response = await handler(request)
        processing_time = (time.time() - start_time) * 1000

        logger.debug(f"{request.method} {request.path}", extra={
            "status": response.status,
            "processing_time_ms": round(processing_time, 2),
            "client_ip": request.remote,
        })
        return response

    @web.middleware
    async def _error_handling_middleware(self, request: Request, handler) -> Response:
        """Turn unexpected errors into JSON-RPC internal errors."""
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"Unhandled error in {request.method} {request.path}: {e}")
            return web.json_response(error_response(None, INTERNAL_ERROR, "Internal server error"), status=500)

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Start server and run until ``stop_event`` is set or the task is cancelled."""
        await self.start()
        try:
            await (stop_event or asyncio.Event()).wait()
        finally:
            await self.stop()


def format_event(event: str, data: str) -> bytes:
    return f"event: {event}\ndata: {data}\n\n".encode("utf-8")


def http_status(reply: Any) -> int:
    """HTTP status for a direct JSON-RPC reply."""
    if not isinstance(reply, dict) or "error" not in reply:
        return 200
    code = reply["error"].get("code")
    if code in (PARSE_ERROR, INVALID_REQUEST, INVALID_PARAMS):
        return 400
    if code == METHOD_NOT_FOUND:
        return 404
    if code == INTERNAL_ERROR:
        return 502
    return 200
