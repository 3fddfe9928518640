from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import parse_qsl

from aiohttp import web

from intercom.core import proto
from intercom.core.directory import Directory
from intercom.utils import jsonenc

log = logging.getLogger("intercom.server.runtime")

MAX_BODY_BYTES = 1_000_000
READ_CHUNK = 64 * 1024

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _error_response(error: proto.RequestError) -> web.Response:
    resp = web.Response(status=error.status, reason=error.message, text=error.message)
    if isinstance(error, proto.PayloadTooLarge):
        resp.force_close()
    return resp


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except proto.RequestError as exc:
        if exc.status >= 500:
            log.error("%s %s failed: %s", request.method, request.path, exc.message)
        return _error_response(exc)
    except web.HTTPNotFound:
        log.debug("Page not found: %s", request.path)
        return _error_response(proto.NotFound("page not found"))
    except web.HTTPException:
        raise
    except Exception:
        log.exception("Unhandled error for %s %s", request.method, request.path)
        return _error_response(proto.RequestError("internal server error"))


class ServerRuntime:
    """HTTP front end that feeds normalised operations into a Directory."""

    def __init__(self, config: Dict[str, Any], directory: Optional[Directory] = None) -> None:
        self.cfg = config
        self.listen_host, self.listen_port = self._parse_listen(config.get("listen", "0.0.0.0:8080"))
        self.max_body_bytes = int(config.get("max_body_bytes", MAX_BODY_BYTES))
        self.shutdown_timeout = float(config.get("shutdown_timeout", 5.0))
        self.directory = directory if directory is not None else Directory()

        self._runner: Optional[web.AppRunner] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.router.add_route("*", "/", self._handle_root)
        return app

    async def start(self) -> None:
        # handler_cancellation turns a dropped long-poll into CancelledError
        self._runner = web.AppRunner(
            self.build_app(),
            handler_cancellation=True,
            shutdown_timeout=self.shutdown_timeout,
        )
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.listen_host, self.listen_port)
        await site.start()
        log.info("Intercom server listening on http://%s:%d", self.listen_host, self.listen_port)

    async def stop(self) -> None:
        await self.directory.shutdown()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        log.info("Intercom server stopped")

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    async def _handle_root(self, request: web.Request) -> web.Response:
        params = await self._read_params(request)
        op = proto.parse_operation(params)
        log.debug("%s from %s", op.op, request.remote)
        result = await self.directory.dispatch(op)
        text = jsonenc.dumps(result) if result is not None else ""
        return web.Response(text=text, content_type="application/json")

    # ------------------------------------------------------------------
    # Request parsing
    # ------------------------------------------------------------------

    async def _read_params(self, request: web.Request) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if request.body_exists:
            body = await self._read_body(request)
            params.update(self._parse_body(body, request.content_type, request.charset))
        # query string wins over the body
        params.update(request.query.items())
        return params

    async def _read_body(self, request: web.Request) -> bytes:
        declared = request.content_length
        if declared is not None and declared > self.max_body_bytes:
            raise proto.PayloadTooLarge("Request Entity Too Large")

        chunks: list[bytes] = []
        size = 0
        async for chunk in request.content.iter_chunked(READ_CHUNK):
            size += len(chunk)
            if size > self.max_body_bytes:
                raise proto.PayloadTooLarge("Request Entity Too Large")
            chunks.append(chunk)
        return b"".join(chunks)

    @staticmethod
    def _parse_body(body: bytes, content_type: str, charset: Optional[str]) -> Dict[str, Any]:
        if not body:
            return {}
        if content_type == "application/json":
            try:
                data = jsonenc.loads(body)
            except ValueError:
                raise proto.BadRequest("invalid JSON body") from None
            if not isinstance(data, dict):
                raise proto.BadRequest("JSON body must be an object")
            return data
        # browsers beacon these as text/plain, so anything else is a query string
        text = body.decode(charset or "utf-8", errors="replace")
        return dict(parse_qsl(text, keep_blank_values=True))

    @staticmethod
    def _parse_listen(value: str) -> tuple[str, int]:
        host, port = value.rsplit(":", 1)
        return host, int(port)


__all__ = ["ServerRuntime", "error_middleware", "MAX_BODY_BYTES"]
