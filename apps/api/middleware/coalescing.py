"""ASGI middleware that collapses identical concurrent billable requests."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from starlette.responses import JSONResponse

from services.billing_errors import CoalescedRequestFailedError
from services.coalescing import (
    COALESCED_METHODS,
    RequestCoalescer,
    ResponseRecorder,
    build_fingerprint,
    decode_headers,
    is_streaming_request,
    resolve_principal,
)

logger = logging.getLogger(__name__)

Receive = Callable[[], Awaitable[Dict[str, Any]]]
Send = Callable[[Dict[str, Any]], Awaitable[None]]


async def _read_body(receive: Receive) -> Optional[bytes]:
    """Buffer the full request body; None when the client disconnects first."""
    chunks = []
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return None
        chunks.append(message.get("body", b""))
        if not message.get("more_body", False):
            return b"".join(chunks)


def _replaying_receive(body: bytes, receive: Receive) -> Receive:
    delivered = False

    async def _receive() -> Dict[str, Any]:
        nonlocal delivered
        if not delivered:
            delivered = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return _receive


class RequestCoalescingMiddleware:
    """
    Applies to the configured `path -> key_scope` routes only.

    The leader runs the downstream app against a `ResponseRecorder`; the
    recorded snapshot is then sent to the leader's own client and resolved for
    every follower. Followers never reach the route handler.
    """

    def __init__(
        self,
        app,
        coalescer: RequestCoalescer,
        routes: Dict[str, str],
        metrics=None,
        enabled: bool = True,
    ):
        for path, key_scope in routes.items():
            if not key_scope or not key_scope.strip():
                raise ValueError(f"request coalescing requires a non-empty key scope for {path}")
        self.app = app
        self.coalescer = coalescer
        self.routes = dict(routes)
        self.metrics = metrics
        self.enabled = enabled

    async def __call__(self, scope, receive: Receive, send: Send) -> None:
        key_scope = self._key_scope_for(scope)
        if key_scope is None:
            await self.app(scope, receive, send)
            return

        headers = decode_headers(scope.get("headers") or [])
        if is_streaming_request(scope.get("path", ""), headers):
            await self.app(scope, receive, send)
            return

        body = await _read_body(receive)
        if body is None:
            logger.debug("Client disconnected before the body was read scope=%s path=%s", key_scope, scope.get("path"))
            return
        key = build_fingerprint(scope["method"], key_scope, resolve_principal(scope, headers), body)
        entry, is_leader = self.coalescer.acquire(key)

        if not is_leader:
            self._record(key_scope, "coalesced")
            logger.debug("Request coalesced scope=%s path=%s", key_scope, scope.get("path"))
            await self._serve_follower(entry.future, key_scope, scope, receive, send)
            return

        self._record(key_scope, "unique")
        recorder = ResponseRecorder()
        try:
            await self.app(scope, _replaying_receive(body, receive), recorder.send)
        except Exception as exc:
            self.coalescer.fail(key, exc)
            raise
        except BaseException:
            self.coalescer.fail(key, RuntimeError("leader request was cancelled"))
            raise

        if not recorder.complete:
            self.coalescer.fail(key, RuntimeError("leader produced no complete response"))
            if not recorder.started:
                return
            await recorder.snapshot().send_to(send)
            return

        snapshot = recorder.snapshot()
        self.coalescer.complete(key, snapshot)
        await snapshot.send_to(send)

    def _key_scope_for(self, scope) -> Optional[str]:
        if not self.enabled or scope.get("type") != "http":
            return None
        if scope.get("method", "").upper() not in COALESCED_METHODS:
            return None
        return self.routes.get(scope.get("path", ""))

    async def _serve_follower(self, future: asyncio.Future, key_scope: str, scope, receive: Receive, send: Send):
        try:
            snapshot = await asyncio.shield(future)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._record(key_scope, "failed")
            logger.warning("Coalesced leader failed scope=%s: %s", key_scope, exc)
            error = CoalescedRequestFailedError(key_scope, str(exc) or exc.__class__.__name__)
            response = JSONResponse(status_code=503, content=error.to_dict(), headers={"Retry-After": "1"})
            await response(scope, receive, send)
            return
        await snapshot.send_to(send, replay=True)

    def _record(self, key_scope: str, kind: str) -> None:
        if self.metrics is not None:
            self.metrics.record_coalescing(key_scope, kind)
