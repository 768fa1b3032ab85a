"""
Request coalescing primitives.

Identical concurrent write requests (same method, route scope, caller and
canonical body) share one handler execution. The first request becomes the
leader and records its response into a `ResponseSnapshot`; every follower
awaits the leader's future and replays that snapshot. Completed entries stay
around for a short trailing window so near-simultaneous duplicates still
coalesce, then a lazily scheduled cleanup drops them.

The map is process-local: duplicates landing on different API processes each
execute once per process.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_COALESCING_WINDOW_SECONDS = 0.1
FINGERPRINT_HASH_LENGTH = 32

COALESCED_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
STREAMING_CONTENT_TYPES = ("text/event-stream", "application/x-ndjson")

REPLAYABLE_HEADERS = frozenset(
    {
        "content-type",
        "content-encoding",
        "content-language",
        "cache-control",
        "etag",
        "last-modified",
        "vary",
        "retry-after",
        "x-request-id",
    }
)
REPLAYABLE_HEADER_PREFIXES = ("x-credits-",)
_NEVER_FORWARDED = frozenset({"content-length", "transfer-encoding", "connection", "keep-alive"})

_CIRCULAR = '"[Circular]"'


def hash_fingerprint(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:FINGERPRINT_HASH_LENGTH]


def parse_maybe_json(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8", errors="replace")
    trimmed = raw.strip()
    if not trimmed:
        return ""
    looks_like_json = (trimmed.startswith("{") and trimmed.endswith("}")) or (
        trimmed.startswith("[") and trimmed.endswith("]")
    )
    if not looks_like_json:
        return trimmed
    try:
        return json.loads(trimmed)
    except ValueError:
        return trimmed


def stable_stringify(value: Any, _active: Optional[set] = None) -> str:
    """Deterministic JSON-like rendering with sorted object keys."""
    active = _active if _active is not None else set()

    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, str)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (bytes, bytearray)):
        return stable_stringify(parse_maybe_json(value), active)

    if isinstance(value, (list, tuple, dict)):
        marker = id(value)
        if marker in active:
            return _CIRCULAR
        active.add(marker)
        try:
            if isinstance(value, dict):
                entries = [
                    f"{json.dumps(str(key), ensure_ascii=False)}:{stable_stringify(value[key], active)}"
                    for key in sorted(value.keys(), key=str)
                ]
                return "{" + ",".join(entries) + "}"
            return "[" + ",".join(stable_stringify(item, active) for item in value) + "]"
        finally:
            active.discard(marker)

    return json.dumps(str(value), ensure_ascii=False)


def _fast_canonicalize(body: Any) -> Optional[str]:
    # Hot path for generation payloads: only the differentiating fields matter.
    if not isinstance(body, dict) or not isinstance(body.get("prompt"), str):
        return None
    mode = body.get("mode") if isinstance(body.get("mode"), str) else ""
    target_model = body.get("targetModel") if isinstance(body.get("targetModel"), str) else ""
    skip_cache = "1" if body.get("skipCache") is True else "0"
    return f"fast:{body['prompt']}|{mode}|{target_model}|{skip_cache}"


def canonicalize_body(body: Any) -> str:
    if isinstance(body, (str, bytes, bytearray)):
        body = parse_maybe_json(body)
    fast = _fast_canonicalize(body)
    if fast is not None:
        return fast
    return stable_stringify(body)


def _header(headers: Dict[str, str], name: str) -> str:
    return headers.get(name, "") or ""


def resolve_principal(scope: Dict[str, Any], headers: Dict[str, str]) -> str:
    """Identify the caller: an authenticated user id if one is known, else the raw credentials."""
    state = scope.get("state") or {}
    candidates = [state.get("user_id") if isinstance(state, dict) else None]
    user = scope.get("user")
    if isinstance(user, str):
        candidates.append(user)
    elif user is not None:
        candidates.append(getattr(user, "identity", None))

    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return f"principal:{candidate.strip()}"

    return f"credentials:{_header(headers, 'authorization')}|{_header(headers, 'x-api-key')}"


def build_fingerprint(method: str, key_scope: str, principal: str, body: Any) -> str:
    return f"{method.upper()}:{key_scope}:{hash_fingerprint(principal)}:{hash_fingerprint(canonicalize_body(body))}"


def is_streaming_request(path: str, headers: Dict[str, str]) -> bool:
    if "/stream" in path.lower():
        return True
    accept = _header(headers, "accept").lower()
    content_type = _header(headers, "content-type").lower()
    return any(kind in accept or kind in content_type for kind in STREAMING_CONTENT_TYPES)


def is_replayable_header(name: str) -> bool:
    lowered = name.lower()
    return lowered in REPLAYABLE_HEADERS or lowered.startswith(REPLAYABLE_HEADER_PREFIXES)


@dataclass
class ResponseSnapshot:
    status_code: int
    headers: List[Tuple[str, str]]
    body: bytes

    def replay_headers(self) -> List[Tuple[str, str]]:
        return [(name, value) for name, value in self.headers if is_replayable_header(name)]

    async def send_to(self, send: Callable, *, replay: bool = False) -> None:
        """Flush the snapshot as one ASGI response."""
        source = self.replay_headers() if replay else self.headers
        raw_headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in source
            if name.lower() not in _NEVER_FORWARDED
        ]
        raw_headers.append((b"content-length", str(len(self.body)).encode("latin-1")))
        await send({"type": "http.response.start", "status": self.status_code, "headers": raw_headers})
        await send({"type": "http.response.body", "body": self.body, "more_body": False})


class ResponseRecorder:
    """ASGI `send` callable that records a response instead of forwarding it."""

    def __init__(self):
        self.status_code: Optional[int] = None
        self.headers: List[Tuple[str, str]] = []
        self._chunks: List[bytes] = []
        self.complete = False

    async def send(self, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        if message_type == "http.response.start":
            self.status_code = int(message["status"])
            self.headers = [
                (bytes(name).decode("latin-1").lower(), bytes(value).decode("latin-1"))
                for name, value in message.get("headers") or []
            ]
        elif message_type == "http.response.body":
            self._chunks.append(bytes(message.get("body", b"")))
            if not message.get("more_body", False):
                self.complete = True

    @property
    def started(self) -> bool:
        return self.status_code is not None

    def snapshot(self) -> ResponseSnapshot:
        if self.status_code is None:
            raise RuntimeError("response was never started")
        return ResponseSnapshot(status_code=self.status_code, headers=list(self.headers), body=b"".join(self._chunks))


@dataclass
class CoalescingEntry:
    future: asyncio.Future
    completed_at: Optional[float] = None
    expires_at: Optional[float] = None


@dataclass
class _CoalescingStats:
    coalesced: int = 0
    unique: int = 0
    total_saved: int = 0


class RequestCoalescer:
    def __init__(
        self,
        window_seconds: float = DEFAULT_COALESCING_WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = max(float(window_seconds), 0.001)
        self._clock = clock
        self._entries: Dict[str, CoalescingEntry] = {}
        self._stats = _CoalescingStats()
        self._cleanup_handle: Optional[asyncio.TimerHandle] = None

    def acquire(self, key: str) -> Tuple[CoalescingEntry, bool]:
        """Return the entry for `key` and whether the caller is its leader."""
        entry = self._entries.get(key)
        if entry is not None and (entry.expires_at is None or self._clock() < entry.expires_at):
            self._stats.coalesced += 1
            self._stats.total_saved += 1
            return entry, False

        entry = CoalescingEntry(future=asyncio.get_running_loop().create_future())
        self._entries[key] = entry
        self._stats.unique += 1
        return entry, True

    def complete(self, key: str, snapshot: ResponseSnapshot) -> None:
        entry = self._entries.get(key)
        if entry is None or entry.future.done():
            return
        entry.future.set_result(snapshot)
        now = self._clock()
        entry.completed_at = now
        entry.expires_at = now + self.window_seconds
        self._schedule_cleanup()

    def fail(self, key: str, error: BaseException) -> None:
        entry = self._entries.pop(key, None)
        if entry is None or entry.future.done():
            return
        entry.future.set_exception(error)
        # Mark retrieved so a leader without followers does not log a warning.
        entry.future.exception()

    def _schedule_cleanup(self) -> None:
        if self._cleanup_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._cleanup_handle = loop.call_later(self.window_seconds, self._run_cleanup)

    def _run_cleanup(self) -> None:
        self._cleanup_handle = None
        self.cleanup_expired()
        if any(entry.expires_at is not None for entry in self._entries.values()):
            self._schedule_cleanup()

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items() if entry.expires_at is not None and now >= entry.expires_at
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        total = self._stats.coalesced + self._stats.unique
        rate = (self._stats.coalesced / total) * 100 if total else 0.0
        return {
            "coalesced": self._stats.coalesced,
            "unique": self._stats.unique,
            "total_saved": self._stats.total_saved,
            "total": total,
            "coalescing_rate": f"{rate:.2f}%",
            "active_pending": len(self._entries),
        }

    def reset_stats(self) -> None:
        self._stats = _CoalescingStats()

    def clear(self) -> None:
        self._entries.clear()
        if self._cleanup_handle is not None:
            self._cleanup_handle.cancel()
            self._cleanup_handle = None


def decode_headers(raw_headers: Iterable[Tuple[bytes, bytes]]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for name, value in raw_headers:
        headers[bytes(name).decode("latin-1").lower()] = bytes(value).decode("latin-1")
    return headers
