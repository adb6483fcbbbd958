"""
Idempotency Guard

ASGI middleware that deduplicates retried mutating requests on sensitive
routes. The first execution for a client request ID is captured and stored;
retries inside the replay window get the stored response back without the
handler running again.
"""

from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from starlette.datastructures import Headers
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from app.config import settings
from app.core.idempotency.entry import BASE64_ENCODING, UTF8_ENCODING, IdempotencyEntry
from app.core.idempotency.exceptions import DuplicateIdempotencyKeyError
from app.core.idempotency.keys import (
    REPLAY_HEADER,
    REQUEST_ID_HEADER,
    is_valid_idempotency_key,
)
from app.core.idempotency.request_info import get_client_ip, snapshot_request_body
from app.core.idempotency.store import IdempotencyStore
from app.db.base import utcnow
from app.monitoring.logging import get_logger
from app.monitoring.metrics import (
    idempotency_records_stored_counter,
    idempotency_rejections_counter,
    idempotency_replays_counter,
    idempotency_store_errors_counter,
)
from app.schemas.errors import ErrorResponse

MISSING_KEY_MESSAGE = f"{REQUEST_ID_HEADER} header is required for this operation"
INVALID_KEY_MESSAGE = f"{REQUEST_ID_HEADER} must be a valid UUID"

# Content type is not recorded; binary bodies are replayed as opaque bytes.
REPLAY_MEDIA_TYPES = {
    UTF8_ENCODING: "application/json",
    BASE64_ENCODING: "application/octet-stream",
}


async def _read_body(receive: Receive) -> Tuple[bytes, bool]:
    """Read the whole request body; the flag is False if the client went away first."""
    chunks: List[bytes] = []
    while True:
        message = await receive()
        if message["type"] != "http.request":
            return b"".join(chunks), False
        chunks.append(message.get("body", b""))
        if not message.get("more_body", False):
            return b"".join(chunks), True


def _replay_receive(body: bytes, receive: Receive) -> Receive:
    """Hand the already-consumed body to the downstream app once."""
    delivered = False

    async def wrapped() -> Message:
        nonlocal delivered
        if not delivered:
            delivered = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return wrapped


def _user_id(scope: Scope) -> Optional[int]:
    # Populated on request.state by authentication dependencies.
    value = (scope.get("state") or {}).get("user_id")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class _BufferedResponse:
    """Collects the downstream response so it can be stored before sending."""

    def __init__(self) -> None:
        self.messages: List[Message] = []
        self.status_code: Optional[int] = None
        self.body_chunks: List[bytes] = []
        self.complete = False

    async def send(self, message: Message) -> None:
        self.messages.append(message)
        if message["type"] == "http.response.start":
            self.status_code = message["status"]
        elif message["type"] == "http.response.body":
            self.body_chunks.append(message.get("body", b""))
            if not message.get("more_body", False):
                self.complete = True

    @property
    def body(self) -> bytes:
        return b"".join(self.body_chunks)

    async def flush(self, send: Send) -> None:
        for message in self.messages:
            await send(message)


class IdempotencyMiddleware:
    """
    Request deduplication keyed by the ``X-Request-ID`` header.

    Only mutating methods on configured path prefixes are guarded. For those
    requests a valid UUID key is mandatory (400 otherwise). Store failures
    never block a request: a failed lookup falls through to the handler and
    a failed write is logged after the response has been produced.
    """

    def __init__(
        self,
        app: ASGIApp,
        store: IdempotencyStore,
        methods: Optional[Iterable[str]] = None,
        sensitive_routes: Optional[Iterable[str]] = None,
        replay_window: Optional[timedelta] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            app: Downstream ASGI application
            store: Backend holding captured responses
            methods: HTTP methods that require a key
            sensitive_routes: Path prefixes that require a key
            replay_window: How long a stored response can be replayed
            clock: Source of the current UTC time
        """
        self.app = app
        self.store = store
        self.methods = frozenset(
            m.upper() for m in (settings.idempotency_methods if methods is None else methods)
        )
        self.sensitive_routes = tuple(
            settings.idempotency_sensitive_routes if sensitive_routes is None else sensitive_routes
        )
        self.replay_window = replay_window or timedelta(
            hours=settings.idempotency_replay_window_hours
        )
        self.clock = clock or utcnow
        self.logger = get_logger("app.idempotency")

    def applies_to(self, method: str, path: str) -> bool:
        """True if requests with this method and path must carry a key."""
        if method.upper() not in self.methods:
            return False
        return any(path.startswith(route) for route in self.sensitive_routes)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.applies_to(scope["method"], scope["path"]):
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        key = headers.get(REQUEST_ID_HEADER)

        if not key:
            idempotency_rejections_counter.labels(reason="missing_key").inc()
            await self._bad_request(MISSING_KEY_MESSAGE)(scope, receive, send)
            return

        if not is_valid_idempotency_key(key):
            idempotency_rejections_counter.labels(reason="invalid_key").inc()
            await self._bad_request(INVALID_KEY_MESSAGE)(scope, receive, send)
            return

        uri = scope["path"]
        body, complete = await _read_body(receive)
        if not complete:
            # Nothing to execute or record for a truncated upload.
            self.logger.warning("idempotency_request_aborted", idempotency_key=key, uri=uri)
            return

        receive = _replay_receive(body, receive)

        try:
            existing = await self.store.find_recent(key, self.clock() - self.replay_window)
        except Exception as exc:
            idempotency_store_errors_counter.labels(operation="lookup").inc()
            self.logger.error(
                "idempotency_lookup_failed",
                error=str(exc),
                idempotency_key=key,
                uri=uri,
                exc_info=True,
            )
            await self.app(scope, receive, send)
            return

        if existing is not None:
            idempotency_replays_counter.inc()
            self.logger.info(
                "idempotent_replay",
                idempotency_key=key,
                original_status=existing.response_status,
                uri=uri,
            )
            await self._replay(existing)(scope, receive, send)
            return

        response = _BufferedResponse()
        await self.app(scope, receive, response.send)

        if response.complete:
            await self._record(key, scope, headers, body, response)

        await response.flush(send)

    async def _record(
        self,
        key: str,
        scope: Scope,
        headers: Headers,
        body: bytes,
        response: _BufferedResponse,
    ) -> None:
        # The handler has already run; nothing past this point may fail the request.
        try:
            created_at = self.clock()
            entry = IdempotencyEntry.capture(
                response.body,
                idempotency_key=key,
                user_id=_user_id(scope),
                request_method=scope["method"],
                request_uri=scope["path"],
                request_body=snapshot_request_body(body, headers.get("content-type")),
                response_status=response.status_code,
                ip_address=get_client_ip(scope),
                user_agent=headers.get("user-agent"),
                created_at=created_at,
            )
            await self.store.save(entry, stale_before=created_at - self.replay_window)
        except DuplicateIdempotencyKeyError:
            # Concurrent first requests with the same key; the other one won.
            idempotency_store_errors_counter.labels(operation="duplicate").inc()
            self.logger.warning(
                "idempotency_record_exists",
                idempotency_key=key,
                uri=scope["path"],
            )
        except Exception as exc:
            idempotency_store_errors_counter.labels(operation="save").inc()
            self.logger.error(
                "idempotency_store_failed",
                error=str(exc),
                idempotency_key=key,
                exc_info=True,
            )
        else:
            idempotency_records_stored_counter.inc()

    @staticmethod
    def _replay(entry: IdempotencyEntry) -> Response:
        return Response(
            content=entry.response_bytes(),
            status_code=entry.response_status,
            media_type=REPLAY_MEDIA_TYPES.get(entry.response_body_encoding, "application/json"),
            headers={REPLAY_HEADER: "true"},
        )

    @staticmethod
    def _bad_request(message: str) -> JSONResponse:
        return JSONResponse(
            ErrorResponse(message=message).model_dump(),
            status_code=400,
        )
