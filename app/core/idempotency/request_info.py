"""
Request Diagnostics

Helpers that extract the diagnostic fields stored alongside an idempotency
record: the client address and a snapshot of the request payload.
"""

import ipaddress
import json
from typing import Optional
from urllib.parse import parse_qsl

from starlette.datastructures import Headers
from starlette.types import Scope

# Checked in order; the raw socket address is the last resort.
CLIENT_IP_HEADERS = (
    "cf-connecting-ip",
    "x-forwarded-for",
    "x-real-ip",
    "client-ip",
)


def _is_public_ip(value: str) -> bool:
    try:
        ip = ipaddress.ip_address(value)
    except ValueError:
        return False
    return not (
        ip.is_private
        or ip.is_reserved
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_unspecified
    )


def get_client_ip(scope: Scope) -> str:
    """
    Resolve the client address of a request.

    Proxy headers are only trusted when they carry a public address; private
    and reserved addresses are accepted from the socket fallback alone.
    """
    headers = Headers(scope=scope)

    for header in CLIENT_IP_HEADERS:
        value = headers.get(header)
        if not value:
            continue
        candidate = value.split(",")[0].strip()
        if _is_public_ip(candidate):
            return candidate

    client = scope.get("client")
    if client and client[0]:
        return client[0]
    return "unknown"


def snapshot_request_body(body: bytes, content_type: Optional[str]) -> Optional[str]:
    """
    Serialize a request payload for the diagnostic ``request_body`` column.

    JSON is re-encoded compactly, form data becomes a JSON object of its
    fields, anything else is kept as text.
    """
    if not body:
        return None

    media_type = (content_type or "").split(";")[0].strip().lower()
    text = body.decode("utf-8", errors="replace")

    if media_type == "application/x-www-form-urlencoded":
        return json.dumps(dict(parse_qsl(text, keep_blank_values=True)), separators=(",", ":"))

    # Deeply nested payloads exhaust the decoder's recursion limit.
    try:
        parsed = json.loads(text)
        return json.dumps(parsed, separators=(",", ":"), ensure_ascii=False)
    except (ValueError, RecursionError):
        return text
