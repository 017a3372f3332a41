"""
core/http.py -- Request metadata helpers.

The client address is taken from the first hop of X-Forwarded-For, then
X-Real-IP, then the socket peer. IPv4-mapped IPv6 addresses ("::ffff:10.0.0.1")
are reduced to their IPv4 form so allow-list entries can be written plainly.

These headers are only trustworthy behind a proxy that overwrites them. The
deployment places the app behind such a proxy.
"""

from __future__ import annotations

from dataclasses import dataclass

from starlette.requests import Request

_MAPPED_PREFIX = "::ffff:"


@dataclass(frozen=True)
class RequestMeta:
    """Who sent a request, as recorded on audit entries."""

    ip_address: str
    user_agent: str | None = None


def normalize_ip(raw: str) -> str:
    value = raw.strip()
    if value.lower().startswith(_MAPPED_PREFIX):
        value = value[len(_MAPPED_PREFIX) :]
    return value


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0]
        if first.strip():
            return normalize_ip(first)
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return normalize_ip(real_ip)
    if request.client and request.client.host:
        return normalize_ip(request.client.host)
    return "unknown"


def request_meta(request: Request) -> RequestMeta:
    return RequestMeta(ip_address=get_client_ip(request), user_agent=request.headers.get("user-agent"))
