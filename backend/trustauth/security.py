"""Request-context helpers (client IP, user agent, response hardening)."""

from __future__ import annotations

import ipaddress

from fastapi import Request, Response

from .config import settings


def get_client_ip(request: Request) -> str:
    if settings.TRUST_PROXY_HEADERS:
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            try:
                ipaddress.ip_address(real_ip)
                return real_ip
            except ValueError:
                pass

        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # X-Forwarded-For may contain a list: client, proxy1, proxy2
            candidate = forwarded.split(",")[0].strip()
            try:
                ipaddress.ip_address(candidate)
                return candidate
            except ValueError:
                pass

    if request.client:
        return request.client.host
    return "unknown"


def get_user_agent(request: Request) -> str | None:
    value = (request.headers.get("user-agent") or "").strip()
    return value[:512] or None


def is_request_https(request: Request) -> bool:
    if settings.TRUST_PROXY_HEADERS:
        proto = request.headers.get("x-forwarded-proto")
        if proto:
            return proto.split(",")[0].strip().lower() == "https"
    return request.url.scheme == "https"


def set_no_store(response: Response) -> None:
    # Reduce the chance of logging/caching secrets (OTP codes, tokens).
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"
