"""Admission checks for admin requests: allowlist, mTLS, rate limits and tokens."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from werkzeug.wrappers import Request

from tapadmin.ratelimit import RateLimiterRegistry
from tapadmin.security import (
    Scope,
    authorize_token_for_scope,
    parse_allowed_cidrs,
    requester_allowed,
    retry_after_seconds,
    token_fingerprint,
)

OUTCOME_FORBIDDEN = "forbidden"
OUTCOME_RATE_LIMITED = "rate_limited"
OUTCOME_UNAUTHORIZED = "unauthorized"

Observer = Callable[[str, str, float], None]


@dataclass
class AdminSettings:
    """Admin endpoint configuration; zero or blank values select defaults."""

    token: str = ""
    token_secondary: str = ""
    token_read: str = ""
    token_replay: str = ""
    token_cancel: str = ""
    replay_max_limit: int = 0
    rate_limit_per_sec: float = 0.0
    rate_limit_burst: int = 0
    allowed_cidrs: Sequence[str] = field(default_factory=tuple)
    mtls_required: bool = False
    mtls_client_cert_header: str = ""
    replay_job_timeout: float = 0.0
    replay_max_concurrent: int = 0
    replay_require_reason: bool = False
    replay_reason_min_len: int = 0
    replay_max_queued_per_ip: int = 0
    replay_max_queued_per_token: int = 0
    replay_store_backend: str = ""
    replay_sqlite_path: str = ""
    replay_job_max_jobs: int = 0
    replay_job_ttl: timedelta | float | None = None


@dataclass(frozen=True)
class AdminAccess:
    """An admitted caller."""

    request_id: str
    token_slot: str
    token_fingerprint: str
    user_agent: str
    request_ip: str


class AccessDenied(Exception):
    """A request was refused before reaching its handler."""

    def __init__(
        self,
        status: int,
        message: str,
        request_id: str,
        outcome: str,
        reason: str = "",
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.request_id = request_id
        self.outcome = outcome
        self.reason = reason
        self.headers: dict[str, str] = dict(headers or {})

    def body(self) -> dict[str, str]:
        """The JSON error body sent to the caller."""
        return {"request_id": self.request_id.strip(), "error": self.message.strip()}


def _header(headers: Any, name: str) -> str:
    if headers is None:
        return ""
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted:
            return str(value)
    return ""


def admin_endpoints_enabled(settings: AdminSettings) -> bool:
    """Admin endpoints exist only when at least one token is configured."""
    return any(
        (value or "").strip()
        for value in (
            settings.token,
            settings.token_secondary,
            settings.token_read,
            settings.token_replay,
            settings.token_cancel,
        )
    )


def _split_host(addr: str) -> str | None:
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0 or addr[end + 1 : end + 2] != ":":
            return None
        host = addr[1:end]
        return None if "[" in host or "]" in addr[end + 1 :] else host
    colon = addr.rfind(":")
    if colon < 0:
        return None
    host = addr[:colon]
    if ":" in host or "[" in host or "]" in host:
        return None
    return host


def requester_ip(headers: Any, remote_addr: str | None) -> str:
    """The caller's address, preferring proxy headers over the peer address."""
    forwarded = _header(headers, "X-Forwarded-For").strip()
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = _header(headers, "X-Real-IP").strip()
    if real_ip:
        return real_ip
    remote = (remote_addr or "").strip()
    if not remote:
        return ""
    host = _split_host(remote)
    return host if host else remote


def request_id(headers: Any) -> str:
    """The caller's request id, or a freshly generated one."""
    for name in ("X-Request-ID", "X-Correlation-ID"):
        value = _header(headers, name).strip()
        if value:
            return value
    return f"admin-{time.time_ns()}"


def has_client_cert(environ: Mapping[str, Any] | None, headers: Any, forwarded_header: str) -> bool:
    """Whether the caller presented a verified client certificate."""
    if environ is not None and str(environ.get("SSL_CLIENT_VERIFY", "")).strip().upper() == "SUCCESS":
        return True
    forwarded_header = (forwarded_header or "").strip()
    if not forwarded_header:
        return False
    return bool(_header(headers, forwarded_header).strip())


class AdminGate:
    """Applies allowlist, mTLS, rate-limit and token checks in that order."""

    def __init__(
        self,
        settings: AdminSettings,
        *,
        logger: logging.Logger | None = None,
        observe: Observer | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self._logger = logger or logging.getLogger(__name__)
        self._observe = observe
        self._tokens = tuple(
            (value or "").strip()
            for value in (
                settings.token,
                settings.token_secondary,
                settings.token_read,
                settings.token_replay,
                settings.token_cancel,
            )
        )
        rate = settings.rate_limit_per_sec if settings.rate_limit_per_sec > 0 else 1.0
        burst = settings.rate_limit_burst if settings.rate_limit_burst > 0 else 1
        try:
            self.allowed_networks = parse_allowed_cidrs(settings.allowed_cidrs or ())
        except ValueError as exc:
            raise ValueError(f"parse admin allowlist: {exc}") from exc
        self.retry_after = retry_after_seconds(rate)
        self.limiters = RateLimiterRegistry(rate, burst, clock=clock)
        self._cert_header = (settings.mtls_client_cert_header or "").strip()

    def _deny(
        self,
        endpoint: str,
        started: float,
        request: Request,
        denial: AccessDenied,
        request_ip: str,
        user_agent: str,
        title: str,
    ) -> AccessDenied:
        if self._observe is not None:
            self._observe(endpoint, denial.outcome, started)
        self._logger.warning(
            "%s path=%s method=%s endpoint=%s request_id=%s requester_ip=%s "
            "user_agent=%s reason=%s duration_ms=%d",
            title,
            request.path,
            request.method,
            endpoint,
            denial.request_id,
            request_ip,
            user_agent,
            denial.reason,
            int((time.monotonic() - started) * 1000),
        )
        return denial

    def check(self, endpoint: str, scope: Scope | str, request: Request) -> AdminAccess:
        """Admit the request or raise AccessDenied with the response to send."""
        headers = request.headers
        req_id = request_id(headers)
        user_agent = _header(headers, "User-Agent").strip()
        ip = requester_ip(headers, request.remote_addr)
        started = time.monotonic()

        if self.allowed_networks and not requester_allowed(ip, self.allowed_networks):
            raise self._deny(
                endpoint, started, request,
                AccessDenied(403, "forbidden", req_id, OUTCOME_FORBIDDEN, "cidr_allowlist_miss"),
                ip, user_agent, "admin request forbidden",
            )
        if self.settings.mtls_required and not has_client_cert(request.environ, headers, self._cert_header):
            raise self._deny(
                endpoint, started, request,
                AccessDenied(
                    403, "mTLS client certificate required", req_id, OUTCOME_FORBIDDEN, "mtls_required"
                ),
                ip, user_agent, "admin request forbidden",
            )
        presented = _header(headers, "X-Admin-Token").strip()
        allowed, limit_scope = self.limiters.allow(endpoint, ip, presented)
        if not allowed:
            raise self._deny(
                endpoint, started, request,
                AccessDenied(
                    429,
                    "rate limit exceeded",
                    req_id,
                    OUTCOME_RATE_LIMITED,
                    limit_scope,
                    {"Retry-After": str(self.retry_after)},
                ),
                ip, user_agent, "admin request rate limited",
            )
        slot = authorize_token_for_scope(presented, scope, *self._tokens)
        if slot is None:
            raise self._deny(
                endpoint, started, request,
                AccessDenied(401, "unauthorized", req_id, OUTCOME_UNAUTHORIZED, "token_mismatch"),
                ip, user_agent, "admin request unauthorized",
            )
        return AdminAccess(
            request_id=req_id,
            token_slot=slot,
            token_fingerprint=token_fingerprint(presented),
            user_agent=user_agent,
            request_ip=ip,
        )