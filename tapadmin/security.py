"""Token checks, caller fingerprints and network allowlists."""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import math
from collections.abc import Iterable
from enum import Enum

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


class Scope(str, Enum):
    """Permission scopes for admin endpoints."""

    READ = "read"
    REPLAY = "replay"
    CANCEL = "cancel"

    def __str__(self) -> str:
        return self.value


def secure_token_equal(actual: str, expected: str) -> bool:
    """Compare two tokens in constant time; blank tokens never match."""
    actual = (actual or "").strip()
    expected = (expected or "").strip()
    if not actual or not expected:
        return False
    return hmac.compare_digest(
        hashlib.sha256(actual.encode()).digest(),
        hashlib.sha256(expected.encode()).digest(),
    )


def authorize_token(actual: str, primary: str, secondary: str) -> str | None:
    """Return ``"primary"`` or ``"secondary"`` for a matching global token."""
    primary_match = secure_token_equal(actual, primary)
    secondary_match = bool((secondary or "").strip()) and secure_token_equal(actual, secondary)
    if primary_match:
        return "primary"
    if secondary_match:
        return "secondary"
    return None


def authorize_token_for_scope(
    actual: str,
    scope: Scope | str,
    global_primary: str,
    global_secondary: str,
    read_token: str,
    replay_token: str,
    cancel_token: str,
) -> str | None:
    """Return the name of the token slot that grants ``scope``, if any."""
    slot = authorize_token(actual, global_primary, global_secondary)
    if slot is not None:
        return slot
    try:
        scope = Scope(str(scope.value if isinstance(scope, Scope) else scope).strip().lower())
    except ValueError:
        return None
    if scope is Scope.READ:
        candidates = (("read", read_token), ("replay", replay_token), ("cancel", cancel_token))
    elif scope is Scope.REPLAY:
        candidates = (("replay", replay_token),)
    else:
        candidates = (("cancel", cancel_token),)
    for name, expected in candidates:
        if secure_token_equal(actual, expected):
            return name
    return None


def token_fingerprint(token: str) -> str:
    """Short, non-reversible identifier for a token."""
    token = (token or "").strip()
    if not token:
        return ""
    return hashlib.sha256(token.encode()).hexdigest()[:16]


def retry_after_seconds(limit_per_sec: float) -> int:
    """Seconds a rate-limited caller should wait before retrying."""
    if limit_per_sec <= 0:
        return 1
    return max(1, math.ceil(1 / limit_per_sec))


def parse_allowed_cidrs(raw: Iterable[str]) -> list[IPNetwork]:
    """Parse CIDR strings, skipping blanks; raise ValueError on a bad entry."""
    networks: list[IPNetwork] = []
    for entry in raw:
        cidr = (entry or "").strip()
        if not cidr:
            continue
        _, sep, prefix = cidr.partition("/")
        if not sep or not prefix.isdigit():
            raise ValueError(f'invalid CIDR "{cidr}"')
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            raise ValueError(f'invalid CIDR "{cidr}"') from None
    return networks


def requester_allowed(request_ip: str, allow: Iterable[IPNetwork]) -> bool:
    """Whether ``request_ip`` falls inside one of the allowed networks."""
    networks = [network for network in allow if network is not None]
    if not networks:
        return True
    try:
        address = ipaddress.ip_address((request_ip or "").strip())
    except ValueError:
        return False
    candidates = [address]
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        candidates.append(address.ipv4_mapped)
    return any(candidate in network for network in networks for candidate in candidates)