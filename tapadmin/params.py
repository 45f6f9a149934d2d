"""Parsing of admin request parameters."""

from __future__ import annotations

import base64
import json
import re
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

from tapadmin.jobs import JobStatus

DEFAULT_REPLAY_DLQ_LIMIT = 100
MAX_REPLAY_DLQ_LIMIT = 2000
DEFAULT_REPLAY_LIST_LIMIT = 50
MAX_REPLAY_LIST_LIMIT = 200

_INT64_MAX = 2**63 - 1
_INT64_MIN = -(2**63)
_INTEGER = re.compile(r"[+-]?[0-9]+\Z")
_RAW_URL_BASE64 = re.compile(r"[A-Za-z0-9_-]*\Z")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class InvalidParameter(ValueError):
    """A request parameter could not be accepted."""


class ReplayLimit(NamedTuple):
    """The requested and effective replay limits."""

    requested: int
    effective: int
    capped: bool


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _parse_int64(raw: str) -> int | None:
    if not _INTEGER.match(raw):
        return None
    value = int(raw)
    if not _INT64_MIN <= value <= _INT64_MAX:
        return None
    return value


def parse_replay_limit(raw: str, max_limit: int) -> ReplayLimit:
    """Parse the replay ``limit`` query value, capping it at ``max_limit``."""
    if max_limit <= 0:
        max_limit = MAX_REPLAY_DLQ_LIMIT
    raw = (raw or "").strip()
    if not raw:
        effective = DEFAULT_REPLAY_DLQ_LIMIT
        if effective > max_limit:
            return ReplayLimit(0, max_limit, True)
        return ReplayLimit(0, effective, False)
    requested = _parse_int64(raw)
    if requested is None:
        raise InvalidParameter(f"invalid limit {_quote(raw)}: must be a positive integer")
    if requested <= 0:
        raise InvalidParameter(f"invalid limit {_quote(raw)}: must be greater than 0")
    if requested > max_limit:
        return ReplayLimit(requested, max_limit, True)
    return ReplayLimit(requested, requested, False)


def parse_list_limit(raw: str) -> int:
    """Parse the job list ``limit`` query value."""
    raw = (raw or "").strip()
    if not raw:
        return DEFAULT_REPLAY_LIST_LIMIT
    parsed = _parse_int64(raw)
    if parsed is None:
        raise InvalidParameter(f"invalid list limit {_quote(raw)}: must be a positive integer")
    if parsed <= 0:
        raise InvalidParameter(f"invalid list limit {_quote(raw)}: must be greater than 0")
    return min(parsed, MAX_REPLAY_LIST_LIMIT)


def parse_status_filter(raw: str) -> JobStatus | None:
    """Parse the ``status`` filter; ``None`` means every status."""
    stripped = (raw or "").strip()
    if not stripped:
        return None
    try:
        return JobStatus(stripped.lower())
    except ValueError:
        raise InvalidParameter(
            f"invalid status {_quote(stripped)}: must be one of queued|running|succeeded|failed|cancelled"
        ) from None


def _unix_nanos(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return ((value - _EPOCH) // timedelta(microseconds=1)) * 1000


def parse_cursor(raw: str) -> tuple[datetime | None, str]:
    """Decode a list cursor into its creation time and job id."""
    raw = (raw or "").strip()
    if not raw:
        return None, ""
    if not _RAW_URL_BASE64.match(raw) or len(raw) % 4 == 1:
        raise InvalidParameter("invalid cursor: malformed encoding")
    try:
        decoded = base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))
    except ValueError:
        raise InvalidParameter("invalid cursor: malformed encoding") from None
    parts = decoded.decode("utf-8", errors="replace").split("|", 1)
    if len(parts) != 2:
        raise InvalidParameter("invalid cursor: malformed payload")
    nanos = _parse_int64(parts[0].strip())
    if nanos is None:
        raise InvalidParameter("invalid cursor: bad timestamp")
    job_id = parts[1].strip()
    if not job_id:
        raise InvalidParameter("invalid cursor: missing job id")
    return _EPOCH + timedelta(microseconds=nanos // 1000), job_id


def encode_cursor(created_at: datetime | None, job_id: str) -> str:
    """Encode a list cursor; empty when either part is missing."""
    job_id = (job_id or "").strip()
    if created_at is None or not job_id:
        return ""
    payload = f"{_unix_nanos(created_at)}|{job_id}".encode()
    return base64.urlsafe_b64encode(payload).decode("ascii").rstrip("=")


def parse_optional_bool(raw: str, fallback: bool) -> bool:
    """Parse a boolean query value, returning ``fallback`` when blank."""
    raw = (raw or "").strip()
    if not raw:
        return fallback
    if raw in _TRUE_WORDS:
        return True
    if raw in _FALSE_WORDS:
        return False
    raise InvalidParameter(f"invalid boolean {_quote(raw)}")


def parse_admin_reason(raw: str, required: bool, min_length: int) -> str:
    """Validate the operator reason header."""
    reason = (raw or "").strip()
    if not reason:
        if required:
            raise InvalidParameter("X-Admin-Reason header is required")
        return ""
    if min_length <= 0:
        min_length = 1
    if len(reason.encode("utf-8")) < min_length:
        raise InvalidParameter(f"X-Admin-Reason must be at least {min_length} characters")
    return reason