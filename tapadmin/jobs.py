"""Replay job records and their JSON representation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

ZERO_TIME_TEXT = "0001-01-01T00:00:00Z"

_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})"
    r"(?:\.(\d{1,9}))?"
    r"([Zz]|[+-]\d{2}:\d{2})\Z"
)


class JobStatus(str, Enum):
    """Lifecycle states of a replay job."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


def format_rfc3339(value: datetime) -> str:
    """Format a timestamp in UTC with trailing fractional zeros removed."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    fraction = f"{value.microsecond:06d}".rstrip("0")
    if fraction:
        text += "." + fraction
    return text + "Z"


def parse_rfc3339(text: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    match = _RFC3339.match(text)
    if match is None:
        raise ValueError(f"invalid RFC 3339 timestamp {text!r}")
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    microsecond = int((fraction or "").ljust(6, "0")[:6])
    if offset in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if offset[0] == "-" else 1
        off_hours, off_minutes = int(offset[1:3]), int(offset[4:6])
        if off_hours >= 24 or off_minutes >= 60:
            raise ValueError(f"invalid RFC 3339 offset in {text!r}")
        tz = timezone(sign * timedelta(hours=off_hours, minutes=off_minutes))
    parsed = datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), microsecond, tzinfo=tz
    )
    return parsed.astimezone(timezone.utc)


def _timestamp_text(value: datetime | None) -> str:
    return ZERO_TIME_TEXT if value is None else format_rfc3339(value)


@dataclass
class ReplayJobSnapshot:
    """The publicly visible state of a replay job."""

    job_id: str = ""
    status: JobStatus = JobStatus.QUEUED
    requested_limit: int = 0
    effective_limit: int = 0
    max_limit: int = 0
    capped: bool = False
    dry_run: bool = False
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    replayed: int = 0
    request_id: str = ""
    operator_reason: str = ""
    cancel_reason: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready mapping, omitting empty optional fields."""
        status = self.status.value if isinstance(self.status, JobStatus) else str(self.status)
        out: dict[str, Any] = {"job_id": self.job_id, "status": status}
        if self.requested_limit:
            out["requested_limit"] = self.requested_limit
        out["effective_limit"] = self.effective_limit
        out["max_limit"] = self.max_limit
        out["capped"] = self.capped
        out["dry_run"] = self.dry_run
        out["created_at"] = _timestamp_text(self.created_at)
        out["started_at"] = _timestamp_text(self.started_at)
        out["completed_at"] = _timestamp_text(self.completed_at)
        out["replayed"] = self.replayed
        for key in ("request_id", "operator_reason", "cancel_reason", "error"):
            value = getattr(self, key)
            if value:
                out[key] = value
        return out

    def same_request(self, other: ReplayJobSnapshot) -> bool:
        """Whether both snapshots describe the same replay parameters."""
        return (
            self.requested_limit == other.requested_limit
            and self.effective_limit == other.effective_limit
            and self.max_limit == other.max_limit
            and self.capped == other.capped
            and self.dry_run == other.dry_run
        )


@dataclass
class ReplayJob:
    """A replay job with its private bookkeeping."""

    snapshot: ReplayJobSnapshot = field(default_factory=ReplayJobSnapshot)
    idempotency_key: str = ""
    creator_ip: str = ""
    creator_token_fingerprint: str = ""
    updated_at: datetime | None = None