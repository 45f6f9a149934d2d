"""WSGI application serving the admin replay and poller-status endpoints."""

from __future__ import annotations

import dataclasses
import json
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from werkzeug.exceptions import HTTPException
from werkzeug.routing import Map, Rule
from werkzeug.wrappers import Request, Response

from tapadmin.access import (
    AccessDenied,
    AdminAccess,
    AdminGate,
    AdminSettings,
    Observer,
    admin_endpoints_enabled,
)
from tapadmin.jobs import ReplayJobSnapshot, format_rfc3339
from tapadmin.params import (
    MAX_REPLAY_DLQ_LIMIT,
    InvalidParameter,
    parse_admin_reason,
    parse_cursor,
    parse_list_limit,
    parse_optional_bool,
    parse_replay_limit,
    parse_status_filter,
)
from tapadmin.registry import CreateMeta, open_registry
from tapadmin.replay_worker import DlqReplayer, RawPublisher, ReplayRunner
from tapadmin.security import Scope, token_fingerprint

ENDPOINT_REPLAY_DLQ_LIST = "replay_dlq_list"
ENDPOINT_REPLAY_DLQ = "replay_dlq"
ENDPOINT_REPLAY_STATUS = "replay_status"
ENDPOINT_REPLAY_CANCEL = "replay_cancel"
ENDPOINT_POLLER_STATUS = "poller_status"

OUTCOME_SUCCESS = "success"
OUTCOME_BAD_REQUEST = "bad_request"
OUTCOME_CONFLICT = "conflict"
OUTCOME_NOT_FOUND = "not_found"


class _PollerStatusSource(Protocol):
    def snapshot_filtered(self, provider: str, tenant: str) -> Sequence[Any]: ...


def _to_json(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_rfc3339(value)
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


def _json_response(
    status: int,
    body: Mapping[str, Any],
    request_id: str,
    headers: Mapping[str, str] | None = None,
) -> Response:
    response = Response(
        json.dumps(body, default=_to_json) + "\n",
        status=status,
        mimetype="application/json",
    )
    response.headers["X-Request-ID"] = request_id
    for name, value in (headers or {}).items():
        response.headers[name] = value
    return response


class AdminApp:
    """The admin endpoints as a WSGI application."""

    def __init__(
        self,
        settings: AdminSettings,
        dlq: DlqReplayer,
        publisher: RawPublisher,
        poller_statuses: _PollerStatusSource | None = None,
        logger: logging.Logger | None = None,
        *,
        observe_request: Observer | None = None,
        observe_job: Callable[[str], None] | None = None,
    ) -> None:
        self.settings = settings
        self.poller_statuses = poller_statuses
        self._logger = logger or logging.getLogger(__name__)
        self._observe_request = observe_request
        self._observe_job = observe_job
        self.gate = AdminGate(settings, logger=self._logger, observe=observe_request)
        self.max_limit = settings.replay_max_limit if settings.replay_max_limit > 0 else MAX_REPLAY_DLQ_LIMIT
        self.reason_min_len = settings.replay_reason_min_len if settings.replay_reason_min_len > 0 else 1
        try:
            self.registry = open_registry(
                settings.replay_job_max_jobs,
                settings.replay_job_ttl,
                (settings.replay_store_backend or "").strip().lower(),
                (settings.replay_sqlite_path or "").strip(),
                self._logger,
            )
        except ValueError as exc:
            raise ValueError(f"initialize admin replay job registry: {exc}") from exc
        self.runner = ReplayRunner(
            self.registry,
            dlq,
            publisher,
            max_concurrent=settings.replay_max_concurrent,
            job_timeout=settings.replay_job_timeout,
            logger=self._logger,
            observe=observe_job,
        )
        self._url_map = Map(
            [
                Rule("/admin/replay-dlq", methods=["GET"], endpoint="list"),
                Rule("/admin/replay-dlq", methods=["POST"], endpoint="create"),
                Rule("/admin/replay-dlq/<job_id>", methods=["GET"], endpoint="status"),
                Rule("/admin/replay-dlq/<job_id>", methods=["DELETE"], endpoint="cancel"),
                Rule("/admin/poller-status", methods=["GET"], endpoint="pollers"),
            ]
        )
        self._handlers: dict[str, tuple[str, Scope, Callable[..., Response]]] = {
            "list": (ENDPOINT_REPLAY_DLQ_LIST, Scope.READ, self._list),
            "create": (ENDPOINT_REPLAY_DLQ, Scope.REPLAY, self._create),
            "status": (ENDPOINT_REPLAY_STATUS, Scope.READ, self._status),
            "cancel": (ENDPOINT_REPLAY_CANCEL, Scope.CANCEL, self._cancel),
            "pollers": (ENDPOINT_POLLER_STATUS, Scope.READ, self._pollers),
        }

    def __call__(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> Any:
        request = Request(environ)
        adapter = self._url_map.bind_to_environ(environ)
        try:
            name, args = adapter.match()
        except HTTPException as exc:
            return exc(environ, start_response)
        endpoint, scope, handler = self._handlers[name]
        try:
            access = self.gate.check(endpoint, scope, request)
        except AccessDenied as denial:
            response = _json_response(denial.status, denial.body(), denial.request_id, denial.headers)
        else:
            response = handler(request, access, **args)
        return response(environ, start_response)

    def close(self) -> None:
        """Close the job registry and its store."""
        self.registry.close()

    def __enter__(self) -> AdminApp:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _observe(self, endpoint: str, outcome: str, started: float) -> None:
        if self._observe_request is not None:
            self._observe_request(endpoint, outcome, started)

    def _job_stage(self, stage: str) -> None:
        if self._observe_job is not None:
            self._observe_job(stage)

    def _log(
        self,
        level: int,
        message: str,
        request: Request,
        endpoint: str,
        access: AdminAccess,
        started: float,
        **fields: Any,
    ) -> None:
        details = {
            "path": request.path,
            "method": request.method,
            "endpoint": endpoint,
            "request_id": access.request_id,
            "token_slot": access.token_slot,
            "requester_ip": access.request_ip,
            "user_agent": access.user_agent,
            **fields,
            "duration_ms": int((time.monotonic() - started) * 1000),
        }
        self._logger.log(level, "%s %s", message, " ".join(f"{key}={value}" for key, value in details.items()))

    @staticmethod
    def _error(status: int, access: AdminAccess, message: str) -> Response:
        return _json_response(
            status,
            {"request_id": access.request_id.strip(), "error": message.strip()},
            access.request_id,
        )

    def _reject(
        self,
        endpoint: str,
        started: float,
        request: Request,
        access: AdminAccess,
        exc: InvalidParameter,
        message: str,
        **fields: Any,
    ) -> Response:
        self._observe(endpoint, OUTCOME_BAD_REQUEST, started)
        self._log(logging.WARNING, message, request, endpoint, access, started, error=str(exc), **fields)
        return self._error(400, access, str(exc))

    def _list(self, request: Request, access: AdminAccess) -> Response:
        started = time.monotonic()
        endpoint = ENDPOINT_REPLAY_DLQ_LIST
        title = "admin replay dlq list rejected"
        raw_status = request.args.get("status", "")
        try:
            status_filter = parse_status_filter(raw_status)
        except InvalidParameter as exc:
            return self._reject(endpoint, started, request, access, exc, title, status_raw=raw_status.strip())
        raw_limit = request.args.get("limit", "")
        try:
            limit = parse_list_limit(raw_limit)
        except InvalidParameter as exc:
            return self._reject(endpoint, started, request, access, exc, title, limit_raw=raw_limit.strip())
        cursor_raw = request.args.get("cursor", "").strip()
        try:
            cursor_created_at, cursor_job_id = parse_cursor(cursor_raw)
        except InvalidParameter as exc:
            return self._reject(endpoint, started, request, access, exc, title, cursor_raw=cursor_raw)
        page = self.registry.list_jobs(status_filter, limit, cursor_created_at, cursor_job_id)
        status_text = "" if status_filter is None else status_filter.value
        response = _json_response(
            200,
            {
                "request_id": access.request_id,
                "status": status_text,
                "limit": limit,
                "cursor": cursor_raw,
                "next_cursor": page.next_cursor,
                "count": len(page.jobs),
                "summary": page.summary,
                "jobs": [job.to_dict() for job in page.jobs],
            },
            access.request_id,
        )
        self._observe(endpoint, OUTCOME_SUCCESS, started)
        self._log(
            logging.INFO, "admin replay dlq list fetched", request, endpoint, access, started,
            status_filter=status_text,
            limit=limit,
            cursor_present=bool(cursor_raw),
            next_cursor_present=bool(page.next_cursor),
            count=len(page.jobs),
        )
        return response

    def _create(self, request: Request, access: AdminAccess) -> Response:
        started = time.monotonic()
        endpoint = ENDPOINT_REPLAY_DLQ
        title = "admin replay dlq rejected"
        raw_limit = request.args.get("limit", "")
        try:
            limit = parse_replay_limit(raw_limit, self.max_limit)
        except InvalidParameter as exc:
            return self._reject(
                endpoint, started, request, access, exc, title, requested_limit_raw=raw_limit.strip()
            )
        raw_dry_run = request.args.get("dry_run", "")
        try:
            dry_run = parse_optional_bool(raw_dry_run, False)
        except InvalidParameter as exc:
            return self._reject(endpoint, started, request, access, exc, title, dry_run_raw=raw_dry_run.strip())
        try:
            reason = parse_admin_reason(
                request.headers.get("X-Admin-Reason", ""),
                self.settings.replay_require_reason,
                self.reason_min_len,
            )
        except InvalidParameter as exc:
            return self._reject(endpoint, started, request, access, exc, title)
        idempotency_key = request.headers.get("Idempotency-Key", "").strip()
        outcome = self.registry.get_or_create_with_guards(
            ReplayJobSnapshot(
                requested_limit=limit.requested,
                effective_limit=limit.effective,
                max_limit=self.max_limit,
                capped=limit.capped,
                dry_run=dry_run,
            ),
            CreateMeta(
                operator_reason=reason,
                creator_ip=access.request_ip,
                creator_token_fingerprint=access.token_fingerprint,
                request_id=access.request_id,
            ),
            idempotency_key,
            self.settings.replay_max_queued_per_ip,
            self.settings.replay_max_queued_per_token,
        )
        job = outcome.job
        if outcome.conflict:
            self._observe(endpoint, OUTCOME_CONFLICT, started)
            self._job_stage("conflict")
            self._log(
                logging.WARNING, "admin replay dlq idempotency conflict", request, endpoint, access, started,
                idempotency_key_fingerprint=token_fingerprint(idempotency_key),
                job_id=job.job_id if job else "",
                requested_limit=limit.requested,
                effective_limit=limit.effective,
                dry_run=dry_run,
            )
            return self._error(409, access, "idempotency key already used for different replay parameters")
        if outcome.queue_conflict or job is None:
            self._observe(endpoint, OUTCOME_CONFLICT, started)
            self._job_stage("queue_limited")
            self._log(
                logging.WARNING, "admin replay dlq queue limit conflict", request, endpoint, access, started,
                queue_scope=outcome.queue_scope,
                queue_count=outcome.queue_count,
            )
            return self._error(409, access, "replay queue limit exceeded for caller scope")
        if outcome.reused:
            response = _json_response(
                200,
                {"request_id": access.request_id, "idempotency_reused": True, "job": job.to_dict()},
                access.request_id,
            )
            self._observe(endpoint, OUTCOME_SUCCESS, started)
            self._job_stage("reused")
            self._log(
                logging.INFO, "admin replay dlq idempotency reused", request, endpoint, access, started,
                job_id=job.job_id,
            )
            return response
        self._job_stage("accepted")
        self.runner.submit(job.job_id, job.effective_limit, job.dry_run, access.token_slot, access.request_ip)
        response = _json_response(202, {"request_id": access.request_id, "job": job.to_dict()}, access.request_id)
        self._observe(endpoint, OUTCOME_SUCCESS, started)
        self._log(
            logging.INFO, "admin replay dlq accepted", request, endpoint, access, started,
            job_id=job.job_id,
            requested_limit=limit.requested,
            effective_limit=limit.effective,
            dry_run=dry_run,
            operator_reason=reason,
            capped=limit.capped,
        )
        return response

    def _status(self, request: Request, access: AdminAccess, job_id: str) -> Response:
        started = time.monotonic()
        endpoint = ENDPOINT_REPLAY_STATUS
        job_id = job_id.strip()
        if not job_id:
            self._observe(endpoint, OUTCOME_BAD_REQUEST, started)
            return self._error(400, access, "job_id is required")
        job = self.registry.get(job_id)
        if job is None:
            self._observe(endpoint, OUTCOME_NOT_FOUND, started)
            self._log(
                logging.WARNING, "admin replay dlq status missing", request, endpoint, access, started,
                job_id=job_id,
            )
            return self._error(404, access, "replay job not found")
        response = _json_response(200, {"request_id": access.request_id, "job": job.to_dict()}, access.request_id)
        self._observe(endpoint, OUTCOME_SUCCESS, started)
        self._log(
            logging.INFO, "admin replay dlq status fetched", request, endpoint, access, started,
            job_id=job_id,
            status=job.status,
        )
        return response

    def _cancel(self, request: Request, access: AdminAccess, job_id: str) -> Response:
        started = time.monotonic()
        endpoint = ENDPOINT_REPLAY_CANCEL
        job_id = job_id.strip()
        if not job_id:
            self._observe(endpoint, OUTCOME_BAD_REQUEST, started)
            return self._error(400, access, "job_id is required")
        try:
            reason = parse_admin_reason(
                request.headers.get("X-Admin-Reason", ""),
                self.settings.replay_require_reason,
                self.reason_min_len,
            )
        except InvalidParameter as exc:
            self._observe(endpoint, OUTCOME_BAD_REQUEST, started)
            return self._error(400, access, str(exc))
        outcome = self.registry.cancel_queued(job_id, reason)
        if not outcome.found or outcome.job is None:
            self._observe(endpoint, OUTCOME_NOT_FOUND, started)
            self._log(
                logging.WARNING, "admin replay dlq cancel missing", request, endpoint, access, started,
                job_id=job_id,
                cancel_reason=reason,
            )
            return self._error(404, access, "replay job not found")
        if not outcome.cancelled:
            self._observe(endpoint, OUTCOME_CONFLICT, started)
            self._log(
                logging.WARNING, "admin replay dlq cancel conflict", request, endpoint, access, started,
                job_id=job_id,
                status=outcome.job.status,
            )
            return self._error(409, access, "replay job cannot be cancelled once running or completed")
        self._job_stage("cancelled")
        response = _json_response(
            200, {"request_id": access.request_id, "job": outcome.job.to_dict()}, access.request_id
        )
        self._observe(endpoint, OUTCOME_SUCCESS, started)
        self._log(logging.INFO, "admin replay dlq cancelled", request, endpoint, access, started, job_id=job_id)
        return response

    def _pollers(self, request: Request, access: AdminAccess) -> Response:
        started = time.monotonic()
        endpoint = ENDPOINT_POLLER_STATUS
        provider = request.args.get("provider", "").strip()
        tenant = request.args.get("tenant", "").strip()
        statuses = (
            [] if self.poller_statuses is None else list(self.poller_statuses.snapshot_filtered(provider, tenant))
        )
        response = _json_response(
            200,
            {
                "generated_at": datetime.now(timezone.utc),
                "request_id": access.request_id,
                "provider": provider,
                "tenant": tenant,
                "count": len(statuses),
                "pollers": statuses,
            },
            access.request_id,
        )
        self._observe(endpoint, OUTCOME_SUCCESS, started)
        self._log(
            logging.INFO, "admin poller status fetched", request, endpoint, access, started,
            provider_filter=provider,
            tenant_filter=tenant,
            poller_count=len(statuses),
        )
        return response


def build_admin_app(
    settings: AdminSettings,
    dlq: DlqReplayer,
    publisher: RawPublisher,
    poller_statuses: _PollerStatusSource | None = None,
    logger: logging.Logger | None = None,
) -> AdminApp | None:
    """Build the admin application, or ``None`` when no admin token is configured."""
    if not admin_endpoints_enabled(settings):
        return None
    return AdminApp(settings, dlq, publisher, poller_statuses, logger)