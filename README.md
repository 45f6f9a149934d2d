# tapadmin

`tapadmin` is a WSGI application for the admin side of an event ingestion
service. Operators use it to list, queue, inspect and cancel replays of events
held in a dead-letter queue, and to read poller status. Access is controlled by
scoped tokens, an optional IP allowlist, an optional client-certificate
requirement and per-caller rate limits.

## Building the application

```python
from tapadmin.access import AdminSettings
from tapadmin.routes import build_admin_app

settings = AdminSettings(token="token", replay_store_backend="sqlite",
                         replay_sqlite_path="data/replay-jobs.db")
app = build_admin_app(settings, dlq, publisher, poller_statuses, logger)
```

`build_admin_app` returns `None` when no token at all is configured in
`AdminSettings`; otherwise it returns an `AdminApp`, a WSGI callable that any
WSGI server can host. Call `AdminApp.close()` (or use it as a context manager)
to close the job store on shutdown.

The collaborators are supplied by you:

- `dlq` follows `tapadmin.replay_worker.DlqReplayer`: `pending()` returns the
  number of waiting messages, and `replay(limit, publish, timeout)` replays up
  to `limit` of them through `publish` and returns how many it replayed.
- `publisher` follows `tapadmin.replay_worker.RawPublisher`:
  `publish_raw(subject, payload, dedup_id, request_id)`.
- `poller_statuses` (optional) has `snapshot_filtered(provider, tenant)`
  returning a sequence of JSON-encodable items (dataclasses are accepted).

`AdminApp` also takes keyword-only `observe_request(endpoint, outcome, started)`
and `observe_job(stage)` callbacks, which are called as requests finish and as
replay jobs move through their stages; wire them to whatever metrics you keep.

`AdminSettings` fields left at zero or blank take defaults: a replay limit cap
of 2000, 1 request per second with a burst of 1, one concurrent replay, a
five-minute replay timeout, at most 512 remembered jobs kept for 24 hours, and
the in-memory job store.

## HTTP endpoints

| Method   | Path                         | Scope  | Purpose                                   |
|----------|------------------------------|--------|-------------------------------------------|
| `GET`    | `/admin/replay-dlq`          | read   | List replay jobs with a status summary    |
| `POST`   | `/admin/replay-dlq`          | replay | Queue a replay (or dry run) of DLQ events |
| `GET`    | `/admin/replay-dlq/{job_id}` | read   | Fetch a single replay job                 |
| `DELETE` | `/admin/replay-dlq/{job_id}` | cancel | Cancel a job that is still queued         |
| `GET`    | `/admin/poller-status`       | read   | Show poller status, filterable            |

The token goes in the `X-Admin-Token` header:

- the primary and secondary tokens authorize every scope;
- the read token authorizes read endpoints only;
- the replay token authorizes replays and reads;
- the cancel token authorizes cancellation and reads.

Other headers:

- `X-Request-ID` / `X-Correlation-ID` is echoed back as `X-Request-ID`; one is
  generated when neither is sent.
- `X-Forwarded-For` (first entry) or `X-Real-IP` identify the caller for the
  allowlist, rate limits and queue limits; otherwise the peer address is used.
- `X-Admin-Reason` records why a replay or cancellation was asked for; it can be
  required and given a minimum length.
- `Idempotency-Key`: repeating a replay with the same key and parameters returns
  the existing job with `200`; the same key with different parameters gets
  `409`.
- When `mtls_required` is set, the request must either carry
  `SSL_CLIENT_VERIFY=SUCCESS` in its WSGI environ or a non-empty value in the
  header named by `mtls_client_cert_header`.

Query parameters:

- `POST /admin/replay-dlq`: `limit` (default 100, capped at the configured
  maximum) and `dry_run` (`1`, `t`, `true`, `0`, `f`, `false` and their
  capitalised forms). A new job is answered with `202`.
- `GET /admin/replay-dlq`: `status` (`queued`, `running`, `succeeded`, `failed`,
  `cancelled`), `limit` (default 50, at most 200) and `cursor`, taken from the
  previous page's `next_cursor`. Jobs are listed newest first.
- `GET /admin/poller-status`: `provider` and `tenant`.

Errors are JSON of the form `{"request_id": ..., "error": ...}`: `400` for bad
input, `401` for a token that does not grant the scope, `403` for an allowlist
or client-certificate failure, `404` for an unknown job, `409` for an
idempotency, queue-limit or cancellation conflict, and `429` with `Retry-After`
when a rate limit is hit.

## Using the pieces directly

- `tapadmin.registry`: `ReplayJobRegistry` and `open_registry(max_jobs, ttl,
  backend, sqlite_path, logger)` with backend `"memory"` or `"sqlite"`. With
  SQLite, jobs, idempotency keys and job numbering survive a restart.
- `tapadmin.sqlite_store.ReplayJobStore`: the SQLite store, usable as a context
  manager.
- `tapadmin.replay_worker.ReplayRunner`: runs jobs on background threads with
  bounded concurrency; `join(timeout)` waits for them.
- `tapadmin.access.AdminGate`: the admission checks, raising `AccessDenied`.
- `tapadmin.ratelimit`: `TokenBucket` and `RateLimiterRegistry`.

```python
from tapadmin.params import encode_cursor, parse_cursor, parse_status_filter
from tapadmin.security import authorize_token, token_fingerprint

parse_status_filter("RUNNING")          # JobStatus.RUNNING
authorize_token("token", "token", "")   # "primary"
token_fingerprint("token")              # first 16 hex digits of its SHA-256
```

`parse_cursor` decodes what `encode_cursor` produced into a creation time and a
job id. The `parse_*` helpers raise `InvalidParameter` on bad input.

## What this package does not do

It has no command and starts no server; host `AdminApp` in a WSGI server of
your choice. It contains no dead-letter queue, message publisher or poller
registry of its own, does not read configuration files, and exports no metrics
itself beyond the callbacks described above.

## Running the tests

Install the package with its `test` extra, then run `pytest` from the project
root.