from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import replace
from typing import Any, Callable, Optional

from aiohttp import WSMsgType, web

from .access import AccessControl, Principal
from .config import BridgeConfig
from .errors import (
    BridgeError,
    Forbidden,
    HandleSpaceExhausted,
    InvalidParticipant,
    NotFound,
    RateLimited,
    ThreadAlreadyExists,
    ThreadArchived,
    Unavailable,
    ValidationError,
)
from .identity import IdentityIssuer
from .messages import MessageLog
from .models import ThreadChange, _now_ms
from .moderation import ModerationSink
from .notifier import ChangeNotifier, Subscription
from .sessions import SQLiteSessionStore
from .sqlite_backend import SQLiteBackend
from .threads import DEFAULT_PAGE_SIZE, ThreadDirectory


logger = logging.getLogger(__name__)


class Unauthorized(BridgeError):
    code = "unauthorized"


_STATUS_BY_ERROR = (
    (Unauthorized, 401),
    (ValidationError, 400),
    (InvalidParticipant, 422),
    (Forbidden, 403),
    (NotFound, 404),
    (ThreadAlreadyExists, 409),
    (ThreadArchived, 409),
    (RateLimited, 429),
    (HandleSpaceExhausted, 503),
    (Unavailable, 503),
)


class Runtime:
    def __init__(
        self,
        *,
        config: BridgeConfig,
        backend: SQLiteBackend,
        identity: IdentityIssuer,
        directory: ThreadDirectory,
        log: MessageLog,
        moderation: ModerationSink,
        access: AccessControl,
        sessions: SQLiteSessionStore,
        notifier: ChangeNotifier,
    ) -> None:
        self.config = config
        self.backend = backend
        self.identity = identity
        self.directory = directory
        self.log = log
        self.moderation = moderation
        self.access = access
        self.sessions = sessions
        self.notifier = notifier


def build_runtime(
    config: BridgeConfig,
    *,
    now_func: Callable[[], int] = _now_ms,
    rng: Optional[random.Random] = None,
) -> Runtime:
    backend = SQLiteBackend(config.db_path, timeout_s=config.store_timeout_s, retries=config.store_retries)
    notifier = ChangeNotifier()
    identity = IdentityIssuer(
        backend,
        handle_min=config.handle_min,
        handle_max=config.handle_max,
        max_attempts=config.handle_max_attempts,
        rng=rng,
        now_func=now_func,
    )
    directory = ThreadDirectory(backend, now_func=now_func)
    log = MessageLog(backend, notifier, now_func=now_func)
    moderation = ModerationSink(backend, reports_per_min=config.reports_per_min, now_func=now_func)
    return Runtime(
        config=config,
        backend=backend,
        identity=identity,
        directory=directory,
        log=log,
        moderation=moderation,
        access=AccessControl(identity, directory, log, moderation),
        sessions=SQLiteSessionStore(backend, config.session_ttl_ms, now_func=now_func),
        notifier=notifier,
    )


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


def _error_response(code: str, message: str, status: int, **extra: Any) -> web.Response:
    body = {"code": code, "message": message}
    body.update(extra)
    return web.json_response(body, status=status)


def _status_for(exc: BridgeError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        response = await handler(request)
    except web.HTTPException:
        raise
    except ThreadAlreadyExists as exc:
        response = _error_response(exc.code, exc.message, 409, existing_id=exc.existing_id)
    except BridgeError as exc:
        response = _error_response(exc.code, exc.message, _status_for(exc))
    except Exception:
        logger.exception("unhandled error on %s %s", request.method, request.path)
        response = _error_response("internal", "internal error", 500)
    if not isinstance(response, web.WebSocketResponse) and not response.prepared:
        response.headers["Cache-Control"] = "no-store"
    return response


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        raise ValidationError("malformed json") from None
    if not isinstance(body, dict):
        raise ValidationError("json object required")
    return body


def _query_int(request: web.Request, name: str, default: Optional[int]) -> Optional[int]:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer") from None


def _query_bool(request: web.Request, name: str, default: bool) -> bool:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    if raw.lower() in {"1", "true", "yes"}:
        return True
    if raw.lower() in {"0", "false", "no"}:
        return False
    raise ValidationError(f"{name} must be a boolean")


def _optional_str(body: dict[str, Any], name: str) -> Optional[str]:
    value = body.get(name)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


def _bearer_token(request: web.Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[len("Bearer ") :].strip()
    return request.query.get("session_token")


def _authenticate(request: web.Request) -> Principal:
    runtime = request.app[RUNTIME_KEY]
    token = _bearer_token(request)
    if not token:
        raise Unauthorized("invalid session_token")
    session = runtime.sessions.get_by_session(token)
    if session is None:
        raise Unauthorized("invalid session_token")
    try:
        principal = runtime.access.principal(session.actor_id)
    except NotFound:
        raise Unauthorized("invalid session_token") from None
    try:
        runtime.identity.touch(principal.actor_id)
    except Unavailable:
        logger.warning("could not record activity for %s", principal.actor_id)
    return principal


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_register(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    cohort_year = body.get("cohort_year")
    actor = runtime.identity.register(body.get("role"), body.get("department"), cohort_year)
    session = runtime.sessions.create(actor.actor_id)
    payload = actor.to_api_dict()
    payload["actor_id"] = actor.actor_id
    return web.json_response(
        {"actor": payload, "session_token": session.session_token, "expires_at": session.expires_at_ms}
    )


async def handle_responders(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    principal = _authenticate(request)
    responders = runtime.access.list_available_responders(principal, request.query.get("department"))
    return web.json_response({"items": [responder.to_api_dict() for responder in responders]})


async def handle_thread_create(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    principal = _authenticate(request)
    body = await _json_body(request)
    responder_id = body.get("responder_id")
    if not isinstance(responder_id, str) or not responder_id:
        raise ValidationError("responder_id required")
    thread = runtime.access.create_thread(
        principal,
        responder_id,
        body.get("subject"),
        department=_optional_str(body, "department"),
        first_message=_optional_str(body, "first_message"),
    )
    return web.json_response(thread.to_api_dict(principal.role), status=201)


async def handle_thread_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    principal = _authenticate(request)
    threads = runtime.access.list_threads(
        principal,
        limit=_query_int(request, "limit", DEFAULT_PAGE_SIZE),
        offset=_query_int(request, "offset", 0),
        order_by=request.query.get("order_by", "created_at"),
        ascending=_query_bool(request, "ascending", False),
    )
    return web.json_response({"items": [thread.to_api_dict(principal.role) for thread in threads]})


async def handle_thread_stats(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    principal = _authenticate(request)
    return web.json_response(runtime.access.thread_stats(principal).to_api_dict())


async def handle_thread_search(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    principal = _authenticate(request)
    threads = runtime.access.search_threads(
        principal, request.query.get("q", ""), limit=_query_int(request, "limit", 20)
    )
    return web.json_response({"items": [thread.to_api_dict(principal.role) for thread in threads]})


async def handle_thread_get(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    principal = _authenticate(request)
    thread = runtime.access.get_thread(principal, request.match_info["thread_id"], include_messages=True)
    return web.json_response(thread.to_api_dict(principal.role))


async def handle_messages_get(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    principal = _authenticate(request)
    view = runtime.access.get_messages(
        principal,
        request.match_info["thread_id"],
        limit=_query_int(request, "limit", DEFAULT_PAGE_SIZE),
        offset=_query_int(request, "offset", 0),
        kind=request.query.get("kind"),
        from_ms=_query_int(request, "from_ms", None),
        to_ms=_query_int(request, "to_ms", None),
    )
    return web.json_response({"items": [message.to_api_dict() for message in view]})


async def handle_messages_post(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    principal = _authenticate(request)
    body = await _json_body(request)
    message = runtime.access.append_message(
        principal, request.match_info["thread_id"], body.get("text"), body.get("kind", "text")
    )
    return web.json_response(message.to_api_dict(), status=201)


async def handle_mark_read(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    principal = _authenticate(request)
    body = await _json_body(request) if request.can_read_body else {}
    message_ids = body.get("message_ids")
    if message_ids is not None and not isinstance(message_ids, list):
        raise ValidationError("message_ids must be a list")
    receipt = runtime.access.mark_read(principal, request.match_info["thread_id"], message_ids)
    return web.json_response({"reset_count": receipt.reset_count, "messages_marked": receipt.messages_marked})


async def handle_status(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    principal = _authenticate(request)
    body = await _json_body(request)
    thread = runtime.access.update_status(principal, request.match_info["thread_id"], body.get("status"))
    return web.json_response(thread.to_api_dict(principal.role))


async def handle_report_file(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    principal = _authenticate(request)
    body = await _json_body(request)
    report = runtime.access.file_report(
        principal,
        body.get("reason"),
        comment=_optional_str(body, "comment"),
        message_id=_optional_str(body, "message_id"),
        thread_id=_optional_str(body, "thread_id"),
    )
    return web.json_response({"report_id": report.report_id, "created_at_ms": report.created_at_ms}, status=201)


async def handle_report_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    principal = _authenticate(request)
    reports = runtime.access.list_reports(
        principal,
        limit=_query_int(request, "limit", DEFAULT_PAGE_SIZE),
        offset=_query_int(request, "offset", 0),
        include_resolved=_query_bool(request, "include_resolved", True),
    )
    return web.json_response({"items": [report.to_api_dict() for report in reports]})


async def handle_report_resolve(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    principal = _authenticate(request)
    report = runtime.access.resolve_report(principal, request.match_info["report_id"])
    return web.json_response(report.to_api_dict())


def create_app(
    *,
    config: BridgeConfig | None = None,
    db_path: str | None = None,
    runtime: Runtime | None = None,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    outbound_queue_size: int = 1000,
) -> web.Application:
    if runtime is None:
        config = config or BridgeConfig()
        if db_path is not None:
            config = replace(config, db_path=db_path)
        runtime = build_runtime(config)

    app = web.Application(middlewares=[error_middleware])
    app[RUNTIME_KEY] = runtime
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "outbound_queue_size": outbound_queue_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/actors", handle_register)
    app.router.add_get("/v1/responders", handle_responders)
    app.router.add_post("/v1/threads", handle_thread_create)
    app.router.add_get("/v1/threads", handle_thread_list)
    app.router.add_get("/v1/threads/stats", handle_thread_stats)
    app.router.add_get("/v1/threads/search", handle_thread_search)
    app.router.add_get("/v1/threads/{thread_id}", handle_thread_get)
    app.router.add_get("/v1/threads/{thread_id}/messages", handle_messages_get)
    app.router.add_post("/v1/threads/{thread_id}/messages", handle_messages_post)
    app.router.add_post("/v1/threads/{thread_id}/read", handle_mark_read)
    app.router.add_post("/v1/threads/{thread_id}/status", handle_status)
    app.router.add_get("/v1/threads/{thread_id}/ws", websocket_handler)
    app.router.add_post("/v1/reports", handle_report_file)
    app.router.add_get("/v1/reports", handle_report_list)
    app.router.add_post("/v1/reports/{report_id}/resolve", handle_report_resolve)

    async def close_db(_: web.Application) -> None:
        runtime.backend.close()

    app.on_cleanup.append(close_db)
    return app


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    """Push committed changes of one thread to a participant (or an audited moderator)."""

    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]
    principal = _authenticate(request)
    thread_id = request.match_info["thread_id"]
    thread = runtime.access.get_thread(principal, thread_id, include_messages=False)

    ws = web.WebSocketResponse()
    await ws.prepare(request)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Optional[ThreadChange]] = asyncio.Queue(maxsize=ws_config["outbound_queue_size"])
    subscription: Subscription | None = None
    close_task: asyncio.Task | None = None

    async def close_with_error(message: str) -> None:
        if ws.closed:
            return
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue(change: ThreadChange) -> None:
        nonlocal close_task
        try:
            outbound.put_nowait(change)
        except asyncio.QueueFull:
            if close_task is None:
                close_task = asyncio.create_task(close_with_error("backpressure"))

    def on_change(change: ThreadChange) -> None:
        # appends may commit on any thread; hand the change to the loop
        loop.call_soon_threadsafe(enqueue, change)

    async def writer() -> None:
        try:
            while True:
                change = await outbound.get()
                if change is None:
                    break
                await ws.send_json({"v": 1, "t": "thread.change", "body": change.to_api_dict()})
        except asyncio.CancelledError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                if loop.time() - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    subscription = runtime.notifier.subscribe(principal.actor_id, thread_id, on_change)
    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())
    try:
        await ws.send_json({"v": 1, "t": "thread.ready", "body": {"thread_id": thread_id, "version": thread.version}})
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                mark_activity()
                try:
                    frame = msg.json()
                except ValueError:
                    await ws.send_json({"v": 1, "t": "error", "body": {"code": "invalid_request", "message": "malformed json"}})
                    continue
                frame_type = frame.get("t") if isinstance(frame, dict) else None
                if frame_type == "ping":
                    await ws.send_json({"v": 1, "t": "pong"})
                elif frame_type == "pong":
                    continue
                else:
                    await ws.send_json(
                        {"v": 1, "t": "error", "body": {"code": "invalid_request", "message": "unknown frame type"}}
                    )
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        runtime.notifier.unsubscribe(subscription)
        heartbeat_task.cancel()
        writer_task.cancel()
        pending = [heartbeat_task, writer_task]
        if close_task is not None:
            pending.append(close_task)
        await asyncio.gather(*pending, return_exceptions=True)

    return ws
