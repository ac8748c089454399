"""HTTP surface: delayed-task callbacks and the reminder action entry point.

POST /tasks/{target}             send / timeout callbacks from a task queue
POST /reminders/{id}/actions     done, snooze, im_on_it, dismiss
GET  /reminders/{id}/tasks       outstanding queue entries (diagnostics)

Task callbacks answer 200 for anything they handled, including internal
errors, so an external queue does not retry a request into a storm.
"""

from __future__ import annotations

import copy
import hmac
import json
import logging
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

from aiohttp import web
from jsonschema import Draft7Validator

from eldercare.config import HOST, PORT
from eldercare.errors import HorizonExceeded, InvalidArgument, ReminderNotFound
from eldercare.scheduling.queue import SEND, TIMEOUT

if TYPE_CHECKING:
    from eldercare.scheduling.escalation import EscalationMachine
    from eldercare.scheduling.queue import DelayedTaskQueue

log = logging.getLogger(__name__)

TASK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["reminder_id"],
    "properties": {
        "reminder_id": {"type": "string", "minLength": 1, "maxLength": 200},
        "ring_count": {"type": "integer", "enum": [1, 2]},
        "scheduled_at": {"type": "string", "maxLength": 64},
    },
}

ACTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["action"],
    "properties": {
        "action": {"type": "string", "maxLength": 32},
        "minutes": {"type": ["integer", "null"], "minimum": 1},
    },
    "additionalProperties": False,
}

_DEFAULT_MAX_LENGTH = 500


def _inject_default_max_length(schema: dict[str, Any]) -> dict[str, Any]:
    """Add maxLength to string properties that don't specify one."""
    schema = copy.deepcopy(schema)
    for prop in schema.get("properties", {}).values():
        if prop.get("type") == "string" and "maxLength" not in prop:
            prop["maxLength"] = _DEFAULT_MAX_LENGTH
    return schema


def validate_payload(schema: dict[str, Any], data: Any) -> list[str]:
    """Validate data against JSON Schema. Returns list of error messages."""
    validator = Draft7Validator(_inject_default_max_length(schema))
    return [err.message for err in validator.iter_errors(data)]


def verify_auth(auth_header: str, secret: str) -> bool:
    """Constant-time comparison of Bearer token."""
    expected = f"Bearer {secret}"
    return hmac.compare_digest(auth_header, expected)


# ---------------------------------------------------------------------------
# HTTP handlers
# ---------------------------------------------------------------------------

_MAX_PAYLOAD_SIZE = 10 * 1024  # 10KB

_KEY_SECRET = web.AppKey("secret", str)
_KEY_MACHINE = web.AppKey("machine")
_KEY_QUEUE = web.AppKey("queue")


async def _read_json(request: web.Request, schema: dict[str, Any]) -> Any:
    """Parsed body, or raise a 400 response."""
    try:
        data = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "invalid json"}), content_type="application/json"
        ) from None
    errors = validate_payload(schema, data)
    if errors:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "validation failed", "details": errors}),
            content_type="application/json",
        )
    return data


@web.middleware
async def _auth_middleware(request: web.Request, handler):
    secret: str = request.app[_KEY_SECRET]
    if not verify_auth(request.headers.get("Authorization", ""), secret):
        return web.json_response({"error": "unauthorized"}, status=401)
    return await handler(request)


async def _handle_task(request: web.Request) -> web.Response:
    """Handle POST /tasks/{target}."""
    target = request.match_info["target"]
    if target not in (SEND, TIMEOUT):
        return web.json_response({"error": f"unknown target: {target}"}, status=404)

    data = await _read_json(request, TASK_SCHEMA)
    machine: EscalationMachine = request.app[_KEY_MACHINE]
    handler = machine.on_send if target == SEND else machine.on_timeout
    try:
        outcome = await handler(data)
    except Exception:
        log.exception("Error in %s callback for %s", target, data.get("reminder_id"))
        return web.json_response({"status": "error_handled"})
    return web.json_response({"status": outcome})


async def _handle_action(request: web.Request) -> web.Response:
    """Handle POST /reminders/{reminder_id}/actions."""
    reminder_id = request.match_info["reminder_id"]
    data = await _read_json(request, ACTION_SCHEMA)
    machine: EscalationMachine = request.app[_KEY_MACHINE]
    try:
        result = await machine.handle_action(
            reminder_id, data["action"], data.get("minutes")
        )
    except ReminderNotFound:
        return web.json_response({"error": "not-found"}, status=404)
    except (InvalidArgument, HorizonExceeded) as e:
        return web.json_response(
            {"error": "invalid-argument", "details": [str(e)]}, status=400
        )
    except Exception:
        log.exception("Error handling %s for reminder %s", data["action"], reminder_id)
        return web.json_response({"error": "internal"}, status=500)
    return web.json_response(
        {"success": True, "applied": result.applied, "status": result.status}
    )


async def _handle_list_tasks(request: web.Request) -> web.Response:
    """Handle GET /reminders/{reminder_id}/tasks."""
    queue: DelayedTaskQueue | None = request.app.get(_KEY_QUEUE)
    if queue is None:
        return web.json_response({"error": "queue not available"}, status=404)
    prefix = f"{request.match_info['reminder_id']}-"
    return web.json_response({"tasks": [asdict(t) for t in queue.pending(prefix)]})


def create_app(
    *,
    secret: str,
    machine: EscalationMachine,
    queue: DelayedTaskQueue | None = None,
) -> web.Application:
    """Create aiohttp application for task callbacks and reminder actions."""
    app = web.Application(
        client_max_size=_MAX_PAYLOAD_SIZE, middlewares=[_auth_middleware]
    )
    app[_KEY_SECRET] = secret
    app[_KEY_MACHINE] = machine
    app[_KEY_QUEUE] = queue
    app.router.add_post("/tasks/{target}", _handle_task)
    app.router.add_post("/reminders/{reminder_id}/actions", _handle_action)
    app.router.add_get("/reminders/{reminder_id}/tasks", _handle_list_tasks)
    return app


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------

_runner: web.AppRunner | None = None


async def start(
    machine: EscalationMachine,
    queue: DelayedTaskQueue,
    *,
    secret: str,
    host: str = HOST,
    port: int = PORT,
) -> None:
    global _runner  # noqa: PLW0603
    app = create_app(secret=secret, machine=machine, queue=queue)
    _runner = web.AppRunner(app)
    await _runner.setup()
    site = web.TCPSite(_runner, host, port)
    await site.start()
    log.info("HTTP server started on %s:%d", host, port)


async def stop() -> None:
    """Graceful shutdown of the HTTP server."""
    global _runner  # noqa: PLW0603
    if _runner:
        await _runner.cleanup()
        _runner = None
        log.info("HTTP server stopped")
