"""
Control API - aiohttp server for creating and steering runs

## Endpoints

GET    /health                 - service status and active runs
POST   /runs                   - create a queued run
       Body: {"prompt": "...", "model": "...", "memoryKey": "...",
              "settings": {...}, "preferences": {...},
              "agentBrowser": "chromium", "headless": true}
GET    /runs/{id}              - run with its checkpoint
GET    /runs/{id}/audit        - audit trail
POST   /runs/{id}              - control action
       Body: {"action": "stop" | "resume" | "approve" | "override",
              "stepId": "...", "status": "pending" | "completed" | "failed"}
DELETE /runs/{id}?force=true   - delete a run (409 while running unless forced)

Unknown runs map to 404, malformed requests to 400 and actions that do not
fit the run's state to 409.
"""
import json
from typing import Optional

from aiohttp import web
from loguru import logger

from .audit import AuditLogger
from .controls import OVERRIDE_STATUSES, RunControls
from .engine import AgentEngine
from .errors import InvalidRunActionError, RunNotFoundError
from .queue import AgentQueue

ENGINE_KEY = web.AppKey("engine", AgentEngine)
CONTROLS_KEY = web.AppKey("controls", RunControls)
AUDIT_KEY = web.AppKey("audit", AuditLogger)
QUEUE_KEY = web.AppKey("queue", AgentQueue)

ACTIONS = ("stop", "resume", "approve", "override")


def safe_json_response(data, status=200):
    return web.json_response(
        data,
        status=status,
        dumps=lambda x: json.dumps(x, ensure_ascii=False, default=str)
    )


def error_response(message: str, status: int) -> web.Response:
    return safe_json_response({"success": False, "error": message}, status=status)


async def health_handler(request: web.Request) -> web.Response:
    queue: Optional[AgentQueue] = request.app.get(QUEUE_KEY)
    return safe_json_response({
        "status": "ok",
        "queue_running": queue is not None,
        "active_runs": queue.active_run_ids if queue is not None else [],
    })


async def create_run_handler(request: web.Request) -> web.Response:
    try:
        data = await request.json()
    except json.JSONDecodeError:
        return error_response("Invalid JSON", 400)
    if not isinstance(data, dict):
        return error_response("Request body must be an object", 400)

    prompt = data.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        return error_response("Missing 'prompt' parameter", 400)
    for key in ("settings", "preferences"):
        if data.get(key) is not None and not isinstance(data[key], dict):
            return error_response(f"'{key}' must be an object", 400)

    engine = request.app[ENGINE_KEY]
    run = await engine.create_run(
        prompt.strip(),
        model=data.get("model"),
        memory_key=data.get("memoryKey"),
        settings=data.get("settings"),
        preferences=data.get("preferences"),
        agent_browser=data.get("agentBrowser"),
        run_headless=data.get("headless"),
    )
    logger.info(f"📥 [API] Run created: {run.id}")
    return safe_json_response({"success": True, "run": run.to_dict()}, status=201)


async def get_run_handler(request: web.Request) -> web.Response:
    run_id = request.match_info["run_id"]
    run = await request.app[ENGINE_KEY].store.get_run(run_id)
    if run is None:
        return error_response(f"Run not found: {run_id}", 404)
    return safe_json_response({"success": True, "run": run.to_dict()})


async def audit_handler(request: web.Request) -> web.Response:
    run_id = request.match_info["run_id"]
    if await request.app[ENGINE_KEY].store.get_run(run_id) is None:
        return error_response(f"Run not found: {run_id}", 404)
    entries = await request.app[AUDIT_KEY].list_entries(run_id)
    return safe_json_response({"success": True, "entries": [entry.to_dict() for entry in entries]})


async def run_action_handler(request: web.Request) -> web.Response:
    """
    Dispatch a control action by its `action` field
    """
    run_id = request.match_info["run_id"]
    try:
        data = await request.json()
    except json.JSONDecodeError:
        return error_response("Invalid JSON", 400)
    if not isinstance(data, dict):
        return error_response("Request body must be an object", 400)

    action = data.get("action")
    step_id = data.get("stepId")
    if action not in ACTIONS:
        return error_response(f"Unknown action: {action}", 400)
    if action in ("approve", "override") and not step_id:
        return error_response("Missing 'stepId' parameter", 400)
    if action == "override" and data.get("status") not in OVERRIDE_STATUSES:
        return error_response("'status' must be one of: " + ", ".join(OVERRIDE_STATUSES), 400)

    logger.info(f"📥 [API] run={run_id} action={action} step={step_id}")
    controls = request.app[CONTROLS_KEY]
    try:
        if action == "stop":
            run = await controls.stop(run_id)
        elif action == "resume":
            run = await controls.resume(run_id, step_id)
        elif action == "approve":
            run = await controls.approve_step(run_id, step_id)
        else:
            run = await controls.override_step_status(run_id, step_id, data["status"])
    except RunNotFoundError as e:
        return error_response(str(e), 404)
    except InvalidRunActionError as e:
        return error_response(str(e), 409)
    return safe_json_response({"success": True, "run": run.to_dict()})


async def delete_run_handler(request: web.Request) -> web.Response:
    run_id = request.match_info["run_id"]
    force = request.query.get("force", "").lower() == "true"
    try:
        await request.app[CONTROLS_KEY].delete(run_id, force=force)
    except RunNotFoundError as e:
        return error_response(str(e), 404)
    except InvalidRunActionError as e:
        return error_response(str(e), 409)
    return safe_json_response({"success": True, "deleted": run_id})


# ==================== Application ====================

def create_app(engine: AgentEngine, queue: Optional[AgentQueue] = None) -> web.Application:
    """Build the control API around an engine (and optionally its queue worker)"""
    app = web.Application()
    app[ENGINE_KEY] = engine
    app[CONTROLS_KEY] = RunControls(engine.store, engine.audit)
    app[AUDIT_KEY] = engine.audit
    if queue is not None:
        app[QUEUE_KEY] = queue
        app.on_startup.append(_start_queue)
        app.on_cleanup.append(_stop_queue)

    app.router.add_get("/", health_handler)
    app.router.add_get("/health", health_handler)
    app.router.add_post("/runs", create_run_handler)
    app.router.add_get("/runs/{run_id}", get_run_handler)
    app.router.add_get("/runs/{run_id}/audit", audit_handler)
    app.router.add_post("/runs/{run_id}", run_action_handler)
    app.router.add_delete("/runs/{run_id}", delete_run_handler)

    return app


async def _start_queue(app: web.Application) -> None:
    await app[QUEUE_KEY].start()


async def _stop_queue(app: web.Application) -> None:
    await app[QUEUE_KEY].stop()
