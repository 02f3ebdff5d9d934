"""JSON routes exposing the task series operation surface."""

from __future__ import annotations

import json
import logging
from typing import Any, Union

from aiohttp import web

from ..core.timezone_utils import format_instant, parse_instant
from ..exceptions import ValidationError
from ..models import EditScope, Task, TaskException
from ..planner import TaskPlanner
from ..validation import changes_from_payload

logger = logging.getLogger(__name__)

PLANNER_KEY = web.AppKey("planner", TaskPlanner)

_OCCURRENCE_PATH = "/api/tasks/{task_id}/occurrences/{original}"


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("body", "Request body must be valid JSON.") from e
    if not isinstance(body, dict):
        raise ValidationError("body", "Request body must be a JSON object.")
    return body


def _scope(value: Any) -> EditScope:
    try:
        return EditScope(value or EditScope.SINGLE.value)
    except ValueError as e:
        raise ValidationError("scope", f"Unknown scope {value!r}.") from e


def _result_payload(result: Union[Task, TaskException, None]) -> dict[str, Any]:
    if isinstance(result, Task):
        return {"kind": "task", "task": result.model_dump(mode="json")}
    if isinstance(result, TaskException):
        return {"kind": "exception", "exception": result.model_dump(mode="json")}
    return {"kind": "deleted"}


def register_task_routes(app: web.Application, planner: TaskPlanner) -> None:
    """Register task series routes.

    Args:
        app: aiohttp web application
        planner: TaskPlanner serving every route
    """
    app[PLANNER_KEY] = planner

    async def health(request: web.Request) -> web.Response:
        info = await request.app[PLANNER_KEY].store.get_database_info()
        return web.json_response({"status": "ok", "database": info})

    async def create_task(request: web.Request) -> web.Response:
        body = await _json_body(request)
        task = await request.app[PLANNER_KEY].create_series(
            request["actor_id"],
            title=body.get("title"),
            icon_name=body.get("icon_name"),
            local_date=body.get("date"),
            local_time=body.get("time"),
            timezone=body.get("timezone"),
            duration_minutes=body.get("duration_minutes"),
            recurrence=body.get("recurrence"),
        )
        return web.json_response(task.model_dump(mode="json"), status=201)

    async def list_instances(request: web.Request) -> web.Response:
        start = parse_instant(request.query.get("start", ""), field="start")
        end = parse_instant(request.query.get("end", ""), field="end")
        planner = request.app[PLANNER_KEY]
        window = await planner.materialize_window(request["actor_id"], start, end)
        return web.json_response(
            {
                "instances": [instance.model_dump(mode="json") for instance in window.instances],
                "cap_reached": window.cap_reached,
                "capped_task_ids": list(window.capped_task_ids),
                "max_occurrences": planner.expander.max_occurrences,
            }
        )

    async def list_occurrences(request: web.Request) -> web.Response:
        task_id = request.match_info["task_id"]
        instants = await request.app[PLANNER_KEY].series_occurrences(request["actor_id"], task_id)
        return web.json_response(
            {"task_id": task_id, "occurrences": [format_instant(instant) for instant in instants]}
        )

    async def edit_occurrence(request: web.Request) -> web.Response:
        body = await _json_body(request)
        original = parse_instant(request.match_info["original"], field="original_occurrence_time")
        changes = changes_from_payload(body.get("changes", {}))
        result = await request.app[PLANNER_KEY].edit_occurrence(
            request["actor_id"],
            request.match_info["task_id"],
            original,
            _scope(body.get("scope")),
            changes,
        )
        return web.json_response(_result_payload(result))

    async def delete_occurrence(request: web.Request) -> web.Response:
        original = parse_instant(request.match_info["original"], field="original_occurrence_time")
        result = await request.app[PLANNER_KEY].delete_occurrence(
            request["actor_id"],
            request.match_info["task_id"],
            original,
            _scope(request.query.get("scope")),
        )
        return web.json_response(_result_payload(result))

    async def toggle_completion(request: web.Request) -> web.Response:
        body = await _json_body(request)
        is_complete = body.get("is_complete")
        if not isinstance(is_complete, bool):
            raise ValidationError("is_complete", "is_complete must be true or false.")
        original = parse_instant(request.match_info["original"], field="original_occurrence_time")
        result = await request.app[PLANNER_KEY].toggle_completion(
            request["actor_id"], request.match_info["task_id"], original, is_complete
        )
        return web.json_response(_result_payload(result))

    app.router.add_get("/api/health", health)
    app.router.add_post("/api/tasks", create_task)
    app.router.add_get("/api/instances", list_instances)
    app.router.add_get("/api/tasks/{task_id}/occurrences", list_occurrences)
    app.router.add_patch(_OCCURRENCE_PATH, edit_occurrence)
    app.router.add_delete(_OCCURRENCE_PATH, delete_occurrence)
    app.router.add_post(_OCCURRENCE_PATH + "/completion", toggle_completion)
    logger.debug("Registered task routes")
