"""Change-event ingress.

The data layer posts one call per change (``attendance.created``,
``invitation.created``, ``leave_request.updated``) with the shared
``X-Trigger-Key``.
"""
from __future__ import annotations

from dataclasses import asdict, is_dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, Header
from fastapi.encoders import jsonable_encoder

from app.api.deps import get_task_context, run_task
from app.core.errors import InvalidInputError, UnauthorizedError
from app.core.security import digests_match
from app.tasks.events import TaskContext
from app.tasks.registry import dispatch_event

router = APIRouter(prefix="/events", tags=["events"])


def _serialize(result: Any) -> dict | None:
    if result is None:
        return None
    if is_dataclass(result):
        return jsonable_encoder(asdict(result))
    return {"id": str(getattr(result, "id", ""))}


@router.post("/{kind}", summary="Run the handler for a change event")
def ingest_event(
    kind: str,
    payload: Any = Body(default=None),
    x_trigger_key: str | None = Header(default=None),
    ctx: TaskContext = Depends(get_task_context),
):
    if not x_trigger_key or not digests_match(x_trigger_key, ctx.settings.trigger_secret):
        raise UnauthorizedError("Invalid trigger key")
    if not isinstance(payload, dict):
        raise InvalidInputError("Event payload must be a JSON object")

    result = run_task(dispatch_event(ctx, kind, payload))
    return {"kind": kind, "handled": result is not None, "result": _serialize(result)}
