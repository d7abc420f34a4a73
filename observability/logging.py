from __future__ import annotations

import json
import os
import time
import uuid
from typing import Any, Dict, Optional


def build_log_context(*, component: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Build a per-operation context object for structured logs.

    Only identifiers go in here; profile contents never do.
    """
    ctx: Dict[str, Any] = {
        "component": component,
        "request_id": str(uuid.uuid4()),
        "ts_ms": int(time.time() * 1000),
        "service": os.getenv("REPLICA_SERVICE_NAME", "profile-replica"),
    }
    if user_id is not None:
        ctx["user_id"] = user_id
    return ctx


def log_event(event: str, *, ctx: Dict[str, Any], data: Optional[Dict[str, Any]] = None) -> None:
    """
    Emit a single-line JSON log event to stdout.
    """
    payload = dict(ctx)
    payload["event"] = event
    if data:
        payload["data"] = data
    print(json.dumps(payload, sort_keys=True, default=str))
