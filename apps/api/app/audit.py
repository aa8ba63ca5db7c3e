from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

SYSTEM_ACTOR = "system"

logger = logging.getLogger("app.audit")

audit_entries: list[dict[str, Any]] = []


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Append an audit entry for a state change; webhook-driven changes use ``SYSTEM_ACTOR``."""
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "actor_type": "system" if actor_user_id == SYSTEM_ACTOR else "user",
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": dict(before) if before is not None else None,
        "after": dict(after) if after is not None else None,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    logger.info("audit.recorded", extra={"entity_type": entity_type, "entity_id": entity_id, "action": action})
    return entry


def entries_for(entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    return [entry for entry in audit_entries if entry["entity_type"] == entity_type and entry["entity_id"] == entity_id]
