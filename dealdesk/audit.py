from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from dealdesk.context import get_correlation_id

logger = logging.getLogger("dealdesk.audit")

audit_entries: list[dict[str, Any]] = []


def _changed_keys(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    if before is None or after is None:
        return []
    return sorted(key for key in after if before.get(key) != after.get(key))


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "changed": _changed_keys(before, after),
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    logger.debug(
        "audit.recorded",
        extra={"entity_type": entity_type, "entity_id": entity_id, "action": action, "changed": entry["changed"]},
    )


def entries_for(entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    """Audit trail of one entity, oldest first."""
    return [
        entry
        for entry in audit_entries
        if entry["entity_type"] == entity_type and entry["entity_id"] == entity_id
    ]
