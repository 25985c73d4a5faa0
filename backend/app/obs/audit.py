from __future__ import annotations

from typing import Any, Mapping, Optional

from app.obs.logging import get_logger

audit_logger = get_logger("audit.moderation")


def log_admin_action(
    actor_id: str,
    action: str,
    *,
    target_type: str,
    target_id: Optional[str],
    details: Optional[Mapping[str, Any]] = None,
) -> None:
    payload: dict[str, Any] = {
        "event": action,
        "actor_id": actor_id,
        "target_type": target_type,
        "target_id": target_id,
    }
    if details:
        payload.update(details)
    filtered = {key: value for key, value in payload.items() if value is not None}
    audit_logger.info("admin_action", extra=filtered)
