"""Role checks and admin-target protection for moderation operations.

Every denial writes exactly one security event and then raises a typed
``ModerationError``. The acting user's id is always passed in by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from app.moderation.domain.errors import ModerationError, ModerationErrorCode
from app.moderation.domain.models import ModerationAction, Role
from app.moderation.domain.repository import RoleStore
from app.moderation.domain.security import SecurityEventLogger
from app.obs import metrics as obs_metrics

ADMIN_TARGET_EVENT = "unauthorized_action_on_admin_target"


@dataclass
class AuthorizationGuard:
    roles: RoleStore
    events: SecurityEventLogger

    async def is_admin(self, user_id: str) -> bool:
        return await self.roles.has_role(user_id, Role.ADMIN)

    async def is_moderator_or_admin(self, user_id: str) -> bool:
        if await self.roles.has_role(user_id, Role.MODERATOR):
            return True
        return await self.is_admin(user_id)

    def require_actor(self, actor_id: Optional[str]) -> str:
        if not actor_id or not str(actor_id).strip():
            raise ModerationError("Authentication required", ModerationErrorCode.UNAUTHORIZED)
        return str(actor_id)

    async def verify_moderator_role(
        self,
        actor_id: Optional[str],
        *,
        attempted_action: str = "moderation",
        message: str = "Only moderators and admins can perform this action",
    ) -> str:
        actor = self.require_actor(actor_id)
        if await self.is_moderator_or_admin(actor):
            return actor
        await self._deny(
            "unauthorized_moderator_access",
            actor,
            {"requiredRole": Role.MODERATOR.value, "attemptedAction": attempted_action},
            check="moderator_role",
        )
        raise ModerationError(message, ModerationErrorCode.UNAUTHORIZED)

    async def verify_admin_role(
        self,
        actor_id: Optional[str],
        *,
        attempted_action: str = "admin",
        event_type: str = "unauthorized_admin_access",
        message: str = "Only admins can perform this action",
        details: Optional[Mapping[str, Any]] = None,
    ) -> str:
        actor = self.require_actor(actor_id)
        if await self.is_admin(actor):
            return actor
        payload = {"requiredRole": Role.ADMIN.value, "attemptedAction": attempted_action}
        payload.update(details or {})
        await self._deny(event_type, actor, payload, check="admin_role")
        raise ModerationError(message, ModerationErrorCode.UNAUTHORIZED)

    async def verify_not_admin_target(
        self,
        actor_id: str,
        target_user_id: str,
        *,
        attempted_action: str,
        event_type: str = ADMIN_TARGET_EVENT,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if not await self.is_admin(target_user_id):
            return
        if await self.is_admin(actor_id):
            return
        payload: dict[str, Any] = {"targetUserId": target_user_id, "attemptedAction": attempted_action}
        payload.update(details or {})
        await self._deny(event_type, actor_id, payload, check="admin_target")
        raise ModerationError(
            "Moderators cannot take actions on admin accounts",
            ModerationErrorCode.INSUFFICIENT_PERMISSIONS,
            {"targetUserId": target_user_id},
        )

    def check_self_reversal(self, actor_id: str, action: ModerationAction) -> bool:
        return action.moderator_id == actor_id

    async def _deny(self, event_type: str, actor_id: str, details: Mapping[str, Any], *, check: str) -> None:
        obs_metrics.MOD_GUARD_DENIALS_TOTAL.labels(check=check).inc()
        await self.events.log(event_type, actor_id, details)
