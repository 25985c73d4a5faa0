"""Lightweight service container shared by moderation modules."""

from __future__ import annotations

from typing import Optional

import asyncpg

from app.moderation.domain.actions_service import ActionService
from app.moderation.domain.analytics import ModerationAnalytics
from app.moderation.domain.immutability import ImmutabilityMonitor
from app.moderation.domain.notifications import NotificationPublisher
from app.moderation.domain.rbac import AuthorizationGuard
from app.moderation.domain.repository import (
    ActionRepository,
    ContentRepository,
    NotificationDispatcher,
    ProfileRepository,
    ReportRepository,
    RestrictionRepository,
    RoleStore,
    SecurityEventRepository,
)
from app.moderation.domain.reports_service import ReportService
from app.moderation.domain.reversal_service import ReversalService
from app.moderation.domain.security import AdminAlerter, SecurityEventLogger
from app.moderation.infra.memory_repo import (
    InMemoryActionRepository,
    InMemoryContentRepository,
    InMemoryNotificationDispatcher,
    InMemoryProfileRepository,
    InMemoryReportRepository,
    InMemoryRestrictionRepository,
    InMemoryRoleStore,
    InMemorySecurityEventRepository,
)
from app.moderation.infra.postgres_repo import (
    PostgresActionRepository,
    PostgresContentRepository,
    PostgresNotificationDispatcher,
    PostgresProfileRepository,
    PostgresReportRepository,
    PostgresRestrictionRepository,
    PostgresRoleStore,
    PostgresSecurityEventRepository,
)

_roles: RoleStore = InMemoryRoleStore()
_reports: ReportRepository = InMemoryReportRepository()
_actions: ActionRepository = InMemoryActionRepository()
_restrictions: RestrictionRepository = InMemoryRestrictionRepository()
_profiles: ProfileRepository = InMemoryProfileRepository()
_content: ContentRepository = InMemoryContentRepository()
_security_events: SecurityEventRepository = InMemorySecurityEventRepository()
_dispatcher: NotificationDispatcher = InMemoryNotificationDispatcher()

_report_service: ReportService
_action_service: ActionService
_reversal_service: ReversalService
_immutability_monitor: ImmutabilityMonitor
_analytics: ModerationAnalytics


def _build_services() -> None:
    global _report_service, _action_service, _reversal_service, _immutability_monitor, _analytics
    events = SecurityEventLogger(repository=_security_events)
    guard = AuthorizationGuard(roles=_roles, events=events)
    publisher = NotificationPublisher(dispatcher=_dispatcher)
    alerter = AdminAlerter(roles=_roles, notifications=_dispatcher, events=events)
    _report_service = ReportService(
        reports=_reports,
        content=_content,
        roles=_roles,
        guard=guard,
        events=events,
        notifications=publisher,
    )
    _action_service = ActionService(
        reports=_reports,
        actions=_actions,
        restrictions=_restrictions,
        profiles=_profiles,
        content=_content,
        guard=guard,
        events=events,
        notifications=publisher,
    )
    _reversal_service = ReversalService(
        actions=_actions,
        restrictions=_restrictions,
        profiles=_profiles,
        guard=guard,
        events=events,
        notifications=publisher,
    )
    _immutability_monitor = ImmutabilityMonitor(
        actions=_actions,
        security_events=_security_events,
        guard=guard,
        events=events,
        alerter=alerter,
    )
    _analytics = ModerationAnalytics(actions=_actions, reports=_reports, guard=guard)


_build_services()


def configure(
    *,
    roles: Optional[RoleStore] = None,
    reports: Optional[ReportRepository] = None,
    actions: Optional[ActionRepository] = None,
    restrictions: Optional[RestrictionRepository] = None,
    profiles: Optional[ProfileRepository] = None,
    content: Optional[ContentRepository] = None,
    security_events: Optional[SecurityEventRepository] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> None:
    global _roles, _reports, _actions, _restrictions, _profiles, _content, _security_events, _dispatcher
    _roles = roles or _roles
    _reports = reports or _reports
    _actions = actions or _actions
    _restrictions = restrictions or _restrictions
    _profiles = profiles or _profiles
    _content = content or _content
    _security_events = security_events or _security_events
    _dispatcher = dispatcher or _dispatcher
    _build_services()


def configure_postgres(pool: asyncpg.Pool) -> None:
    configure(
        roles=PostgresRoleStore(pool),
        reports=PostgresReportRepository(pool),
        actions=PostgresActionRepository(pool),
        restrictions=PostgresRestrictionRepository(pool),
        profiles=PostgresProfileRepository(pool),
        content=PostgresContentRepository(pool),
        security_events=PostgresSecurityEventRepository(pool),
        dispatcher=PostgresNotificationDispatcher(pool),
    )


def get_report_service() -> ReportService:
    return _report_service


def get_action_service() -> ActionService:
    return _action_service


def get_reversal_service() -> ReversalService:
    return _reversal_service


def get_immutability_monitor() -> ImmutabilityMonitor:
    return _immutability_monitor


def get_analytics() -> ModerationAnalytics:
    return _analytics
