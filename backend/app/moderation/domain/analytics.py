"""Repeat-offender detection, reversal analytics and history views."""

from __future__ import annotations

import csv
import io
import logging
import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from app.moderation.domain.errors import moderation_operation
from app.moderation.domain.metadata import history_for_append, reversal_reason_of, was_reapplied
from app.moderation.domain.models import ActionType, ModerationAction, ReversalHistoryFilters, StateChangeEntry
from app.moderation.domain.rbac import AuthorizationGuard
from app.moderation.domain.repository import ActionQuery, ActionRepository, ReportRepository
from app.moderation.domain.validation import parse_date_range, parse_enum, parse_iso_datetime, require_uuid
from app.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 3
_TIMELINE_BUCKETS = (7, 30, 90)

CSV_HEADERS = [
    "Action ID",
    "Action Type",
    "Original Moderator ID",
    "Target User ID",
    "Action Created At",
    "Action Reason",
    "Duration (Days)",
    "Revoked At",
    "Revoked By ID",
    "Reversal Reason",
    "Time to Reversal (Hours)",
    "Is Self Reversal",
    "Was Reapplied",
    "Related Report ID",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def reversal_rate(reversed_count: int, total: int) -> float:
    if total == 0:
        return 0.0
    return round(reversed_count / total * 100, 2)


def _hours_to_reversal(action: ModerationAction) -> Optional[float]:
    if action.revoked_at is None:
        return None
    return (action.revoked_at - action.created_at).total_seconds() / 3600


@dataclass(slots=True)
class ViolationTimeline:
    last_7_days: int
    last_30_days: int
    last_90_days: int
    message: str


@dataclass(slots=True)
class ActionTypeRate:
    action_type: str
    total_actions: int
    reversed_actions: int
    reversal_rate: float


@dataclass(slots=True)
class PriorityRate:
    priority: int
    total_actions: int
    reversed_actions: int
    reversal_rate: float


@dataclass(slots=True)
class ReversalRateResult:
    overall_reversal_rate: float
    total_actions: int
    total_reversals: int
    by_action_type: List[ActionTypeRate] = field(default_factory=list)
    by_priority: List[PriorityRate] = field(default_factory=list)


@dataclass(slots=True)
class TimeToReversalStats:
    average_hours: float = 0.0
    median_hours: float = 0.0
    fastest_hours: float = 0.0
    slowest_hours: float = 0.0


@dataclass(slots=True)
class ActionTypeTimeStats(TimeToReversalStats):
    count: int = 0


@dataclass(slots=True)
class TypeBreakdown:
    total: int = 0
    reversed: int = 0


@dataclass(slots=True)
class ModeratorReversalStats:
    moderator_id: str
    total_actions: int
    reversed_actions: int
    reversal_rate: float
    average_time_to_reversal_hours: float
    self_reversals: int
    reversals_by_others: int
    actions_by_type: Dict[str, TypeBreakdown] = field(default_factory=dict)


@dataclass(slots=True)
class ReversalMetrics:
    overall_reversal_rate: float
    total_actions: int
    total_reversals: int
    per_moderator_stats: List[ModeratorReversalStats]
    time_to_reversal_stats: TimeToReversalStats


@dataclass(slots=True)
class ReversalTimeMetrics:
    overall: TimeToReversalStats
    by_action_type: Dict[str, ActionTypeTimeStats] = field(default_factory=dict)


@dataclass(slots=True)
class ModerationHistoryEntry:
    action: ModerationAction
    is_revoked: bool
    revoked_at: Optional[datetime]
    revoked_by: Optional[str]
    reversal_reason: Optional[str]
    time_between_action_and_reversal_ms: Optional[int]
    state_changes: List[StateChangeEntry]
    was_reapplied: bool


@dataclass(slots=True)
class ReversalHistoryEntry(ModerationHistoryEntry):
    is_self_reversal: bool = False


def time_stats(hours: Iterable[float]) -> TimeToReversalStats:
    values = list(hours)
    if not values:
        return TimeToReversalStats()
    return TimeToReversalStats(
        average_hours=round(statistics.fmean(values), 2),
        median_hours=round(statistics.median(values), 2),
        fastest_hours=round(min(values), 2),
        slowest_hours=round(max(values), 2),
    )


def _history_entry(action: ModerationAction) -> ModerationHistoryEntry:
    history = history_for_append(action)
    elapsed_ms = None
    if action.revoked_at is not None:
        elapsed_ms = int((action.revoked_at - action.created_at).total_seconds() * 1000)
    return ModerationHistoryEntry(
        action=action,
        is_revoked=action.is_revoked,
        revoked_at=action.revoked_at,
        revoked_by=action.revoked_by,
        reversal_reason=reversal_reason_of(action),
        time_between_action_and_reversal_ms=elapsed_ms,
        state_changes=history,
        was_reapplied=was_reapplied(history),
    )


def _moderator_stats(moderator_id: str, actions: Sequence[ModerationAction]) -> ModeratorReversalStats:
    reversed_actions = [action for action in actions if action.is_revoked]
    by_type: Dict[str, TypeBreakdown] = {}
    for action in actions:
        bucket = by_type.setdefault(action.action_type.value, TypeBreakdown())
        bucket.total += 1
        if action.is_revoked:
            bucket.reversed += 1
    self_reversals = sum(1 for action in reversed_actions if action.revoked_by == moderator_id)
    return ModeratorReversalStats(
        moderator_id=moderator_id,
        total_actions=len(actions),
        reversed_actions=len(reversed_actions),
        reversal_rate=reversal_rate(len(reversed_actions), len(actions)),
        average_time_to_reversal_hours=time_stats(
            hours for hours in map(_hours_to_reversal, reversed_actions) if hours is not None
        ).average_hours,
        self_reversals=self_reversals,
        reversals_by_others=len(reversed_actions) - self_reversals,
        actions_by_type=by_type,
    )


@dataclass
class ModerationAnalytics:
    actions: ActionRepository
    reports: ReportRepository
    guard: AuthorizationGuard
    repeat_offender_threshold: int = field(default_factory=lambda: settings.moderation_repeat_offender_threshold)
    repeat_offender_window_days: int = field(default_factory=lambda: settings.moderation_repeat_offender_window_days)
    clock: Callable[[], datetime] = _utcnow

    @moderation_operation("detecting repeat offender")
    async def detect_repeat_offender(self, user_id: Optional[str]) -> bool:
        if not user_id:
            return False
        user_id = require_uuid(user_id, "userId")
        since = self.clock() - timedelta(days=self.repeat_offender_window_days)
        count = await self.actions.count_actions(ActionQuery(target_user_id=user_id, created_from=since))
        return count >= self.repeat_offender_threshold

    @moderation_operation("calculating violation timeline")
    async def calculate_violation_timeline(self, user_id: Optional[str]) -> Optional[ViolationTimeline]:
        if not user_id:
            return None
        user_id = require_uuid(user_id, "userId")
        now = self.clock()
        recent = await self.actions.list_actions(
            ActionQuery(target_user_id=user_id, created_from=now - timedelta(days=_TIMELINE_BUCKETS[-1]))
        )
        counts = [
            sum(1 for action in recent if action.created_at >= now - timedelta(days=days)) for days in _TIMELINE_BUCKETS
        ]
        message = f"No violations in last {_TIMELINE_BUCKETS[-1]} days"
        for days, count in zip(_TIMELINE_BUCKETS, counts):
            if count:
                message = f"{count} violation{'s' if count != 1 else ''} in last {days} days"
                break
        return ViolationTimeline(
            last_7_days=counts[0], last_30_days=counts[1], last_90_days=counts[2], message=message
        )

    @moderation_operation("calculating reversal rate")
    async def calculate_reversal_rate(self, actor_id: Optional[str], start_date: str, end_date: str) -> ReversalRateResult:
        actions = await self._actions_in_range(actor_id, start_date, end_date, "calculate_reversal_rate")
        total_reversals = sum(1 for action in actions if action.is_revoked)

        by_type: Dict[str, List[ModerationAction]] = defaultdict(list)
        for action in actions:
            by_type[action.action_type.value].append(action)
        type_rates = [
            ActionTypeRate(
                action_type=action_type,
                total_actions=len(items),
                reversed_actions=sum(1 for item in items if item.is_revoked),
                reversal_rate=reversal_rate(sum(1 for item in items if item.is_revoked), len(items)),
            )
            for action_type, items in by_type.items()
        ]
        type_rates.sort(key=lambda item: item.reversal_rate, reverse=True)

        priorities = await self._report_priorities(actions)
        by_priority: Dict[int, List[ModerationAction]] = defaultdict(list)
        for action in actions:
            by_priority[priorities.get(action.related_report_id or "", DEFAULT_PRIORITY)].append(action)
        priority_rates = [
            PriorityRate(
                priority=priority,
                total_actions=len(items),
                reversed_actions=sum(1 for item in items if item.is_revoked),
                reversal_rate=reversal_rate(sum(1 for item in items if item.is_revoked), len(items)),
            )
            for priority, items in sorted(by_priority.items())
        ]
        return ReversalRateResult(
            overall_reversal_rate=reversal_rate(total_reversals, len(actions)),
            total_actions=len(actions),
            total_reversals=total_reversals,
            by_action_type=type_rates,
            by_priority=priority_rates,
        )

    @moderation_operation("fetching reversal metrics")
    async def get_reversal_metrics(self, actor_id: Optional[str], start_date: str, end_date: str) -> ReversalMetrics:
        actions = await self._actions_in_range(actor_id, start_date, end_date, "get_reversal_metrics")
        per_moderator: Dict[str, List[ModerationAction]] = defaultdict(list)
        for action in actions:
            per_moderator[action.moderator_id].append(action)
        moderator_stats = [_moderator_stats(moderator_id, items) for moderator_id, items in per_moderator.items()]
        moderator_stats.sort(key=lambda item: item.reversal_rate, reverse=True)
        total_reversals = sum(1 for action in actions if action.is_revoked)
        return ReversalMetrics(
            overall_reversal_rate=reversal_rate(total_reversals, len(actions)),
            total_actions=len(actions),
            total_reversals=total_reversals,
            per_moderator_stats=moderator_stats,
            time_to_reversal_stats=time_stats(
                hours for hours in map(_hours_to_reversal, actions) if hours is not None
            ),
        )

    @moderation_operation("fetching moderator reversal stats")
    async def get_moderator_reversal_stats(
        self,
        actor_id: Optional[str],
        moderator_id: str,
        start_date: str,
        end_date: str,
    ) -> ModeratorReversalStats:
        moderator_id = require_uuid(moderator_id, "moderatorId")
        actions = await self._actions_in_range(
            actor_id, start_date, end_date, "get_moderator_reversal_stats", moderator_id=moderator_id
        )
        return _moderator_stats(moderator_id, actions)

    @moderation_operation("fetching reversal time metrics")
    async def get_reversal_time_metrics(
        self,
        actor_id: Optional[str],
        start_date: str,
        end_date: str,
    ) -> ReversalTimeMetrics:
        actions = await self._actions_in_range(actor_id, start_date, end_date, "get_reversal_time_metrics")
        hours_by_type: Dict[str, List[float]] = defaultdict(list)
        all_hours: List[float] = []
        for action in actions:
            hours = _hours_to_reversal(action)
            if hours is None:
                continue
            hours_by_type[action.action_type.value].append(hours)
            all_hours.append(hours)
        by_type = {}
        for action_type, values in hours_by_type.items():
            stats = time_stats(values)
            by_type[action_type] = ActionTypeTimeStats(
                average_hours=stats.average_hours,
                median_hours=stats.median_hours,
                fastest_hours=stats.fastest_hours,
                slowest_hours=stats.slowest_hours,
                count=len(values),
            )
        return ReversalTimeMetrics(overall=time_stats(all_hours), by_action_type=by_type)

    @moderation_operation("fetching moderation history")
    async def get_user_moderation_history(
        self,
        actor_id: Optional[str],
        user_id: str,
        include_revoked: bool = True,
    ) -> List[ModerationHistoryEntry]:
        user_id = require_uuid(user_id, "userId")
        await self.guard.verify_moderator_role(actor_id, attempted_action="get_user_moderation_history")
        actions = await self.actions.list_actions(
            ActionQuery(target_user_id=user_id, revoked=None if include_revoked else False)
        )
        return [_history_entry(action) for action in actions]

    @moderation_operation("fetching reversal history")
    async def get_reversal_history(
        self,
        actor_id: Optional[str],
        filters: Optional[ReversalHistoryFilters] = None,
    ) -> List[ReversalHistoryEntry]:
        await self.guard.verify_moderator_role(actor_id, attempted_action="get_reversal_history")
        return await self._reversal_history(filters or ReversalHistoryFilters())

    @moderation_operation("exporting reversal history")
    async def export_reversal_history_csv(
        self,
        actor_id: Optional[str],
        filters: Optional[ReversalHistoryFilters] = None,
    ) -> str:
        await self.guard.verify_admin_role(
            actor_id,
            attempted_action="export_reversal_history",
            message="Only admins can export reversal history",
        )
        entries = await self._reversal_history(filters or ReversalHistoryFilters())
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL)
        writer.writerow(CSV_HEADERS)
        for entry in entries:
            writer.writerow(_csv_row(entry))
        logger.info("reversal history exported", extra={"actor_id": actor_id, "row_count": len(entries)})
        return buffer.getvalue()

    async def _reversal_history(self, filters: ReversalHistoryFilters) -> List[ReversalHistoryEntry]:
        query = ActionQuery(revoked=True, order_by="revoked_at")
        if filters.start_date and filters.end_date:
            query.revoked_from, query.revoked_to = parse_date_range(filters.start_date, filters.end_date)
        elif filters.start_date:
            query.revoked_from = parse_iso_datetime(filters.start_date, "startDate")
        elif filters.end_date:
            query.revoked_to = parse_iso_datetime(filters.end_date, "endDate")
        if filters.moderator_id:
            query.moderator_id = require_uuid(filters.moderator_id, "moderatorId")
        if filters.target_user_id:
            query.target_user_id = require_uuid(filters.target_user_id, "targetUserId")
        if filters.revoked_by:
            query.revoked_by = require_uuid(filters.revoked_by, "revokedBy")
        if filters.action_type:
            query.action_types = [parse_enum(ActionType, filters.action_type, "actionType")]

        actions = await self.actions.list_actions(query)
        needle = filters.reversal_reason.lower() if filters.reversal_reason else None
        entries: List[ReversalHistoryEntry] = []
        for action in actions:
            reason = reversal_reason_of(action)
            if needle and (reason is None or needle not in reason.lower()):
                continue
            base = _history_entry(action)
            entries.append(
                ReversalHistoryEntry(
                    action=base.action,
                    is_revoked=base.is_revoked,
                    revoked_at=base.revoked_at,
                    revoked_by=base.revoked_by,
                    reversal_reason=base.reversal_reason,
                    time_between_action_and_reversal_ms=base.time_between_action_and_reversal_ms,
                    state_changes=base.state_changes,
                    was_reapplied=base.was_reapplied,
                    is_self_reversal=action.revoked_by == action.moderator_id,
                )
            )
        return entries

    async def _actions_in_range(
        self,
        actor_id: Optional[str],
        start_date: str,
        end_date: str,
        attempted_action: str,
        *,
        moderator_id: Optional[str] = None,
    ) -> Sequence[ModerationAction]:
        start, end = parse_date_range(start_date, end_date)
        await self.guard.verify_moderator_role(actor_id, attempted_action=attempted_action)
        return await self.actions.list_actions(
            ActionQuery(moderator_id=moderator_id, created_from=start, created_to=end)
        )

    async def _report_priorities(self, actions: Sequence[ModerationAction]) -> Dict[str, int]:
        priorities: Dict[str, int] = {}
        for report_id in {action.related_report_id for action in actions if action.related_report_id}:
            report = await self.reports.get_report(report_id)
            if report is not None:
                priorities[report_id] = report.priority
        return priorities


def _csv_row(entry: ReversalHistoryEntry) -> List[str]:
    action = entry.action
    hours = _hours_to_reversal(action)
    return [
        action.id,
        action.action_type.value,
        action.moderator_id,
        action.target_user_id,
        action.created_at.isoformat(),
        action.reason,
        str(action.duration_days) if action.duration_days is not None else "",
        entry.revoked_at.isoformat() if entry.revoked_at else "",
        entry.revoked_by or "",
        entry.reversal_reason or "",
        f"{hours:.2f}" if hours is not None else "",
        "Yes" if entry.is_self_reversal else "No",
        "Yes" if entry.was_reapplied else "No",
        action.related_report_id or "",
    ]
