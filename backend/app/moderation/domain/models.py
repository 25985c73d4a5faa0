"""Domain records for reports, actions, restrictions and security events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# Suspensions ending after this instant are treated as permanent bans.
PERMANENT_BAN_THRESHOLD = datetime(2100, 1, 1, tzinfo=timezone.utc)
PERMANENT_SUSPENSION_UNTIL = datetime(9999, 12, 31, tzinfo=timezone.utc)


class ReportType(str, Enum):
    POST = "post"
    COMMENT = "comment"
    TRACK = "track"
    USER = "user"
    ALBUM = "album"


class ReportReason(str, Enum):
    SPAM = "spam"
    HARASSMENT = "harassment"
    HATE_SPEECH = "hate_speech"
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    COPYRIGHT_VIOLATION = "copyright_violation"
    IMPERSONATION = "impersonation"
    SELF_HARM = "self_harm"
    OTHER = "other"


class ReportStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"


class ActionType(str, Enum):
    CONTENT_REMOVED = "content_removed"
    CONTENT_APPROVED = "content_approved"
    USER_WARNED = "user_warned"
    USER_SUSPENDED = "user_suspended"
    USER_BANNED = "user_banned"
    RESTRICTION_APPLIED = "restriction_applied"


class RestrictionType(str, Enum):
    POSTING_DISABLED = "posting_disabled"
    COMMENTING_DISABLED = "commenting_disabled"
    UPLOAD_DISABLED = "upload_disabled"
    SUSPENDED = "suspended"


class StateChangeKind(str, Enum):
    APPLIED = "applied"
    REVERSED = "reversed"
    REAPPLIED = "reapplied"


class Role(str, Enum):
    MODERATOR = "moderator"
    ADMIN = "admin"


@dataclass(slots=True)
class Report:
    id: str
    reporter_id: str
    report_type: ReportType
    target_id: str
    reason: ReportReason
    priority: int
    status: ReportStatus
    created_at: datetime
    reported_user_id: Optional[str] = None
    description: Optional[str] = None
    moderator_flagged: bool = False
    internal_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    action_taken: Optional[ActionType] = None

    @property
    def is_resolved(self) -> bool:
        return self.status is ReportStatus.RESOLVED


@dataclass(slots=True)
class ModerationAction:
    id: str
    moderator_id: str
    target_user_id: str
    action_type: ActionType
    reason: str
    created_at: datetime
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    internal_notes: Optional[str] = None
    duration_days: Optional[int] = None
    expires_at: Optional[datetime] = None
    related_report_id: Optional[str] = None
    notification_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    notification_sent: bool = False
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    version: int = 1

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass(slots=True)
class StateChangeEntry:
    timestamp: datetime
    action: StateChangeKind
    by_user_id: str
    reason: str
    is_self_action: bool

    def to_document(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "by_user_id": self.by_user_id,
            "reason": self.reason,
            "is_self_action": self.is_self_action,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "StateChangeEntry":
        raw_ts = doc.get("timestamp")
        timestamp = raw_ts if isinstance(raw_ts, datetime) else datetime.fromisoformat(str(raw_ts))
        return cls(
            timestamp=timestamp,
            action=StateChangeKind(str(doc.get("action"))),
            by_user_id=str(doc.get("by_user_id") or ""),
            reason=str(doc.get("reason") or ""),
            is_self_action=bool(doc.get("is_self_action", False)),
        )


@dataclass(slots=True)
class UserRestriction:
    id: str
    user_id: str
    restriction_type: RestrictionType
    reason: str
    applied_by: str
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None
    is_active: bool = True
    related_action_id: Optional[str] = None

    def is_in_force(self, *, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.is_active and (self.expires_at is None or self.expires_at > now)


@dataclass(slots=True)
class UserProfile:
    user_id: str
    username: Optional[str] = None
    suspended_until: Optional[datetime] = None
    suspension_reason: Optional[str] = None

    @property
    def is_permanently_banned(self) -> bool:
        return self.suspended_until is not None and self.suspended_until > PERMANENT_BAN_THRESHOLD


@dataclass(slots=True)
class AlbumTrack:
    id: str
    title: str
    position: int
    duration: Optional[int] = None


@dataclass(slots=True)
class AlbumContext:
    id: str
    name: str
    user_id: str
    is_public: bool
    created_at: datetime
    tracks: List[AlbumTrack] = field(default_factory=list)
    description: Optional[str] = None
    cover_image_url: Optional[str] = None

    @property
    def track_count(self) -> int:
        return len(self.tracks)

    @property
    def total_duration(self) -> Optional[int]:
        durations = [track.duration for track in self.tracks if track.duration is not None]
        if not durations:
            return None
        return sum(durations)

    @property
    def track_ids(self) -> List[str]:
        return [track.id for track in self.tracks]


@dataclass(slots=True)
class SecurityEvent:
    id: str
    event_type: str
    user_id: Optional[str]
    details: Dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class CascadingOptions:
    remove_album: bool = True
    remove_tracks: bool = True


@dataclass(slots=True)
class ReportParams:
    report_type: str
    target_id: str
    reason: str
    description: Optional[str] = None


@dataclass(slots=True)
class ModeratorFlagParams:
    report_type: str
    target_id: str
    reason: str
    internal_notes: str


@dataclass(slots=True)
class ModerationActionParams:
    action_type: str
    target_user_id: str
    reason: str
    report_id: Optional[str] = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    internal_notes: Optional[str] = None
    duration_days: Optional[int] = None
    restriction_type: Optional[str] = None
    notification_message: Optional[str] = None
    cascading_options: Optional[CascadingOptions] = None


@dataclass(slots=True)
class QueueFilters:
    status: Optional[ReportStatus] = None
    priority: Optional[int] = None
    report_type: Optional[ReportType] = None
    moderator_flagged: Optional[bool] = None
    limit: int = 100


@dataclass(slots=True)
class ReversalHistoryFilters:
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    moderator_id: Optional[str] = None
    action_type: Optional[str] = None
    reversal_reason: Optional[str] = None
    target_user_id: Optional[str] = None
    revoked_by: Optional[str] = None
