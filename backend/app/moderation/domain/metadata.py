"""Typed views over the free-form action metadata document.

Actions persist ``metadata`` as a JSON document. Inside the domain layer each
kind of metadata gets its own record; conversion to the flat document happens
only when an action is written.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.moderation.domain.models import (
    ModerationAction,
    RestrictionType,
    StateChangeEntry,
    StateChangeKind,
)


@dataclass(slots=True)
class CascadeMetadata:
    """Metadata for an album-scoped removal."""

    cascading_action: bool
    affected_tracks: List[str] = field(default_factory=list)

    @property
    def track_count(self) -> int:
        return len(self.affected_tracks)

    def to_document(self) -> Dict[str, Any]:
        return {
            "cascading_action": self.cascading_action,
            "affected_tracks": list(self.affected_tracks),
            "track_count": self.track_count,
        }


@dataclass(slots=True)
class TrackCascadeMetadata:
    """Lineage metadata carried by every track record of a cascade."""

    parent_album_action: str
    parent_album_id: str

    def to_document(self) -> Dict[str, Any]:
        return {
            "parent_album_action": self.parent_album_action,
            "parent_album_id": self.parent_album_id,
            "cascaded_from_album": True,
        }


@dataclass(slots=True)
class RestrictionMetadata:
    restriction_type: RestrictionType
    restriction_id: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {"restriction_type": self.restriction_type.value}
        if self.restriction_id:
            doc["restriction_id"] = self.restriction_id
        return doc


@dataclass(slots=True)
class ReversalMetadata:
    """Fields written when an action is revoked.

    ``appended`` holds only the new history entries; stored entries are
    carried over untouched by :meth:`merge_into`.
    """

    reversal_reason: str
    is_self_reversal: bool
    appended: List[StateChangeEntry]
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> Dict[str, Any]:
        doc = dict(self.extra)
        doc["reversal_reason"] = self.reversal_reason
        doc["is_self_reversal"] = self.is_self_reversal
        doc["state_changes"] = [entry.to_document() for entry in self.appended]
        return doc

    def merge_into(self, existing: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(existing)
        prior = list(existing.get("state_changes") or [])
        merged.update(self.to_document())
        merged["state_changes"] = prior + merged["state_changes"]
        return merged


def initial_state_change(action: ModerationAction) -> StateChangeEntry:
    return StateChangeEntry(
        timestamp=action.created_at,
        action=StateChangeKind.APPLIED,
        by_user_id=action.moderator_id,
        reason=action.reason,
        is_self_action=False,
    )


def state_changes_of(action: ModerationAction) -> List[StateChangeEntry]:
    raw = action.metadata.get("state_changes") if action.metadata else None
    if not raw:
        return []
    return [StateChangeEntry.from_document(item) for item in raw if isinstance(item, dict)]


def history_for_append(action: ModerationAction) -> List[StateChangeEntry]:
    """Return the recorded history, synthesising the initial ``applied`` entry when absent."""
    history = state_changes_of(action)
    if not history:
        history = [initial_state_change(action)]
    return history


def was_reapplied(history: List[StateChangeEntry]) -> bool:
    return any(entry.action is StateChangeKind.REAPPLIED for entry in history)


def reversal_reason_of(action: ModerationAction) -> Optional[str]:
    value = action.metadata.get("reversal_reason") if action.metadata else None
    return value if isinstance(value, str) else None
