from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

ROLE_SUBMITTER = "submitter"
ROLE_REVIEWER = "reviewer"
ROLES = frozenset({ROLE_SUBMITTER, ROLE_REVIEWER})

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_RESOLVED = "resolved"
COMPLAINT_STATUSES = (STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_RESOLVED)

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 2000
RESPONSE_MAX_LENGTH = 2000


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_complaint_id() -> str:
    return f"cmp_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class Subject:
    id: str
    role: str

    @property
    def is_reviewer(self) -> bool:
        return self.role == ROLE_REVIEWER

    @property
    def is_submitter(self) -> bool:
        return self.role == ROLE_SUBMITTER


@dataclass(frozen=True)
class Complaint:
    id: str
    owner_id: str
    title: str
    description: str
    image_ref: str | None
    status: str
    response: str | None
    created_at: datetime
    updated_at: datetime

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "description": self.description,
            "image_ref": self.image_ref,
            "status": self.status,
            "response": self.response,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "Complaint":
        return cls(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            title=str(row["title"]),
            description=str(row["description"]),
            image_ref=row.get("image_ref"),
            status=str(row["status"]),
            response=row.get("response"),
            created_at=_as_datetime(row["created_at"]),
            updated_at=_as_datetime(row["updated_at"]),
        )


_UNSET: Any = object()


@dataclass(frozen=True)
class Mutation:
    """Fields a reviewer writes in one update; unset fields are left alone."""

    status: str | None = None
    response: Any = _UNSET

    @property
    def touches_status(self) -> bool:
        return self.status is not None

    @property
    def touches_response(self) -> bool:
        return self.response is not _UNSET

    @property
    def is_empty(self) -> bool:
        return not self.touches_status and not self.touches_response

    def apply(self, complaint: Complaint, *, updated_at: datetime) -> Complaint:
        changes: dict[str, Any] = {"updated_at": updated_at}
        if self.touches_status:
            changes["status"] = self.status
        if self.touches_response:
            changes["response"] = self.response
        return replace(complaint, **changes)


@dataclass(frozen=True)
class ChangeEvent:
    complaint_id: str
    owner_id: str
    previous_status: str
    new_status: str
    timestamp: datetime
    response_changed: bool = False
    previous_response: str | None = None
    new_response: str | None = None
    event_id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:16]}")

    @classmethod
    def from_transition(cls, previous: Complaint, current: Complaint, mutation: Mutation) -> "ChangeEvent":
        if mutation.touches_response and previous.response != current.response:
            return cls(
                complaint_id=current.id,
                owner_id=current.owner_id,
                previous_status=previous.status,
                new_status=current.status,
                timestamp=current.updated_at,
                response_changed=True,
                previous_response=previous.response,
                new_response=current.response,
            )
        return cls(
            complaint_id=current.id,
            owner_id=current.owner_id,
            previous_status=previous.status,
            new_status=current.status,
            timestamp=current.updated_at,
        )

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "event_id": self.event_id,
            "complaint_id": self.complaint_id,
            "owner_id": self.owner_id,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "timestamp": self.timestamp.isoformat(),
            "response_changed": self.response_changed,
        }
        if self.response_changed:
            data["previous_response"] = self.previous_response
            data["new_response"] = self.new_response
        return data


def apply_event(snapshot: dict[str, dict[str, Any]], event: ChangeEvent) -> dict[str, dict[str, Any]]:
    """Upsert one event into a client-side view keyed by complaint id.

    Events older than what the view already holds are ignored, so replaying a
    redelivered or reordered event never moves a row backwards.
    """
    row = dict(snapshot.get(event.complaint_id) or {"id": event.complaint_id, "owner_id": event.owner_id})
    seen_at = row.get("updated_at")
    if isinstance(seen_at, str) and _as_datetime(seen_at) > event.timestamp:
        return snapshot
    row["status"] = event.new_status
    if event.response_changed:
        row["response"] = event.new_response
    row["updated_at"] = event.timestamp.isoformat()
    snapshot[event.complaint_id] = row
    return snapshot


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt
