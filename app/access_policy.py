from __future__ import annotations

from dataclasses import dataclass

from app.models import Complaint, Subject


@dataclass(frozen=True)
class FeedFilter:
    """Routing predicate for change events; owner_id None matches every owner."""

    owner_id: str | None = None

    @classmethod
    def all(cls) -> "FeedFilter":
        return cls(owner_id=None)

    @classmethod
    def owner(cls, owner_id: str) -> "FeedFilter":
        return cls(owner_id=owner_id)

    @property
    def matches_all(self) -> bool:
        return self.owner_id is None

    def matches(self, owner_id: str) -> bool:
        return self.owner_id is None or self.owner_id == owner_id

    def describe(self) -> str:
        return "all" if self.owner_id is None else f"owner=={self.owner_id}"


class AccessPolicy:
    """Authorization predicates, evaluated fresh on every call."""

    @staticmethod
    def can_create(subject: Subject) -> bool:
        return subject.is_submitter

    @staticmethod
    def can_read(subject: Subject, complaint: Complaint) -> bool:
        if subject.is_reviewer:
            return True
        return subject.is_submitter and subject.id == complaint.owner_id

    @staticmethod
    def can_mutate_status(subject: Subject) -> bool:
        return subject.is_reviewer

    @staticmethod
    def can_mutate_response(subject: Subject) -> bool:
        return subject.is_reviewer

    @staticmethod
    def subscription_filter(subject: Subject) -> FeedFilter:
        if subject.is_reviewer:
            return FeedFilter.all()
        return FeedFilter.owner(subject.id)
