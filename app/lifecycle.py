from __future__ import annotations

import logging
from typing import Any

from app.access_policy import AccessPolicy
from app.change_feed import ChangeFeed
from app.complaint_store import InMemoryComplaintStore
from app.errors import AccessDenied, ValidationError
from app.models import (
    COMPLAINT_STATUSES,
    RESPONSE_MAX_LENGTH,
    ChangeEvent,
    Complaint,
    Mutation,
    Subject,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class LifecycleEngine:
    """Applies create/update requests to the store and broadcasts the results.

    Status is not a protocol: any status may follow any other, including
    itself, and resolved complaints may be reopened. The engine enforces
    authorization and bookkeeping only.
    """

    def __init__(
        self,
        *,
        store: InMemoryComplaintStore,
        feed: ChangeFeed,
        policy: AccessPolicy | None = None,
    ) -> None:
        self.store = store
        self.feed = feed
        self.policy = policy or AccessPolicy()

    def request_create(
        self,
        subject: Subject,
        *,
        title: str,
        description: str,
        image_ref: str | None = None,
    ) -> Complaint:
        if not self.policy.can_create(subject):
            raise AccessDenied("only submitters may create complaints")
        # Creation is not broadcast.
        return self.store.create(
            owner_id=subject.id,
            title=title,
            description=description,
            image_ref=image_ref,
        )

    def request_get(self, subject: Subject, complaint_id: str) -> Complaint:
        complaint = self.store.get(complaint_id)
        if not self.policy.can_read(subject, complaint):
            raise AccessDenied("complaint belongs to another submitter")
        return complaint

    def request_list(self, subject: Subject, *, status: str | None = None) -> list[Complaint]:
        return self.store.list_for(subject, status=status)

    def request_summary(self, subject: Subject) -> dict[str, int]:
        counts = self.store.status_counts(subject)
        return {"total": sum(counts.values()), **counts}

    def request_update(
        self,
        subject: Subject,
        complaint_id: str,
        *,
        status: str | None = None,
        response: Any = _UNSET,
    ) -> Complaint:
        """Set status and/or response on one complaint.

        ``response=None`` or a blank string clears the response; leaving it
        out keeps the current value. A request that sets neither field is a
        ``ValidationError``, never a silent no-op.
        """
        self.store.get(complaint_id)
        if status is not None and not self.policy.can_mutate_status(subject):
            raise AccessDenied("only reviewers may change status")
        if response is not _UNSET and not self.policy.can_mutate_response(subject):
            raise AccessDenied("only reviewers may write a response")

        if status is None and response is _UNSET:
            raise ValidationError("update must set status or response")
        if status is not None and status not in COMPLAINT_STATUSES:
            raise ValidationError(f"unsupported status: {status}")
        if response is _UNSET:
            mutation = Mutation(status=status)
        else:
            mutation = Mutation(status=status, response=self._normalize_response(response))

        _previous, current = self.store.apply_mutation(
            complaint_id,
            mutation,
            after_write=lambda before, after: self._publish(ChangeEvent.from_transition(before, after, mutation)),
        )
        return current

    @staticmethod
    def _normalize_response(response: Any) -> str | None:
        if response is None:
            return None
        text = str(response).strip()
        if not text:
            return None
        if len(text) > RESPONSE_MAX_LENGTH:
            raise ValidationError(f"response exceeds {RESPONSE_MAX_LENGTH} characters")
        return text

    def _publish(self, event: ChangeEvent) -> None:
        try:
            matched = self.feed.publish(event)
        except Exception:
            # The store write already succeeded and stays authoritative.
            logger.exception(
                "feed_publish_failed complaint_id=%s event_id=%s",
                event.complaint_id,
                event.event_id,
            )
            return
        logger.debug(
            "feed_published complaint_id=%s event_id=%s subscribers=%s",
            event.complaint_id,
            event.event_id,
            matched,
        )
