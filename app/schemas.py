from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ComplaintStatus = Literal["pending", "in_progress", "resolved"]


class CreateComplaintRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=3, max_length=200)
    description: str = Field(min_length=10, max_length=2000)
    image_ref: str | None = Field(default=None, max_length=2048)


class UpdateComplaintRequest(BaseModel):
    """Reviewer edit; a field left out of the body is left unchanged.

    ``response: null`` clears the response, which is different from omitting it.
    """

    model_config = ConfigDict(extra="forbid")

    status: ComplaintStatus | None = None
    response: str | None = Field(default=None, max_length=2000)

    def changes(self) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if self.status is not None:
            changes["status"] = self.status
        if "response" in self.model_fields_set:
            changes["response"] = self.response
        return changes


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
