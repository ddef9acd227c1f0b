from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from app.routes._deps import engine_from_request, subject_from_request, trace_id_from_request
from app.schemas import ComplaintStatus, CreateComplaintRequest, UpdateComplaintRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["complaints"])


@router.post("/complaints")
def create_complaint(payload: CreateComplaintRequest, request: Request):
    complaint = engine_from_request(request).request_create(
        subject_from_request(request),
        title=payload.title,
        description=payload.description,
        image_ref=payload.image_ref,
    )
    return JSONResponse(
        status_code=201,
        content=success_envelope(complaint.as_dict(), trace_id_from_request(request)),
    )


@router.get("/complaints")
def list_complaints(request: Request, status: ComplaintStatus | None = Query(default=None)):
    items = engine_from_request(request).request_list(subject_from_request(request), status=status)
    return success_envelope(
        {
            "items": [x.as_dict() for x in items],
            "total": len(items),
        },
        trace_id_from_request(request),
    )


@router.get("/complaints/summary")
def complaints_summary(request: Request):
    counts = engine_from_request(request).request_summary(subject_from_request(request))
    return success_envelope(counts, trace_id_from_request(request))


@router.get("/complaints/{complaint_id}")
def get_complaint(complaint_id: str, request: Request):
    complaint = engine_from_request(request).request_get(subject_from_request(request), complaint_id)
    return success_envelope(complaint.as_dict(), trace_id_from_request(request))


@router.patch("/complaints/{complaint_id}")
def update_complaint(complaint_id: str, payload: UpdateComplaintRequest, request: Request):
    complaint = engine_from_request(request).request_update(
        subject_from_request(request),
        complaint_id,
        **payload.changes(),
    )
    return success_envelope(complaint.as_dict(), trace_id_from_request(request))
