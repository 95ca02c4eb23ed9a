"""
Editorial Workflow API

Command and query endpoints for manuscripts, editor assignments,
reviewer invitations and the deadline sweep.

Response endpoints return typed refusals as HTTP errors:
- validation problems (missing reason, conflict + accept) -> 422
- stale state (already answered, expired, lost race)      -> 409
- unknown assignment / invitation token                   -> 404

Reviewer endpoints are addressed by the signed invitation token so the
links in invitation emails work without a login.
"""

from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ..core.policy import REVIEWER_RESPONSE, PolicyStore
from ..core.state_machine import ResponseError, allowed_events, invitation_response_cutoff
from ..core.workflow import ResponseResult, WorkflowService
from ..schemas import AssignmentResponse, InvitationResponse, ResponseAction, WorkflowEvent

router = APIRouter(prefix="/api", tags=["Editorial Workflow"])

_CATEGORY_STATUS = {"validation": 422, "conflict": 409, "not_found": 404}


# ============================================================
# Request Models
# ============================================================

class SubmitManuscriptRequest(BaseModel):
    title: str = Field(..., min_length=1)
    corresponding_author_email: Optional[str] = None
    as_draft: bool = False


class AssignEditorRequest(BaseModel):
    editor_id: UUID
    editor_name: str = ""
    editor_email: Optional[str] = None
    assigned_by: Optional[UUID] = None
    assignment_reason: Optional[str] = None
    system_generated: bool = False


class InviteReviewerRequest(BaseModel):
    reviewer_email: str = Field(..., min_length=3)
    reviewer_name: str = Field(..., min_length=1)
    reviewer_id: Optional[UUID] = None
    invited_by: Optional[UUID] = None
    editor_notes: Optional[str] = None


# ============================================================
# Helpers
# ============================================================

def get_workflow(request: Request) -> WorkflowService:
    return request.app.state.workflow


def _raise_refusal(result: ResponseResult) -> None:
    raise HTTPException(
        status_code=_CATEGORY_STATUS[result.error.category],
        detail={"error": result.error.value, "message": result.message},
    )


def _response_body(result: ResponseResult) -> dict[str, Any]:
    return {
        "success": True,
        "record": result.record.model_dump(mode="json", exclude={"invitation_token"}),
        "manuscript_status": result.manuscript_status.value if result.manuscript_status else None,
        "notification_errors": result.notification_errors,
    }


# ============================================================
# Manuscripts
# ============================================================

@router.post("/manuscripts", status_code=201)
def submit_manuscript(request: Request, body: SubmitManuscriptRequest):
    manuscript = get_workflow(request).submit_manuscript(
        title=body.title,
        corresponding_author_email=body.corresponding_author_email,
        as_draft=body.as_draft,
    )
    return manuscript.model_dump(mode="json")


@router.get("/manuscripts/{manuscript_id}")
def get_manuscript(request: Request, manuscript_id: UUID):
    workflow = get_workflow(request)
    manuscript = workflow.get_manuscript(manuscript_id)
    return {
        **manuscript.model_dump(mode="json"),
        "allowed_events": allowed_events(manuscript.status),
        "assignments": [
            a.model_dump(mode="json")
            for a in workflow.repository.list_assignments_for_manuscript(manuscript_id)
        ],
        "invitations": [
            i.model_dump(mode="json", exclude={"invitation_token"})
            for i in workflow.repository.list_invitations_for_manuscript(manuscript_id)
        ],
    }


@router.post("/manuscripts/{manuscript_id}/events")
def apply_event(request: Request, manuscript_id: UUID, event: WorkflowEvent):
    """
    Apply a manuscript-only event (submit, screening, decision, revision,
    publish, withdraw). Illegal (status, event) pairs are refused with 409;
    editor and reviewer events are refused with 422.
    """
    result = get_workflow(request).apply_direct_event(manuscript_id, event)

    if result.not_found:
        raise HTTPException(status_code=404, detail="Manuscript not found")
    if result.conflict:
        raise HTTPException(
            status_code=409,
            detail={"error": ResponseError.CONCURRENT_UPDATE.value, "message": "Manuscript changed, retry"},
        )
    if not result.ok:
        raise HTTPException(
            status_code=409,
            detail={
                "error": "invalid_transition",
                "message": result.outcome.reason,
                "allowed_events": allowed_events(result.manuscript.status),
            },
        )

    return {
        "success": True,
        "from_status": result.outcome.from_status.value,
        "to_status": result.outcome.to_status.value,
        "manuscript": result.manuscript.model_dump(mode="json"),
    }


@router.post("/manuscripts/{manuscript_id}/assignments", status_code=201)
def assign_editor(request: Request, manuscript_id: UUID, body: AssignEditorRequest):
    assignment = get_workflow(request).assign_editor(manuscript_id, **body.model_dump())
    return assignment.model_dump(mode="json")


@router.post("/manuscripts/{manuscript_id}/invitations", status_code=201)
def invite_reviewer(request: Request, manuscript_id: UUID, body: InviteReviewerRequest):
    invitation = get_workflow(request).invite_reviewer(manuscript_id, **body.model_dump())
    # The token is only ever returned to the inviting editor, once
    return invitation.model_dump(mode="json")


# ============================================================
# Editor assignments
# ============================================================

@router.get("/assignments/{assignment_id}")
def get_assignment(request: Request, assignment_id: UUID):
    assignment = get_workflow(request).repository.get_assignment(assignment_id)
    if assignment is None:
        raise HTTPException(status_code=404, detail="Assignment not found")
    return assignment.model_dump(mode="json")


@router.post("/assignments/{assignment_id}/response")
def submit_assignment_response(request: Request, assignment_id: UUID, body: AssignmentResponse):
    result = get_workflow(request).submit_assignment_response(assignment_id, body)
    if not result.ok:
        _raise_refusal(result)
    return _response_body(result)


# ============================================================
# Reviewer invitations (token addressed)
# ============================================================

@router.get("/invitations/{token}")
def get_invitation(request: Request, token: str, action: Optional[ResponseAction] = None):
    """
    What the reviewer sees behind the email link. The accept and decline
    links carry `action`, which is echoed back so a client can preselect it.
    """
    workflow = get_workflow(request)
    invitation = workflow.find_invitation(token)
    if invitation is None:
        raise HTTPException(status_code=404, detail="Invitation not found")

    grace = PolicyStore(workflow.repository).get(REVIEWER_RESPONSE).grace_window
    manuscript = workflow.repository.get_manuscript(invitation.manuscript_id)
    return {
        **workflow.manuscript_variables(manuscript),
        "reviewer_name": invitation.reviewer_name,
        "status": invitation.status.value,
        "invited_at": invitation.invited_at.isoformat(),
        "respond_by": invitation_response_cutoff(invitation, grace).isoformat(),
        "review_deadline": invitation.review_deadline.isoformat() if invitation.review_deadline else None,
        "requested_action": action.value if action else None,
        "respond_url": f"{request.url.path}/response",
    }


@router.post("/invitations/{token}/response")
def submit_invitation_response(request: Request, token: str, body: InvitationResponse):
    result = get_workflow(request).submit_invitation_response(token, body)
    if not result.ok:
        _raise_refusal(result)
    return _response_body(result)


@router.post("/invitations/{token}/review")
def record_review_submitted(request: Request, token: str):
    workflow = get_workflow(request)
    invitation = workflow.find_invitation(token)
    if invitation is None:
        raise HTTPException(status_code=404, detail="Invitation not found")
    if not workflow.record_review_submitted(invitation.id):
        raise HTTPException(status_code=409, detail="Invitation is not accepted or review already recorded")
    return {"success": True}


# ============================================================
# Deadline sweep and policy
# ============================================================

@router.post("/sweep")
def run_sweep(request: Request):
    """Trigger a sweep now. 409 if one is already running on this instance."""
    result = request.app.state.scheduler.tick()
    if result is None:
        raise HTTPException(status_code=409, detail="Sweep already in progress")
    return result.to_dict()


@router.get("/sweep/status")
def sweep_status(request: Request):
    return request.app.state.scheduler.get_status()


@router.get("/sweep/statistics")
def sweep_statistics(request: Request):
    return request.app.state.scheduler.engine.deadline_statistics()


@router.get("/time-limits")
def list_time_limits(request: Request):
    policies = PolicyStore(get_workflow(request).repository).list_all()
    return [
        {
            "stage": p.stage,
            "time_limit_days": p.time_limit_days,
            "reminder_days": list(p.reminder_days),
            "escalation_days": list(p.escalation_days),
            "is_default": p.is_default,
        }
        for p in policies
    ]
