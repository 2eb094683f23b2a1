"""
Carpool endpoints
=================

GET   /api/v1/bookings/carpool/candidates/{host_booking_id} -- ranked candidates
POST  /api/v1/bookings/carpool/candidates/pre-submit       -- candidates for a draft
POST  /api/v1/bookings/carpool/invite                      -- invite a joiner (201)
PATCH /api/v1/bookings/carpool/invite/{invite_id}/respond  -- approve / decline
POST  /api/v1/bookings/carpool/merge                       -- merge + split cost
POST  /api/v1/bookings/carpool/unmerge                     -- revert a group
GET   /api/v1/bookings/carpool/groups/{group_id}           -- group snapshot
GET   /api/v1/bookings/carpool/groups/{group_id}/audit-logs

The acting user comes from the ``x-user-id`` header.  Business errors are
rendered by the ``CarpoolError`` handler registered in ``create_app``.
"""

from fastapi import APIRouter, Depends, Request

from carpool.api.dependencies import get_actor_id, get_orchestrator
from carpool.api.middleware import limiter
from carpool.api.schemas import (
    AuditLogResponse,
    CandidateResponse,
    CarpoolGroupResponse,
    ErrorResponse,
    InviteRequest,
    InviteResponse,
    MergeRequest,
    PreSubmitCandidatesRequest,
    RespondInviteRequest,
    UnmergeRequest,
)
from carpool.services.orchestrator import CarpoolOrchestrator

router = APIRouter(prefix="/bookings/carpool", tags=["carpool"])

_ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


@router.get(
    "/candidates/{host_booking_id}",
    response_model=list[CandidateResponse],
    summary="Find carpool candidates for a booking",
    responses=_ERRORS,
)
@limiter.limit("100/minute")
async def find_candidates(
    request: Request,
    host_booking_id: int,
    actor_id: str = Depends(get_actor_id),
    orchestrator: CarpoolOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.find_candidates(host_booking_id, actor_id)


@router.post(
    "/candidates/pre-submit",
    response_model=list[CandidateResponse],
    summary="Find carpool candidates for a trip that is not saved yet",
)
@limiter.limit("100/minute")
async def find_candidates_pre_submit(
    request: Request,
    body: PreSubmitCandidatesRequest,
    actor_id: str = Depends(get_actor_id),
    orchestrator: CarpoolOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.find_candidates_for_draft(
        body.to_draft(), actor_id=actor_id, requester_id=body.requester_id
    )


@router.post(
    "/invite",
    status_code=201,
    response_model=InviteResponse,
    summary="Invite a joiner booking into the host's carpool group",
    responses=_ERRORS,
)
@limiter.limit("100/minute")
async def invite(
    request: Request,
    body: InviteRequest,
    actor_id: str = Depends(get_actor_id),
    orchestrator: CarpoolOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.invite(
        body.host_booking_id,
        body.joiner_booking_id,
        actor_id,
        expires_in_minutes=body.expires_in_minutes,
    )


@router.patch(
    "/invite/{invite_id}/respond",
    response_model=InviteResponse,
    summary="Approve or decline an invite",
    responses=_ERRORS,
)
@limiter.limit("100/minute")
async def respond_to_invite(
    request: Request,
    invite_id: int,
    body: RespondInviteRequest,
    actor_id: str = Depends(get_actor_id),
    orchestrator: CarpoolOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.respond_to_invite(invite_id, body.decision, actor_id)


@router.post(
    "/merge",
    response_model=CarpoolGroupResponse,
    summary="Merge a fully approved group and split its cost",
    responses=_ERRORS,
)
@limiter.limit("100/minute")
async def merge(
    request: Request,
    body: MergeRequest,
    actor_id: str = Depends(get_actor_id),
    orchestrator: CarpoolOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.merge(body.carpool_group_id, body.cost_mode, actor_id)


@router.post(
    "/unmerge",
    response_model=CarpoolGroupResponse,
    summary="Revert a carpool group",
    responses=_ERRORS,
)
@limiter.limit("100/minute")
async def unmerge(
    request: Request,
    body: UnmergeRequest,
    actor_id: str = Depends(get_actor_id),
    orchestrator: CarpoolOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.unmerge(body.carpool_group_id, actor_id)


@router.get(
    "/groups/{group_id}",
    response_model=CarpoolGroupResponse,
    summary="Get a carpool group",
    responses={404: {"model": ErrorResponse}},
)
@limiter.limit("100/minute")
async def get_group(
    request: Request,
    group_id: int,
    orchestrator: CarpoolOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_group(group_id)


@router.get(
    "/groups/{group_id}/audit-logs",
    response_model=list[AuditLogResponse],
    summary="Audit trail of a carpool group, newest first",
)
@limiter.limit("100/minute")
async def get_audit_logs(
    request: Request,
    group_id: int,
    orchestrator: CarpoolOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_audit_logs(group_id)
