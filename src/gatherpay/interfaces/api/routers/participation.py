# src/gatherpay/interfaces/api/routers/participation.py
from typing import Any, Dict

from fastapi import APIRouter, Depends

from gatherpay.application.services import ParticipationStateMachine, EventService
from gatherpay.interfaces.api.deps import (
    CurrentUser, require_user, require_api_key, get_participation_service, get_event_service,
)
from gatherpay.interfaces.api.schemas import (
    JoinOut, ParticipationOut, FinalizeAllOut, EventCancelIn, AttendanceIn,
)

router = APIRouter(tags=["Participation"])


@router.post("/events/{event_id}/join", response_model=JoinOut)
async def join_event(
    event_id: int,
    user: CurrentUser = Depends(require_user),
    participations: ParticipationStateMachine = Depends(get_participation_service),
):
    return await participations.join(user.user_id, event_id)


@router.post("/events/{event_id}/reservation", response_model=JoinOut)
async def resume_reservation(
    event_id: int,
    user: CurrentUser = Depends(require_user),
    participations: ParticipationStateMachine = Depends(get_participation_service),
):
    """Take a new payment window after a failed payment."""
    return await participations.resume_reservation(user.user_id, event_id)


@router.post("/participations/{participation_id}/finalize", response_model=ParticipationOut)
async def finalize_match(
    participation_id: int,
    user: CurrentUser = Depends(require_user),
    participations: ParticipationStateMachine = Depends(get_participation_service),
):
    return await participations.finalize_match(participation_id, user.user_id)


@router.post("/events/{event_id}/finalize", response_model=FinalizeAllOut)
async def finalize_all(
    event_id: int,
    user: CurrentUser = Depends(require_user),
    participations: ParticipationStateMachine = Depends(get_participation_service),
):
    count = await participations.finalize_all(event_id, user.user_id)
    return FinalizeAllOut(event_id=event_id, finalized=count)


@router.post("/events/{event_id}/cancel")
async def cancel_event(
    event_id: int,
    body: EventCancelIn,
    user: CurrentUser = Depends(require_user),
    events: EventService = Depends(get_event_service),
) -> Dict[str, Any]:
    return await events.cancel_event(event_id, user.user_id, body.reason)


@router.post("/events/{event_id}/attendance", dependencies=[Depends(require_api_key)])
def record_attendance(
    event_id: int,
    body: AttendanceIn,
    events: EventService = Depends(get_event_service),
) -> Dict[str, Any]:
    """Entry point for the attendance collaborator (QR check-in, host confirmation)."""
    return events.record_attendance(event_id, body.user_id)
