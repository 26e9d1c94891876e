"""
tracky/routes_trackers.py

Tracker endpoints (JSON bodies) including the mobile-tracker location history.

Security guarantees:
- All endpoints require a verified bearer token (require_actor)
- Creating, deleting, approving and recording positions are supervisor-only
- Operators change an approved tracker only through request-edit / approve-edit
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query

try:
    from tracky.config import IS_DEV
    from tracky.dependencies import get_workflow, require_capability
    from tracky.models import Actor, EntityKind, Operation
    from tracky.schemas import (
        EditRequestBody,
        LocationAppendRequest,
        LocationEntryResponse,
        LocationHistoryResponse,
        MessageResponse,
        RevisionBody,
        TrackerCreateRequest,
        TrackerListResponse,
        TrackerResponse,
        TrackerUpdateRequest,
    )
    from tracky.workflow import ApprovalWorkflow
except ModuleNotFoundError:
    from config import IS_DEV
    from dependencies import get_workflow, require_capability
    from models import Actor, EntityKind, Operation
    from schemas import (
        EditRequestBody,
        LocationAppendRequest,
        LocationEntryResponse,
        LocationHistoryResponse,
        MessageResponse,
        RevisionBody,
        TrackerCreateRequest,
        TrackerListResponse,
        TrackerResponse,
        TrackerUpdateRequest,
    )
    from workflow import ApprovalWorkflow


router = APIRouter(
    prefix="/tracker",
    tags=["trackers"],
)


@router.post("", response_model=TrackerResponse)
def create_tracker(
    request: TrackerCreateRequest,
    actor: Actor = Depends(require_capability(Operation.create)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> TrackerResponse:
    """
    Create an unapproved tracker under a client-supplied id (supervisors only).

    A mobile tracker may carry an initial position (latitude, longitude,
    timestamp), which becomes the first entry of its location history.

    Raises:
        400: Bad id or field, incomplete initial position
        403: Caller is not a supervisor
        412: tracker_id already taken, or a position sent for a static tracker
        503: Record store unavailable
    """
    view = workflow.create_entity(
        EntityKind.tracker,
        actor,
        request.entity_fields(),
        entity_id=request.tracker_id,
        initial_location=request.initial_location(),
    )
    return TrackerResponse(**view)


@router.get("", response_model=TrackerListResponse)
def list_trackers(
    approved: Optional[bool] = Query(None, description="Only approved (true) or unapproved (false) trackers"),
    mobile: Optional[bool] = Query(None, description="Only mobile (true) or static (false) trackers"),
    actor: Actor = Depends(require_capability(Operation.list)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> TrackerListResponse:
    filters = {key: value for key, value in (("approved", approved), ("mobile", mobile)) if value is not None}
    views = workflow.list_entities(EntityKind.tracker, actor, filters)
    return TrackerListResponse(items=[TrackerResponse(**v) for v in views], total=len(views))


@router.get("/{tracker_id}", response_model=TrackerResponse)
def get_tracker(
    tracker_id: str = Path(..., description="Tracker ID"),
    actor: Actor = Depends(require_capability(Operation.read)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> TrackerResponse:
    """Tracker with its current position and full location history."""
    return TrackerResponse(**workflow.get_entity(EntityKind.tracker, tracker_id, actor))


@router.get("/{tracker_id}/locations", response_model=LocationHistoryResponse)
def get_tracker_locations(
    tracker_id: str = Path(..., description="Tracker ID"),
    actor: Actor = Depends(require_capability(Operation.read)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> LocationHistoryResponse:
    history = workflow.location_history(tracker_id, actor)
    return LocationHistoryResponse(id=tracker_id, locationHistory=history)


@router.put("/{tracker_id}", response_model=TrackerResponse)
def update_tracker(
    request: TrackerUpdateRequest,
    tracker_id: str = Path(..., description="Tracker ID"),
    actor: Actor = Depends(require_capability(Operation.update)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> TrackerResponse:
    """
    Update a tracker directly.

    Supervisors may always write; operators only once per approved edit request.

    Raises:
        400: No changes or malformed field
        403: Operator without an open edit grant, or viewer
        404: Tracker not found
        412: revision is stale
    """
    view = workflow.update_entity(
        EntityKind.tracker,
        tracker_id,
        actor,
        fields=request.entity_fields(),
        expected_revision=request.revision,
    )
    return TrackerResponse(**view)


@router.delete("/{tracker_id}", response_model=MessageResponse)
def delete_tracker(
    tracker_id: str = Path(..., description="Tracker ID"),
    actor: Actor = Depends(require_capability(Operation.delete)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> MessageResponse:
    """Delete a tracker and its location history; assets pointing at it are detached."""
    workflow.delete_entity(EntityKind.tracker, tracker_id, actor)
    return MessageResponse(message="Tracker deleted successfully")


@router.put("/request-edit/{tracker_id}", response_model=TrackerResponse)
def request_edit(
    body: EditRequestBody,
    tracker_id: str = Path(..., description="Tracker ID"),
    actor: Actor = Depends(require_capability(Operation.request_edit)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> TrackerResponse:
    view = workflow.request_edit(
        EntityKind.tracker, tracker_id, actor, proposed=body.changes, expected_revision=body.revision
    )
    if IS_DEV:
        print(f"[API] Edit request stored: tracker_id={tracker_id}, user_id={actor.actor_id}")
    return TrackerResponse(**view)


@router.put("/approve-edit/{tracker_id}", response_model=TrackerResponse)
def approve_edit(
    body: Optional[RevisionBody] = None,
    tracker_id: str = Path(..., description="Tracker ID"),
    actor: Actor = Depends(require_capability(Operation.approve_edit)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> TrackerResponse:
    revision = body.revision if body else None
    return TrackerResponse(**workflow.approve_edit(EntityKind.tracker, tracker_id, actor, expected_revision=revision))


@router.put("/approve/{tracker_id}", response_model=TrackerResponse)
def approve_tracker(
    body: Optional[RevisionBody] = None,
    tracker_id: str = Path(..., description="Tracker ID"),
    actor: Actor = Depends(require_capability(Operation.approve)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> TrackerResponse:
    revision = body.revision if body else None
    return TrackerResponse(**workflow.approve(EntityKind.tracker, tracker_id, actor, expected_revision=revision))


@router.put("/update-location/{tracker_id}", response_model=LocationEntryResponse)
def update_location(
    request: LocationAppendRequest,
    tracker_id: str = Path(..., description="Tracker ID"),
    actor: Actor = Depends(require_capability(Operation.append_location)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> LocationEntryResponse:
    """
    Append one position to a mobile tracker's history (supervisors only).

    Raises:
        400: timestamp, longitude or latitude missing or out of range
        404: Tracker not found
        412: Tracker is not mobile
    """
    entry = workflow.append_location(
        tracker_id, actor, request.timestamp, request.longitude, request.latitude
    )
    return LocationEntryResponse(**entry)
