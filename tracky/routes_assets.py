"""
tracky/routes_assets.py

Asset endpoints. Create and update take multipart forms so an image can ride
along with the fields; every other endpoint is a plain JSON call.

Security guarantees:
- All endpoints require a verified bearer token (require_actor)
- The route-level gate rejects roles that can never perform the operation
- The workflow decides whether the role may act in the asset's CURRENT state
- createdBy, approval fields, media URLs and currentPrice are never client-set
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Path, Query, UploadFile

try:
    from tracky.config import IS_DEV
    from tracky.dependencies import get_workflow, require_capability
    from tracky.media import ImageUpload
    from tracky.models import Actor, EntityKind, Operation
    from tracky.schemas import (
        AssetListResponse,
        AssetResponse,
        EditRequestBody,
        MessageResponse,
        RevisionBody,
    )
    from tracky.workflow import ApprovalWorkflow
except ModuleNotFoundError:
    from config import IS_DEV
    from dependencies import get_workflow, require_capability
    from media import ImageUpload
    from models import Actor, EntityKind, Operation
    from schemas import (
        AssetListResponse,
        AssetResponse,
        EditRequestBody,
        MessageResponse,
        RevisionBody,
    )
    from workflow import ApprovalWorkflow


router = APIRouter(
    prefix="/asset",
    tags=["assets"],
)


def _read_image(image: Optional[UploadFile]) -> Optional[ImageUpload]:
    if image is None or not image.filename:
        return None
    return ImageUpload(filename=image.filename, content=image.file.read())


def _sent(**values: Any) -> Dict[str, Any]:
    """Values the client actually sent (FastAPI maps absent and empty form fields to None)."""
    return {key: value for key, value in values.items() if value is not None}


@router.post("", response_model=AssetResponse)
def create_asset(
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    originalPrice: Optional[str] = Form(None),
    depreciationRate: Optional[str] = Form(None),
    depreciationValue: Optional[str] = Form(None),
    purchaseDate: Optional[str] = Form(None),
    trackerId: Optional[str] = Form(None),
    asset_id: Optional[str] = Form(None, description="Client-supplied id; generated when omitted"),
    image: Optional[UploadFile] = File(None),
    actor: Actor = Depends(require_capability(Operation.create)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> AssetResponse:
    """
    Create an unapproved asset (supervisors only).

    Valuation fields default to originalPrice=0, depreciationRate=daily,
    depreciationValue=0, purchaseDate=now. An attached image is stored with a
    QR code pointing at it.

    Raises:
        400: Missing name, bad amount/rate/date, unsupported image
        403: Caller is not a supervisor
        404: trackerId does not exist
        412: asset_id already taken
        503: Record store or blob store unavailable
    """
    fields = _sent(
        name=name,
        description=description,
        originalPrice=originalPrice,
        depreciationRate=depreciationRate,
        depreciationValue=depreciationValue,
        purchaseDate=purchaseDate,
        trackerId=trackerId,
    )
    view = workflow.create_entity(
        EntityKind.asset,
        actor,
        fields,
        entity_id=asset_id,
        image=_read_image(image),
    )
    return AssetResponse(**view)


@router.get("", response_model=AssetListResponse)
def list_assets(
    approved: Optional[bool] = Query(None, description="Only approved (true) or unapproved (false) assets"),
    trackerId: Optional[str] = Query(None, description="Only assets attached to this tracker"),
    actor: Actor = Depends(require_capability(Operation.list)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> AssetListResponse:
    """List assets, each valued at request time."""
    filters = _sent(approved=approved, trackerId=trackerId)
    views = workflow.list_entities(EntityKind.asset, actor, filters)
    return AssetListResponse(items=[AssetResponse(**v) for v in views], total=len(views))


@router.get("/{asset_id}", response_model=AssetResponse)
def get_asset(
    asset_id: str = Path(..., description="Asset ID"),
    actor: Actor = Depends(require_capability(Operation.read)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> AssetResponse:
    return AssetResponse(**workflow.get_entity(EntityKind.asset, asset_id, actor))


@router.put("/{asset_id}", response_model=AssetResponse)
def update_asset(
    asset_id: str = Path(..., description="Asset ID"),
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    originalPrice: Optional[str] = Form(None),
    depreciationRate: Optional[str] = Form(None),
    depreciationValue: Optional[str] = Form(None),
    purchaseDate: Optional[str] = Form(None),
    trackerId: Optional[str] = Form(None),
    unlinkTracker: bool = Form(False, description="Detach the asset from its tracker"),
    revision: Optional[int] = Form(None, ge=1, description="Revision the client last read"),
    image: Optional[UploadFile] = File(None),
    actor: Actor = Depends(require_capability(Operation.update)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> AssetResponse:
    """
    Update an asset directly.

    Supervisors may always write. Operators may write once after a supervisor
    approved their edit request; that write consumes the grant. Changing any
    valuation field recomputes currentPrice. A new image replaces the old image
    and QR code, which are deleted after the update commits.

    Raises:
        400: No changes, malformed field, unsupported image
        403: Operator without an open edit grant, or viewer
        404: Asset (or referenced tracker) not found
        412: revision is stale
        503: Record store or blob store unavailable
    """
    fields = _sent(
        name=name,
        description=description,
        originalPrice=originalPrice,
        depreciationRate=depreciationRate,
        depreciationValue=depreciationValue,
        purchaseDate=purchaseDate,
        trackerId=trackerId,
    )
    if unlinkTracker:
        fields["trackerId"] = None

    view = workflow.update_entity(
        EntityKind.asset,
        asset_id,
        actor,
        fields=fields,
        image=_read_image(image),
        expected_revision=revision,
    )
    return AssetResponse(**view)


@router.delete("/{asset_id}", response_model=MessageResponse)
def delete_asset(
    asset_id: str = Path(..., description="Asset ID"),
    actor: Actor = Depends(require_capability(Operation.delete)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> MessageResponse:
    """Delete an asset in any state. Its image and QR code are removed best-effort."""
    workflow.delete_entity(EntityKind.asset, asset_id, actor)
    return MessageResponse(message="Asset deleted successfully")


@router.put("/request-edit/{asset_id}", response_model=AssetResponse)
def request_edit(
    body: EditRequestBody,
    asset_id: str = Path(..., description="Asset ID"),
    actor: Actor = Depends(require_capability(Operation.request_edit)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> AssetResponse:
    """Stage proposed changes on an approved asset (operators only)."""
    view = workflow.request_edit(
        EntityKind.asset, asset_id, actor, proposed=body.changes, expected_revision=body.revision
    )
    if IS_DEV:
        print(f"[API] Edit request stored: asset_id={asset_id}, user_id={actor.actor_id}")
    return AssetResponse(**view)


@router.put("/approve-edit/{asset_id}", response_model=AssetResponse)
def approve_edit(
    body: Optional[RevisionBody] = None,
    asset_id: str = Path(..., description="Asset ID"),
    actor: Actor = Depends(require_capability(Operation.approve_edit)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> AssetResponse:
    """Apply the pending request and open a one-time edit grant (supervisors only)."""
    revision = body.revision if body else None
    return AssetResponse(**workflow.approve_edit(EntityKind.asset, asset_id, actor, expected_revision=revision))


@router.put("/approve/{asset_id}", response_model=AssetResponse)
def approve_asset(
    body: Optional[RevisionBody] = None,
    asset_id: str = Path(..., description="Asset ID"),
    actor: Actor = Depends(require_capability(Operation.approve)),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> AssetResponse:
    """Mark an asset approved, dropping any pending request or grant (supervisors only)."""
    revision = body.revision if body else None
    return AssetResponse(**workflow.approve(EntityKind.asset, asset_id, actor, expected_revision=revision))
