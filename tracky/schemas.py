"""
tracky/schemas.py

Pydantic schemas for the asset and tracker endpoints.

Request schemas only check shape. Field semantics (allowed values, protected
fields, ranges) are enforced by the workflow so the same rules apply to every
caller, not just HTTP.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, validator


# ========================================================================
# TRACKER SCHEMAS
# ========================================================================

class TrackerCreateRequest(BaseModel):
    """Request schema for creating a tracker.

    - tracker_id is client-supplied and must be unused
    - latitude/longitude/timestamp seed the location history (mobile trackers only)
    - any other scalar attribute is stored as-is
    """
    tracker_id: str = Field(..., min_length=1, max_length=64, description="Tracker ID (required)")
    name: Optional[str] = Field(None, max_length=200, description="Display name")
    description: Optional[str] = Field(None, max_length=2000, description="Free-form description")
    vehicleType: Optional[str] = Field(None, max_length=100, description="Vehicle type")
    plateNumber: Optional[str] = Field(None, max_length=50, description="Plate number")
    mobile: bool = Field(False, description="Whether the tracker keeps a location history")
    latitude: Optional[float] = Field(None, description="Initial latitude")
    longitude: Optional[float] = Field(None, description="Initial longitude")
    timestamp: Optional[Union[int, str]] = Field(None, description="Initial position time (epoch ms or ISO-8601)")

    class Config:
        extra = "allow"

    @validator("tracker_id", pre=True)
    def trim_tracker_id(cls, v):
        """Trim whitespace from tracker_id."""
        if isinstance(v, str):
            return v.strip()
        return v

    def initial_location(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "longitude": self.longitude, "latitude": self.latitude}

    def entity_fields(self) -> Dict[str, Any]:
        """Document fields: everything except the id and the initial position."""
        data = self.dict(exclude_unset=True)
        for key in ("tracker_id", "latitude", "longitude", "timestamp"):
            data.pop(key, None)
        data["mobile"] = self.mobile
        return data


class TrackerUpdateRequest(BaseModel):
    """Partial update. Only the fields sent are changed; null removes an optional field."""
    name: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    vehicleType: Optional[str] = Field(None, max_length=100)
    plateNumber: Optional[str] = Field(None, max_length=50)
    mobile: Optional[bool] = None
    revision: Optional[int] = Field(None, ge=1, description="Revision the client last read")

    class Config:
        extra = "allow"

    def entity_fields(self) -> Dict[str, Any]:
        data = self.dict(exclude_unset=True)
        data.pop("revision", None)
        return data


class LocationAppendRequest(BaseModel):
    """One position for a mobile tracker. All three parts are required."""
    timestamp: Optional[Union[int, str]] = Field(None, description="Epoch ms or ISO-8601")
    longitude: Optional[float] = None
    latitude: Optional[float] = None


# ========================================================================
# WORKFLOW SCHEMAS (shared by assets and trackers)
# ========================================================================

class EditRequestBody(BaseModel):
    """Changes an operator proposes for supervisor approval."""
    changes: Dict[str, Any] = Field(default_factory=dict, description="Proposed field values")
    revision: Optional[int] = Field(None, ge=1)


class RevisionBody(BaseModel):
    revision: Optional[int] = Field(None, ge=1, description="Revision the client last read")


# ========================================================================
# RESPONSE SCHEMAS
# ========================================================================

class EntityResponse(BaseModel):
    """Presented entity document: stored fields plus derived approval flags."""
    id: str
    revision: int
    createdAt: int
    updatedAt: int
    createdBy: Optional[str] = None
    approvalState: str
    approved: bool
    editRequested: bool
    editApproved: bool
    name: Optional[str] = None
    description: Optional[str] = None
    imageURL: Optional[str] = None
    qrCode: Optional[str] = None

    class Config:
        # Entity documents carry free-form attributes
        extra = "allow"


class AssetResponse(EntityResponse):
    originalPrice: float = 0.0
    depreciationRate: str = "daily"
    depreciationValue: float = 0.0
    purchaseDate: Optional[str] = None
    currentPrice: float = 0.0
    trackerId: Optional[str] = None


class TrackerResponse(EntityResponse):
    mobile: bool = False
    assetId: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timestamp: Optional[int] = None


class AssetListResponse(BaseModel):
    items: List[AssetResponse] = Field(default_factory=list)
    total: int = 0


class TrackerListResponse(BaseModel):
    items: List[TrackerResponse] = Field(default_factory=list)
    total: int = 0


class LocationEntryResponse(BaseModel):
    id: str
    timestamp: int
    longitude: float
    latitude: float


class LocationHistoryResponse(BaseModel):
    id: str
    locationHistory: Dict[str, List[float]] = Field(
        default_factory=dict, description="Epoch-ms timestamp -> [longitude, latitude], oldest first"
    )


class MessageResponse(BaseModel):
    message: str
