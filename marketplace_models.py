"""
Data models for the KrishiLink crop marketplace
"""
from typing import Annotated, List, Optional
from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator
from enum import Enum
from datetime import datetime, timezone
from decimal import Decimal


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _quantity_to_json(value: Decimal):
    if value == value.to_integral_value():
        return int(value)
    return float(value)


# Exact decimal in memory and in the store; plain JSON number in API responses
Quantity = Annotated[Decimal, PlainSerializer(_quantity_to_json, when_used="json")]


class InterestStatus(str, Enum):
    """Interest lifecycle status"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class Owner(BaseModel):
    """Crop owner (producer) identity"""
    owner_email: str = Field(..., description="Owner email, used for ownership checks")
    owner_name: str = Field("", description="Owner display name")


class Interest(BaseModel):
    """A buyer's request to purchase some quantity of a crop"""
    id: str = Field(..., description="Interest ID, unique within the parent crop")
    crop_id: str = Field(..., description="Parent crop ID")
    user_email: str = Field(..., description="Buyer email")
    user_name: str = Field(..., description="Buyer display name")
    quantity: Quantity = Field(..., description="Requested quantity")
    message: str = Field("", description="Optional note to the producer")
    status: InterestStatus = Field(InterestStatus.PENDING, description="Interest status")
    created_at: datetime = Field(default_factory=utc_now, description="Creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last status change timestamp")


class Crop(BaseModel):
    """A sell offer with a finite remaining quantity"""
    id: Optional[str] = Field(None, description="Crop ID (store document ID)")
    name: str = Field(..., description="Crop name")
    type: str = Field("", description="Crop category, e.g. vegetable or grain")
    price_per_unit: float = Field(0, description="Price per unit")
    unit: str = Field("kg", description="Unit of measurement")
    quantity: Quantity = Field(..., description="Remaining quantity available")
    description: str = Field("", description="Free-text description")
    location: str = Field("", description="Where the crop is available")
    image: Optional[str] = Field(None, description="Image URL")
    owner: Owner = Field(..., description="Producer who listed the crop")
    status: str = Field("pending", description="Crop lifecycle status")
    created_at: datetime = Field(default_factory=utc_now, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=utc_now, description="Last update timestamp")
    interests: List[Interest] = Field(default_factory=list, description="Interests in submission order")

    def find_interest(self, interest_id: str) -> Optional[Interest]:
        for interest in self.interests:
            if interest.id == interest_id:
                return interest
        return None

    def find_interest_by_email(self, user_email: str) -> Optional[Interest]:
        for interest in self.interests:
            if interest.user_email == user_email:
                return interest
        return None

    def is_owned_by(self, email: Optional[str]) -> bool:
        return bool(email) and self.owner.owner_email == email


class CropCreate(BaseModel):
    """Request body for listing a new crop"""
    name: str = Field(..., description="Crop name")
    type: str = Field("", description="Crop category")
    price_per_unit: float = Field(..., description="Price per unit")
    unit: str = Field("kg", description="Unit of measurement")
    quantity: Quantity = Field(..., description="Quantity available")
    description: str = Field("", description="Free-text description")
    location: str = Field("", description="Where the crop is available")
    image: Optional[str] = Field(None, description="Image URL")


class CropUpdate(BaseModel):
    """Owner edits to a crop. Quantity and interests are not editable."""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    type: Optional[str] = None
    price_per_unit: Optional[float] = None
    unit: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    image: Optional[str] = None
    status: Optional[str] = None


class InterestSubmission(BaseModel):
    """Request body for expressing interest in a crop"""
    crop_id: str = Field(..., description="Crop to express interest in")
    user_email: Optional[str] = Field(None, description="Buyer email (defaults to the caller)")
    user_name: Optional[str] = Field(None, description="Buyer display name (defaults to the caller)")
    quantity: Quantity = Field(..., description="Requested quantity, must be positive")
    message: Optional[str] = Field(None, description="Optional note to the producer")

    @field_validator("crop_id", "user_email", "user_name", "message", mode="before")
    @classmethod
    def strip_text(cls, v):
        """Trim surrounding whitespace on text fields"""
        if isinstance(v, str):
            return v.strip()
        return v


class InterestSubmissionResult(BaseModel):
    """Outcome of an interest submission"""
    interest_id: str
    status: InterestStatus = InterestStatus.PENDING
    warning: Optional[str] = Field(None, description="Advisory when the request exceeds current stock")
    interest: Interest


class StatusTransitionRequest(BaseModel):
    """Request body for changing an interest's status"""
    interest_id: str = Field(..., description="Interest to transition")
    status: str = Field(..., description="Target status: pending, accepted, rejected or cancelled")
    crop_id: Optional[str] = Field(None, description="Owning crop, looked up when omitted")


class CropSummary(BaseModel):
    """Crop details attached to interest listings"""
    id: str
    name: str
    type: str = ""
    price_per_unit: float = 0
    unit: str = "kg"
    quantity: Optional[Quantity] = None
    location: str = ""
    image: Optional[str] = None
    owner: Optional[Owner] = None


class InterestWithCrop(Interest):
    """Interest enriched with its crop's details"""
    crop_details: CropSummary


class CropDeletion(BaseModel):
    """Outcome of deleting a crop"""
    crop_id: str
    deleted: bool
    pending_interests: int = Field(0, description="Pending interests removed with the crop")
    warning: Optional[str] = None


class UserIdentity(BaseModel):
    """Authenticated caller"""
    uid: str
    email: str
    name: str = ""
    picture: Optional[str] = None
    email_verified: bool = False
    is_development: bool = False

