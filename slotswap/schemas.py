"""Request and response schemas for the HTTP API"""

from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from slotswap.models import Slot, SlotStatus, SwapRequest, User, as_naive_utc


def _owner_settable(v):
    if v == SlotStatus.SWAP_PENDING:
        raise ValueError("Status must be BUSY or SWAPPABLE")
    return v


class EventCreate(BaseModel):
    title: str = Field(..., min_length=1)
    startTime: datetime
    endTime: datetime
    status: SlotStatus = SlotStatus.BUSY

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _owner_settable(v)

    @model_validator(mode="after")
    def validate_window(self):
        if as_naive_utc(self.endTime) <= as_naive_utc(self.startTime):
            raise ValueError("End time must be after start time")
        return self


class EventUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    startTime: Optional[datetime] = None
    endTime: Optional[datetime] = None
    status: Optional[SlotStatus] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v is None:
            return v
        return _owner_settable(v)


class EventStatusUpdate(BaseModel):
    status: SlotStatus

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _owner_settable(v)


class SwapRequestCreate(BaseModel):
    mySlotId: str
    theirSlotId: str


class SwapResponseBody(BaseModel):
    accept: bool


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # stored naive in UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class UserResponse(BaseModel):
    id: str
    name: str
    email: Optional[str] = None


class SlotResponse(BaseModel):
    id: str = Field(..., serialization_alias="_id")
    title: str
    startTime: datetime
    endTime: datetime
    status: SlotStatus
    userId: Union[UserResponse, str]
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @field_serializer("startTime", "endTime", "createdAt", "updatedAt")
    def serialize_utc(self, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class SwapRequestResponse(BaseModel):
    """A swap request with its users and slots populated in the reference fields."""

    id: str = Field(..., serialization_alias="_id")
    requesterId: Union[UserResponse, str]
    requesterSlotId: Union[SlotResponse, str]
    targetUserId: Union[UserResponse, str]
    targetSlotId: Union[SlotResponse, str]
    status: str
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @field_serializer("createdAt", "updatedAt")
    def serialize_utc(self, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


def user_to_response(user: Optional[User]) -> Optional[UserResponse]:
    if user is None:
        return None
    return UserResponse(id=user.id, name=user.name, email=user.email)


def slot_to_response(slot: Optional[Slot]) -> Optional[SlotResponse]:
    if slot is None:
        return None
    return SlotResponse(
        id=slot.id,
        title=slot.title,
        startTime=slot.start_time,
        endTime=slot.end_time,
        status=slot.status,
        userId=user_to_response(slot.owner) or slot.owner_id,
        createdAt=slot.created_at,
        updatedAt=slot.updated_at,
    )


def swap_to_response(swap: SwapRequest) -> SwapRequestResponse:
    return SwapRequestResponse(
        id=swap.id,
        requesterId=user_to_response(swap.requester) or swap.requester_id,
        requesterSlotId=slot_to_response(swap.requester_slot) or swap.requester_slot_id,
        targetUserId=user_to_response(swap.target_user) or swap.target_user_id,
        targetSlotId=slot_to_response(swap.target_slot) or swap.target_slot_id,
        status=swap.status,
        createdAt=swap.created_at,
        updatedAt=swap.updated_at,
    )
