from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from slotswap.auth import get_current_user
from slotswap.db import get_db
from slotswap.models import User
from slotswap.schemas import EventCreate, EventStatusUpdate, EventUpdate, slot_to_response
from slotswap.slot_store import SlotStore

router = APIRouter()


def get_slot_store(db: Session = Depends(get_db)) -> SlotStore:
    return SlotStore(db)


@router.get("")
def list_events(current_user: User = Depends(get_current_user), store: SlotStore = Depends(get_slot_store)):
    """The caller's own slots, earliest first."""
    return {"events": [slot_to_response(s) for s in store.list_by_owner(current_user.id)]}


@router.post("", status_code=201)
def create_event(
    body: EventCreate,
    current_user: User = Depends(get_current_user),
    store: SlotStore = Depends(get_slot_store),
):
    slot = store.create(current_user.id, body.title, body.startTime, body.endTime, body.status)
    return {"event": slot_to_response(slot), "message": "Event created successfully"}


@router.put("/{event_id}")
def update_event(
    event_id: str,
    body: EventUpdate,
    current_user: User = Depends(get_current_user),
    store: SlotStore = Depends(get_slot_store),
):
    """Edit title, times or status. Rejected with 409 while a swap is pending."""
    slot = store.update(
        event_id,
        current_user.id,
        title=body.title,
        start_time=body.startTime,
        end_time=body.endTime,
        status=body.status,
    )
    return {"event": slot_to_response(slot), "message": "Event updated successfully"}


@router.patch("/{event_id}/status")
def update_event_status(
    event_id: str,
    body: EventStatusUpdate,
    current_user: User = Depends(get_current_user),
    store: SlotStore = Depends(get_slot_store),
):
    slot = store.set_status(event_id, current_user.id, body.status)
    return {
        "event": slot_to_response(slot),
        "message": f"Event marked as {slot.status.lower()}",
    }


@router.delete("/{event_id}")
def delete_event(
    event_id: str,
    current_user: User = Depends(get_current_user),
    store: SlotStore = Depends(get_slot_store),
):
    store.delete(event_id, current_user.id)
    return {"message": "Event deleted successfully"}
