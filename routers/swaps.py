from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from slotswap.auth import get_current_user
from slotswap.db import get_db
from slotswap.engine import NegotiationEngine
from slotswap.models import User
from slotswap.notifications import NotificationDispatcher, get_dispatcher
from slotswap.schemas import SwapRequestCreate, SwapResponseBody, slot_to_response, swap_to_response

router = APIRouter()


def get_engine(
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> NegotiationEngine:
    return NegotiationEngine(db, dispatcher)


@router.get("/swappable-slots")
def list_swappable_slots(
    current_user: User = Depends(get_current_user),
    engine: NegotiationEngine = Depends(get_engine),
):
    """Slots other users have marked SWAPPABLE."""
    return {"slots": [slot_to_response(s) for s in engine.swappable_slots(current_user.id)]}


@router.post("/swap-request", status_code=201)
def create_swap_request(
    body: SwapRequestCreate,
    current_user: User = Depends(get_current_user),
    engine: NegotiationEngine = Depends(get_engine),
):
    """
    Offer one of the caller's SWAPPABLE slots for another user's SWAPPABLE slot.

    On success both slots become SWAP_PENDING and the target owner is notified.
    A 409 means another request claimed one of the slots first.
    """
    swap = engine.request_swap(current_user.id, body.mySlotId, body.theirSlotId)
    return {"swapRequest": swap_to_response(swap), "message": "Swap request sent successfully"}


@router.post("/swap-response/{request_id}")
def respond_to_swap_request(
    request_id: str,
    body: SwapResponseBody,
    current_user: User = Depends(get_current_user),
    engine: NegotiationEngine = Depends(get_engine),
):
    swap = engine.respond_to_swap(request_id, current_user.id, body.accept)
    message = "Swap request accepted successfully" if body.accept else "Swap request rejected"
    return {"swapRequest": swap_to_response(swap), "message": message}


@router.get("/incoming")
def list_incoming(
    current_user: User = Depends(get_current_user),
    engine: NegotiationEngine = Depends(get_engine),
):
    return {"requests": [swap_to_response(r) for r in engine.incoming(current_user.id)]}


@router.get("/outgoing")
def list_outgoing(
    current_user: User = Depends(get_current_user),
    engine: NegotiationEngine = Depends(get_engine),
):
    return {"requests": [swap_to_response(r) for r in engine.outgoing(current_user.id)]}
