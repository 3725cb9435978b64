"""
Swap negotiation engine

Request lifecycle::

    (none) --request_swap--> PENDING --accept--> ACCEPTED
                                     --reject--> REJECTED

The engine is the only component that changes slots and requests together.
It relies on the compare-and-set primitives of the two stores: creation is a
committed sequence (request row, offered slot, target slot) undone by a
compensating rollback if a slot claim is lost; a response is one database
transaction. Notifications are sent only after the outcome is committed.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from slotswap.config import ROLLBACK_MAX_ATTEMPTS
from slotswap.exceptions import (
    ConflictException,
    ConsistencyException,
    ForbiddenException,
    InvalidOperationException,
    NotFoundException,
)
from slotswap.models import Slot, SlotStatus, SwapRequest, SwapStatus
from slotswap.notifications import EventKind, NotificationDispatcher
from slotswap.request_store import SwapRequestStore
from slotswap.slot_store import SlotStore

logger = logging.getLogger(__name__)


class NegotiationEngine:
    def __init__(
        self,
        db: Session,
        dispatcher: Optional[NotificationDispatcher] = None,
        rollback_attempts: int = ROLLBACK_MAX_ATTEMPTS,
    ):
        self.db = db
        self.slots = SlotStore(db)
        self.requests = SwapRequestStore(db)
        self.dispatcher = dispatcher
        self.rollback_attempts = max(1, rollback_attempts)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def swappable_slots(self, user_id: str) -> list[Slot]:
        return self.slots.list_swappable(excluding_owner=user_id)

    def incoming(self, user_id: str) -> list[SwapRequest]:
        return self.requests.list_by_target_owner(user_id)

    def outgoing(self, user_id: str) -> list[SwapRequest]:
        return self.requests.list_by_requester(user_id)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def request_swap(self, requester_id: str, requester_slot_id: str, target_slot_id: str) -> SwapRequest:
        if requester_slot_id == target_slot_id:
            raise InvalidOperationException("Cannot swap a slot with itself")

        my_slot = self.slots.get(requester_slot_id)
        their_slot = self.slots.get(target_slot_id)
        if my_slot.owner_id != requester_id:
            raise ForbiddenException("You can only offer your own slots")
        if their_slot.owner_id == my_slot.owner_id:
            raise InvalidOperationException("Cannot swap two slots with the same owner")
        for slot in (my_slot, their_slot):
            # a claimed slot means another request got there first
            if slot.status == SlotStatus.SWAP_PENDING.value:
                raise ConflictException(f"Slot '{slot.title}' already has a pending swap request")
            if slot.status != SlotStatus.SWAPPABLE.value:
                raise InvalidOperationException(f"Slot '{slot.title}' is not swappable")
        my_title, their_title = my_slot.title, their_slot.title

        swap = self.requests.create(requester_slot_id, target_slot_id, requester_id)
        request_id = swap.id

        claimed = []
        try:
            for slot_id in (requester_slot_id, target_slot_id):
                self.slots.compare_and_set_status(slot_id, SlotStatus.SWAPPABLE, SlotStatus.SWAP_PENDING)
                claimed.append(slot_id)
        except (ConflictException, NotFoundException) as e:
            logger.warning(f"Swap request {request_id} lost slot claim ({e.message}), rolling back")
            self._roll_back_create(request_id, claimed)
            raise ConflictException("One of the slots was claimed by another request, please refresh")
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Database error while claiming slots for swap request {request_id}")
            self._roll_back_create(request_id, claimed)
            raise

        swap = self.requests.get(request_id)
        logger.info(f"Swap request {request_id} is pending on slots {requester_slot_id}, {target_slot_id}")
        self._notify(swap.target_user_id, EventKind.REQUEST_RECEIVED, {
            "message": f"{swap.requester.name} wants to swap '{my_title}' for your '{their_title}'",
            "requesterName": swap.requester.name,
        })
        return swap

    def _roll_back_create(self, request_id: str, claimed: list[str]):
        """
        Reject the half-created request and release the slots it claimed.

        Safe to repeat: completed steps are not replayed, an already rejected
        request and an already released slot count as done.
        """
        request_done = False
        remaining = list(claimed)
        for attempt in range(1, self.rollback_attempts + 1):
            try:
                if not request_done:
                    self._reject_abandoned(request_id)
                    request_done = True
                while remaining:
                    self._release(remaining[0])
                    remaining.pop(0)
                logger.info(f"Rolled back swap request {request_id} (attempt {attempt})")
                return
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.warning(f"Rollback attempt {attempt} for swap request {request_id} failed: {e}")

        logger.error(
            f"Rollback of swap request {request_id} gave up after {self.rollback_attempts} attempts; "
            f"request_rejected={request_done}, stranded_slots={remaining}"
        )
        raise ConsistencyException(
            "Swap request could not be rolled back",
            details={"request_id": request_id, "stranded_slots": remaining},
        )

    def _reject_abandoned(self, request_id: str):
        try:
            self.requests.transition(request_id, SwapStatus.REJECTED)
        except ConflictException:
            current = self.requests.get(request_id)
            if current.status == SwapStatus.REJECTED.value:
                return
            logger.error(f"Abandoned swap request {request_id} was resolved as {current.status}")
            raise ConsistencyException(
                "Abandoned swap request was resolved", details={"request_id": request_id}
            )

    def _release(self, slot_id: str):
        try:
            self.slots.compare_and_set_status(slot_id, SlotStatus.SWAP_PENDING, SlotStatus.SWAPPABLE)
        except (ConflictException, NotFoundException):
            logger.info(f"Slot {slot_id} already released")

    # ------------------------------------------------------------------
    # Respond
    # ------------------------------------------------------------------

    def respond_to_swap(self, request_id: str, responder_id: str, accept: bool) -> SwapRequest:
        swap = self.requests.get(request_id)
        if swap.target_user_id != responder_id:
            raise ForbiddenException("Only the recipient can respond to this swap request")
        if swap.status != SwapStatus.PENDING.value:
            raise InvalidOperationException(f"Swap request has already been {swap.status.lower()}")

        requester_id = swap.requester_id
        target_user_id = swap.target_user_id
        requester_slot_id = swap.requester_slot_id
        target_slot_id = swap.target_slot_id
        titles = {}
        for slot_id in (requester_slot_id, target_slot_id):
            try:
                slot = self.slots.get(slot_id)
            except NotFoundException:
                raise ConflictException("Swap request is being withdrawn, please refresh")
            # both slots are claimed only once creation has fully completed
            if slot.status != SlotStatus.SWAP_PENDING.value:
                raise ConflictException("Swap request is still being processed, please refresh")
            titles[slot_id] = slot.title

        to_status = SwapStatus.ACCEPTED if accept else SwapStatus.REJECTED
        try:
            self.requests.transition(request_id, to_status, commit=False)
        except (ConflictException, NotFoundException) as e:
            self.db.rollback()
            logger.warning(f"Response to swap request {request_id} lost a race: {e.message}")
            raise ConflictException(f"{e.message}, please refresh")

        try:
            if accept:
                self.slots.compare_and_set_status(
                    requester_slot_id, SlotStatus.SWAP_PENDING, SlotStatus.BUSY,
                    new_owner_id=target_user_id, commit=False,
                )
                self.slots.compare_and_set_status(
                    target_slot_id, SlotStatus.SWAP_PENDING, SlotStatus.BUSY,
                    new_owner_id=requester_id, commit=False,
                )
            else:
                for slot_id in (requester_slot_id, target_slot_id):
                    self.slots.compare_and_set_status(
                        slot_id, SlotStatus.SWAP_PENDING, SlotStatus.SWAPPABLE, commit=False,
                    )
        except (ConflictException, NotFoundException) as e:
            self.db.rollback()
            logger.error(
                f"Invariant violated resolving swap request {request_id} as {to_status.value}: {e.message} "
                f"(requester={requester_id}, target={target_user_id}, "
                f"slots={requester_slot_id},{target_slot_id})"
            )
            raise ConsistencyException(
                "Swap request could not be resolved", details={"request_id": request_id}
            )
        self.db.commit()

        swap = self.requests.get(request_id)
        logger.info(f"Swap request {request_id} {to_status.value.lower()} by user {responder_id}")
        responder_name = swap.target_user.name
        if accept:
            self._notify(requester_id, EventKind.REQUEST_ACCEPTED, {
                "message": f"{responder_name} accepted your swap request: '{titles[target_slot_id]}' is now yours",
            })
        else:
            self._notify(requester_id, EventKind.REQUEST_REJECTED, {
                "message": f"{responder_name} rejected your swap request for '{titles[target_slot_id]}'",
            })
        return swap

    def _notify(self, user_id: str, kind: EventKind, payload: dict):
        if self.dispatcher is None:
            return
        self.dispatcher.notify(user_id, kind, payload)
