"""Swap request store - request records and their status lifecycle"""

import logging
import uuid
from typing import Optional

from sqlalchemy import DateTime, bindparam, or_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from slotswap.exceptions import (
    ConflictException,
    ForbiddenException,
    InvalidStateException,
    NotFoundException,
)
from slotswap.models import Slot, SlotStatus, SwapRequest, SwapStatus, utcnow

logger = logging.getLogger(__name__)


class SwapRequestStore:
    """Swap request persistence; creation and transitions are conditional statements"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, request_id: str) -> SwapRequest:
        swap = self.db.get(SwapRequest, request_id, populate_existing=True)
        if swap is None:
            raise NotFoundException("Swap request not found")
        return swap

    def list_by_requester(self, user_id: str) -> list[SwapRequest]:
        return (
            self.db.query(SwapRequest)
            .filter(SwapRequest.requester_id == user_id)
            .order_by(SwapRequest.created_at.desc())
            .all()
        )

    def list_by_target_owner(self, user_id: str) -> list[SwapRequest]:
        return (
            self.db.query(SwapRequest)
            .filter(SwapRequest.target_user_id == user_id)
            .order_by(SwapRequest.created_at.desc())
            .all()
        )

    def pending_for_slot(self, slot_id: str) -> Optional[SwapRequest]:
        return (
            self.db.query(SwapRequest)
            .filter(
                SwapRequest.status == SwapStatus.PENDING.value,
                or_(SwapRequest.requester_slot_id == slot_id, SwapRequest.target_slot_id == slot_id),
            )
            .first()
        )

    def create(self, requester_slot_id: str, target_slot_id: str, requester_id: str) -> SwapRequest:
        """
        Persist a PENDING request offering ``requester_slot_id`` for ``target_slot_id``.

        The eligibility checks are repeated inside a single
        INSERT ... SELECT ... WHERE NOT EXISTS so that two callers racing for the
        same slot cannot both get a row. The target owner is read from the
        target slot in that same statement.
        """
        requester_slot = self.db.get(Slot, requester_slot_id, populate_existing=True)
        target_slot = self.db.get(Slot, target_slot_id, populate_existing=True)
        if requester_slot is None or target_slot is None:
            raise NotFoundException("Slot not found")
        if requester_slot.owner_id != requester_id:
            raise ForbiddenException("You can only offer your own slots")
        if requester_slot.id == target_slot.id or requester_slot.owner_id == target_slot.owner_id:
            raise InvalidStateException("Both slots belong to the same user")
        for slot_id in (requester_slot_id, target_slot_id):
            if self.pending_for_slot(slot_id) is not None:
                raise ConflictException("One of the slots already has a pending swap request")
        for slot in (requester_slot, target_slot):
            if slot.status != SlotStatus.SWAPPABLE.value:
                raise InvalidStateException(f"Slot '{slot.title}' is not swappable")

        request_id = str(uuid.uuid4())
        sql = text("""
            INSERT INTO swap_requests
                (id, requester_id, requester_slot_id, target_user_id, target_slot_id,
                 status, created_at, updated_at)
            SELECT :request_id, rs.owner_id, rs.id, ts.owner_id, ts.id, 'PENDING', :now, :now
            FROM slots rs, slots ts
            WHERE rs.id = :requester_slot_id
              AND ts.id = :target_slot_id
              AND rs.owner_id = :requester_id
              AND ts.owner_id != rs.owner_id
              AND rs.status = 'SWAPPABLE'
              AND ts.status = 'SWAPPABLE'
              AND NOT EXISTS (
                  SELECT 1 FROM swap_requests p
                  WHERE p.status = 'PENDING'
                    AND (p.requester_slot_id IN (:requester_slot_id, :target_slot_id)
                         OR p.target_slot_id IN (:requester_slot_id, :target_slot_id))
              )
        """).bindparams(bindparam("now", type_=DateTime()))
        try:
            res = self.db.execute(sql, {
                "request_id": request_id,
                "now": utcnow(),
                "requester_slot_id": requester_slot_id,
                "target_slot_id": target_slot_id,
                "requester_id": requester_id,
            })
        except IntegrityError:
            # partial unique index on PENDING rows caught a concurrent insert
            self.db.rollback()
            raise ConflictException("One of the slots was just claimed by another swap request")

        if res.rowcount != 1:
            self.db.rollback()
            raise ConflictException("One of the slots was just claimed by another swap request")

        self.db.commit()
        logger.info(
            f"Created swap request {request_id}: user {requester_id} offers slot "
            f"{requester_slot_id} for slot {target_slot_id}"
        )
        return self.get(request_id)

    def transition(
        self,
        request_id: str,
        to_status: SwapStatus,
        from_status: SwapStatus = SwapStatus.PENDING,
        commit: bool = True,
    ) -> SwapRequest:
        """
        Compare-and-set the request status.

        Raises ConflictException when the row is no longer in ``from_status``
        (another responder or a rollback got there first).
        """
        sql = text("""
            UPDATE swap_requests
            SET status = :to_status, updated_at = :now
            WHERE id = :request_id AND status = :from_status
        """).bindparams(bindparam("now", type_=DateTime()))
        res = self.db.execute(sql, {
            "to_status": SwapStatus(to_status).value,
            "from_status": SwapStatus(from_status).value,
            "now": utcnow(),
            "request_id": request_id,
        })

        if res.rowcount != 1:
            if commit:
                self.db.rollback()
            current = self.db.get(SwapRequest, request_id, populate_existing=True)
            if current is None:
                raise NotFoundException("Swap request not found")
            raise ConflictException(f"Swap request is already {current.status.lower()}")

        if commit:
            self.db.commit()
        return self.get(request_id)
