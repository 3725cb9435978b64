"""Slot store - calendar slot records and their status lifecycle"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, bindparam, text
from sqlalchemy.orm import Session

from slotswap.exceptions import (
    ConflictException,
    ForbiddenException,
    NotFoundException,
    ValidationException,
)
from slotswap.models import Slot, SlotStatus, as_naive_utc, utcnow

logger = logging.getLogger(__name__)

OWNER_SETTABLE_STATUSES = (SlotStatus.BUSY, SlotStatus.SWAPPABLE)

# Owner edits only apply while no PENDING request holds the slot
UNCLAIMED_CONDITION = """
    slots.status != 'SWAP_PENDING'
    AND NOT EXISTS (
        SELECT 1 FROM swap_requests r
        WHERE r.status = 'PENDING'
          AND (r.requester_slot_id = slots.id OR r.target_slot_id = slots.id)
    )
"""


class SlotStore:
    """Slot persistence; every status change goes through a conditional UPDATE"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, slot_id: str) -> Slot:
        slot = self.db.get(Slot, slot_id, populate_existing=True)
        if slot is None:
            raise NotFoundException("Slot not found")
        return slot

    def list_by_owner(self, user_id: str) -> list[Slot]:
        return (
            self.db.query(Slot)
            .filter(Slot.owner_id == user_id)
            .order_by(Slot.start_time.asc())
            .all()
        )

    def list_swappable(self, excluding_owner: Optional[str] = None) -> list[Slot]:
        query = self.db.query(Slot).filter(Slot.status == SlotStatus.SWAPPABLE.value)
        if excluding_owner is not None:
            query = query.filter(Slot.owner_id != excluding_owner)
        return query.order_by(Slot.start_time.asc()).all()

    def create(
        self,
        owner_id: str,
        title: str,
        start_time: datetime,
        end_time: datetime,
        status: SlotStatus = SlotStatus.BUSY,
    ) -> Slot:
        status = _owner_status(status)
        start_time, end_time = _validated_window(start_time, end_time)
        now = utcnow()
        slot = Slot(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            title=title,
            start_time=start_time,
            end_time=end_time,
            status=status.value,
            created_at=now,
            updated_at=now,
        )
        self.db.add(slot)
        self.db.commit()
        self.db.refresh(slot)
        logger.info(f"Created slot {slot.id} for user {owner_id} ({status.value})")
        return slot

    def update(
        self,
        slot_id: str,
        owner_id: str,
        title: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        status: Optional[SlotStatus] = None,
    ) -> Slot:
        """
        Edit a slot on behalf of its owner.

        Fails with Conflict while the slot is SWAP_PENDING or referenced by a
        PENDING request; the check and the write are one statement.
        """
        slot = self._owned(slot_id, owner_id)
        new_status = _owner_status(status) if status is not None else SlotStatus(slot.status)
        new_start, new_end = _validated_window(
            start_time if start_time is not None else slot.start_time,
            end_time if end_time is not None else slot.end_time,
        )

        sql = text(f"""
            UPDATE slots
            SET title = :title, start_time = :start_time, end_time = :end_time,
                status = :status, updated_at = :now
            WHERE slots.id = :slot_id
              AND slots.owner_id = :owner_id
              AND {UNCLAIMED_CONDITION}
        """).bindparams(
            bindparam("start_time", type_=DateTime()),
            bindparam("end_time", type_=DateTime()),
            bindparam("now", type_=DateTime()),
        )
        res = self.db.execute(sql, {
            "title": title if title is not None else slot.title,
            "start_time": new_start,
            "end_time": new_end,
            "status": new_status.value,
            "now": utcnow(),
            "slot_id": slot_id,
            "owner_id": owner_id,
        })
        if res.rowcount != 1:
            self.db.rollback()
            raise ConflictException("Cannot modify a slot with a pending swap request")
        self.db.commit()
        return self.get(slot_id)

    def set_status(self, slot_id: str, owner_id: str, status: SlotStatus) -> Slot:
        """Toggle between BUSY and SWAPPABLE."""
        return self.update(slot_id, owner_id, status=status)

    def delete(self, slot_id: str, owner_id: str) -> None:
        self._owned(slot_id, owner_id)
        sql = text(f"""
            DELETE FROM slots
            WHERE slots.id = :slot_id
              AND slots.owner_id = :owner_id
              AND {UNCLAIMED_CONDITION}
        """)
        res = self.db.execute(sql, {"slot_id": slot_id, "owner_id": owner_id})
        if res.rowcount != 1:
            self.db.rollback()
            raise ConflictException("Cannot delete a slot with a pending swap request")
        self.db.commit()
        logger.info(f"Deleted slot {slot_id} for user {owner_id}")

    def compare_and_set_status(
        self,
        slot_id: str,
        expected: SlotStatus,
        new: SlotStatus,
        new_owner_id: Optional[str] = None,
        commit: bool = True,
    ) -> Slot:
        """
        Move a slot from ``expected`` to ``new`` status, optionally handing it to
        ``new_owner_id`` in the same statement.

        Raises ConflictException when the persisted status no longer matches
        ``expected`` and NotFoundException when the slot is gone. With
        ``commit=False`` the caller owns the transaction, including rollback.
        """
        sql = text("""
            UPDATE slots
            SET status = :new_status,
                owner_id = COALESCE(:new_owner_id, owner_id),
                updated_at = :now
            WHERE id = :slot_id AND status = :expected_status
        """).bindparams(
            bindparam("new_owner_id", type_=String()),
            bindparam("now", type_=DateTime()),
        )
        res = self.db.execute(sql, {
            "new_status": SlotStatus(new).value,
            "new_owner_id": new_owner_id,
            "now": utcnow(),
            "slot_id": slot_id,
            "expected_status": SlotStatus(expected).value,
        })

        if res.rowcount != 1:
            if commit:
                self.db.rollback()
            current = self.db.get(Slot, slot_id, populate_existing=True)
            if current is None:
                raise NotFoundException("Slot not found")
            raise ConflictException(
                f"Slot {slot_id} is {current.status}, expected {SlotStatus(expected).value}"
            )

        if commit:
            self.db.commit()
        return self.get(slot_id)

    def _owned(self, slot_id: str, owner_id: str) -> Slot:
        slot = self.get(slot_id)
        if slot.owner_id != owner_id:
            raise ForbiddenException("You can only modify your own slots")
        return slot


def _owner_status(status) -> SlotStatus:
    try:
        status = SlotStatus(status)
    except ValueError:
        raise ValidationException(f"Unknown slot status: {status}")
    if status not in OWNER_SETTABLE_STATUSES:
        raise ValidationException("Status must be BUSY or SWAPPABLE")
    return status


def _validated_window(start_time: datetime, end_time: datetime) -> tuple[datetime, datetime]:
    start_time, end_time = as_naive_utc(start_time), as_naive_utc(end_time)
    if end_time <= start_time:
        raise ValidationException("End time must be after start time")
    return start_time, end_time
