import enum
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, ForeignKey, CheckConstraint, Index, text
from sqlalchemy.orm import relationship

from slotswap.db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class SlotStatus(str, enum.Enum):
    BUSY = "BUSY"
    SWAPPABLE = "SWAPPABLE"
    SWAP_PENDING = "SWAP_PENDING"


class SwapStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


TERMINAL_SWAP_STATUSES = (SwapStatus.ACCEPTED, SwapStatus.REJECTED)


class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True)
    created_at = Column(DateTime, default=utcnow)


class Slot(Base):
    __tablename__ = "slots"
    id = Column(String, primary_key=True)
    owner_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default=SlotStatus.BUSY.value)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    owner = relationship("User", lazy="joined")

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="slot_time_valid"),
        CheckConstraint("status in ('BUSY','SWAPPABLE','SWAP_PENDING')", name="slot_status_valid"),
    )


class SwapRequest(Base):
    __tablename__ = "swap_requests"
    id = Column(String, primary_key=True)
    requester_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    requester_slot_id = Column(String, ForeignKey("slots.id", ondelete="CASCADE"), nullable=False)
    target_user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    target_slot_id = Column(String, ForeignKey("slots.id", ondelete="CASCADE"), nullable=False)
    status = Column(String, nullable=False, default=SwapStatus.PENDING.value)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    requester = relationship("User", foreign_keys=[requester_id], lazy="joined")
    target_user = relationship("User", foreign_keys=[target_user_id], lazy="joined")
    requester_slot = relationship("Slot", foreign_keys=[requester_slot_id], lazy="joined")
    target_slot = relationship("Slot", foreign_keys=[target_slot_id], lazy="joined")

    __table_args__ = (
        CheckConstraint("status in ('PENDING','ACCEPTED','REJECTED')", name="swap_status_valid"),
        CheckConstraint("requester_slot_id != target_slot_id", name="swap_distinct_slots"),
        CheckConstraint("requester_id != target_user_id", name="swap_distinct_owners"),
        # at most one PENDING request per slot on each side
        Index(
            "uq_pending_requester_slot", "requester_slot_id", unique=True,
            sqlite_where=text("status = 'PENDING'"), postgresql_where=text("status = 'PENDING'"),
        ),
        Index(
            "uq_pending_target_slot", "target_slot_id", unique=True,
            sqlite_where=text("status = 'PENDING'"), postgresql_where=text("status = 'PENDING'"),
        ),
    )
