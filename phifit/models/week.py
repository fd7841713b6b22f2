from __future__ import annotations
import enum
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Enum, ForeignKey, Integer, UniqueConstraint, Uuid
from phifit.db import Base, UTCDateTime


class WeekStatus(str, enum.Enum):
    UPCOMING = "UPCOMING"
    OPEN = "OPEN"
    LOCKED = "LOCKED"


class Week(Base):
    """
    One row per (competition, week_index).
    `status` is authoritative once written; only the lock sweep, the organizer
    lock/unlock override and week regeneration write it after creation.
    """
    __tablename__ = "weeks"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    competition_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("competitions.id", ondelete="CASCADE"), index=True, nullable=False)
    week_index: Mapped[int] = mapped_column(Integer, nullable=False)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)  # inclusive
    status: Mapped[WeekStatus] = mapped_column(Enum(WeekStatus, native_enum=False, length=16), nullable=False, index=True)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("competition_id", "week_index", name="uq_week_index"),
    )
