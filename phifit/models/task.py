from __future__ import annotations
import enum
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Boolean, Enum, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid, func
from phifit.db import Base, UTCDateTime, utcnow


class CompletionSource(str, enum.Enum):
    PARTICIPANT = "PARTICIPANT"
    ORGANIZER_EDIT = "ORGANIZER_EDIT"


class TaskTemplate(Base):
    __tablename__ = "task_templates"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    competition_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("competitions.id", ondelete="CASCADE"), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False, default="")
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)  # soft delete
    order: Mapped[int] = mapped_column("display_order", Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)


class Completion(Base):
    __tablename__ = "completions"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    competition_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("competitions.id", ondelete="CASCADE"), index=True, nullable=False)
    week_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("weeks.id", ondelete="CASCADE"), index=True, nullable=False)
    task_template_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("task_templates.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)
    source: Mapped[CompletionSource] = mapped_column(
        Enum(CompletionSource, native_enum=False, length=16), nullable=False, default=CompletionSource.PARTICIPANT
    )
    # Audit trail for organizer edits
    edited_by_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    edited_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    note: Mapped[str | None] = mapped_column(String(500), nullable=True)

    __table_args__ = (
        UniqueConstraint("week_id", "task_template_id", "user_id", name="uq_completion_once"),
    )
