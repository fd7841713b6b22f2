from __future__ import annotations
import enum
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, Integer, Uuid, func, text
from phifit.db import Base, UTCDateTime, utcnow


class LedgerReason(str, enum.Enum):
    PERFECT_WEEK_EARNED = "PERFECT_WEEK_EARNED"
    SIDE_CHALLENGE_STAKE = "SIDE_CHALLENGE_STAKE"
    SIDE_CHALLENGE_WIN = "SIDE_CHALLENGE_WIN"
    SIDE_CHALLENGE_TIE_REFUND = "SIDE_CHALLENGE_TIE_REFUND"
    SIDE_CHALLENGE_VOID_REFUND = "SIDE_CHALLENGE_VOID_REFUND"


class TokenLedger(Base):
    """
    Append-only token entries per (competition, user).
    Sign convention:
      - SIDE_CHALLENGE_STAKE => negative (tokens committed to a wager)
      - everything else      => positive (earned, won or refunded)

    Balance = Σ(delta). Rows are never updated; the only deletion is the
    organizer-triggered perfect-week recalculation.
    """
    __tablename__ = "token_ledger"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    competition_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("competitions.id", ondelete="CASCADE"), index=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    week_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("weeks.id", ondelete="SET NULL"), index=True, nullable=True
    )
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[LedgerReason] = mapped_column(Enum(LedgerReason, native_enum=False, length=32), nullable=False)
    # e.g. the side challenge that produced the entry; not a FK so entries outlive it
    related_entity_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "(reason = 'SIDE_CHALLENGE_STAKE' AND delta < 0) OR (reason <> 'SIDE_CHALLENGE_STAKE' AND delta > 0)",
            name="ck_token_ledger_delta_sign",
        ),
        # One perfect-week token per user per week
        Index(
            "uq_token_ledger_perfect_week",
            "competition_id", "week_id", "user_id",
            unique=True,
            postgresql_where=text("reason = 'PERFECT_WEEK_EARNED'"),
            sqlite_where=text("reason = 'PERFECT_WEEK_EARNED'"),
        ),
        Index("ix_token_ledger_competition_user", "competition_id", "user_id"),
    )
