from __future__ import annotations
import enum
import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import CheckConstraint, Enum, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, Uuid, func
from phifit.db import Base, UTCDateTime, utcnow


class MetricType(str, enum.Enum):
    HIGHER_WINS = "HIGHER_WINS"
    LOWER_WINS = "LOWER_WINS"
    TARGET_THRESHOLD = "TARGET_THRESHOLD"


class SideChallengeStatus(str, enum.Enum):
    PROPOSED = "PROPOSED"
    ACCEPTED = "ACCEPTED"
    RESOLVED = "RESOLVED"
    DECLINED = "DECLINED"
    VOID = "VOID"

    @property
    def is_terminal(self) -> bool:
        return self in (SideChallengeStatus.RESOLVED, SideChallengeStatus.DECLINED, SideChallengeStatus.VOID)


OPEN_STATUSES = (SideChallengeStatus.PROPOSED, SideChallengeStatus.ACCEPTED)


class SideChallenge(Base):
    __tablename__ = "side_challenges"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    competition_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("competitions.id", ondelete="CASCADE"), index=True, nullable=False
    )
    week_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("weeks.id", ondelete="CASCADE"), index=True, nullable=False)
    created_by_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    opponent_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )

    title: Mapped[str] = mapped_column(String(120), nullable=False)
    rules: Mapped[str] = mapped_column(Text(), nullable=False)
    metric_type: Mapped[MetricType] = mapped_column(Enum(MetricType, native_enum=False, length=24), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False)
    target_value: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    stake_tokens: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[SideChallengeStatus] = mapped_column(
        Enum(SideChallengeStatus, native_enum=False, length=16), nullable=False, default=SideChallengeStatus.PROPOSED, index=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    winner_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)  # null = tie
    resolution_note: Mapped[str | None] = mapped_column(Text(), nullable=True)

    __table_args__ = (
        CheckConstraint("stake_tokens > 0", name="ck_side_challenge_stake_positive"),
        CheckConstraint("created_by_user_id <> opponent_user_id", name="ck_side_challenge_not_self"),
    )


class SideChallengeSubmission(Base):
    __tablename__ = "side_challenge_submissions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    side_challenge_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("side_challenges.id", ondelete="CASCADE"), index=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    value_number: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    value_display: Mapped[str] = mapped_column(String(120), nullable=False)
    note: Mapped[str | None] = mapped_column(Text(), nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("side_challenge_id", "user_id", name="uq_side_challenge_submission_once"),
    )
