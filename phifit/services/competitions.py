from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID
import structlog
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from phifit.db import utcnow
from phifit.errors import NotAuthorized, NotFound, StateConflict, ValidationFailed
from phifit.models.competition import Competition, CompetitionStatus, Participant
from phifit.models.user import User
from phifit.services import access, weeks
from phifit.services.leaderboard import prize_allocation_percent

log = structlog.get_logger()

UPDATABLE_FIELDS = (
    "name", "description", "start_date", "timezone", "buy_in_amount",
    "weekly_prize_percent", "grand_prize_percent", "token_champ_prize_percent", "status",
)


def _check_prizes(weekly: Decimal, number_of_weeks: int, grand: Decimal, token_champ: Decimal) -> None:
    for field, value in (("weekly_prize_percent", weekly), ("grand_prize_percent", grand),
                         ("token_champ_prize_percent", token_champ)):
        if Decimal(value) < 0:
            raise ValidationFailed(f"{field} must not be negative")
    total = prize_allocation_percent(weekly, number_of_weeks, grand, token_champ)
    if total > 100:
        raise ValidationFailed(f"Total prize allocation ({total:.1f}%) exceeds 100%")


def _check_name(name: str) -> str:
    name = (name or "").strip()
    if len(name) < 3:
        raise ValidationFailed("Challenge name must be at least 3 characters")
    return name


async def create_competition(
    session: AsyncSession,
    organizer_id: UUID,
    *,
    name: str,
    start_date: date,
    number_of_weeks: int,
    description: str = "",
    timezone: str = "UTC",
    buy_in_amount: Decimal = Decimal("0"),
    weekly_prize_percent: Decimal = Decimal("0"),
    grand_prize_percent: Decimal = Decimal("0"),
    token_champ_prize_percent: Decimal = Decimal("0"),
    now: datetime | None = None,
) -> Competition:
    """Competition + organizer as paid participant + all its weeks, in one unit."""
    name = _check_name(name)
    if not 1 <= number_of_weeks <= 52:
        raise ValidationFailed("Number of weeks must be between 1 and 52")
    if Decimal(buy_in_amount) < 0:
        raise ValidationFailed("buy_in_amount must not be negative")
    weeks.zone(timezone)
    _check_prizes(weekly_prize_percent, number_of_weeks, grand_prize_percent, token_champ_prize_percent)

    competition = Competition(
        organizer_id=organizer_id,
        name=name,
        description=(description or "").strip(),
        start_date=start_date,
        number_of_weeks=number_of_weeks,
        timezone=timezone,
        buy_in_amount=Decimal(buy_in_amount),
        weekly_prize_percent=Decimal(weekly_prize_percent),
        grand_prize_percent=Decimal(grand_prize_percent),
        token_champ_prize_percent=Decimal(token_champ_prize_percent),
        status=CompetitionStatus.ACTIVE,
    )
    session.add(competition)
    await session.flush()  # need competition.id

    session.add(Participant(competition_id=competition.id, user_id=organizer_id, buy_in_paid=True))
    await weeks.create_weeks(session, competition, now)
    await session.flush()
    log.info("competition_created", competition_id=str(competition.id), organizer_id=str(organizer_id),
             weeks=number_of_weeks)
    return competition


async def list_for_user(session: AsyncSession, user_id: UUID) -> list[Competition]:
    joined = select(Participant.competition_id).where(Participant.user_id == user_id)
    return list((await session.execute(
        select(Competition)
        .where(or_(Competition.organizer_id == user_id, Competition.id.in_(joined)))
        .order_by(Competition.start_date.desc(), Competition.created_at.desc())
    )).scalars().all())


async def update_competition(
    session: AsyncSession, competition_id: UUID, user_id: UUID, changes: dict[str, Any], now: datetime | None = None
) -> Competition:
    competition = await access.require_organizer(session, competition_id, user_id, "Only organizer can update challenge")
    changes = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS and v is not None}

    if "name" in changes:
        changes["name"] = _check_name(changes["name"])
    if "description" in changes:
        changes["description"] = changes["description"].strip()
    if "timezone" in changes:
        weeks.zone(changes["timezone"])
    if "buy_in_amount" in changes and Decimal(changes["buy_in_amount"]) < 0:
        raise ValidationFailed("buy_in_amount must not be negative")
    _check_prizes(
        changes.get("weekly_prize_percent", competition.weekly_prize_percent),
        competition.number_of_weeks,
        changes.get("grand_prize_percent", competition.grand_prize_percent),
        changes.get("token_champ_prize_percent", competition.token_champ_prize_percent),
    )

    reschedule = (
        ("start_date" in changes and changes["start_date"] != competition.start_date)
        or ("timezone" in changes and changes["timezone"] != competition.timezone)
    )
    for key, value in changes.items():
        setattr(competition, key, value)
    if reschedule:
        await weeks.regenerate_weeks(session, competition, now)
    log.info("competition_updated", competition_id=str(competition_id), fields=sorted(changes), rescheduled=reschedule)
    return competition


async def delete_competition(session: AsyncSession, competition_id: UUID, user_id: UUID) -> None:
    """Dependents (weeks, tasks, completions, wagers, ledger) go with it via ON DELETE CASCADE."""
    competition = await access.require_organizer(session, competition_id, user_id, "Only organizer can delete challenge")
    await session.delete(competition)
    log.info("competition_deleted", competition_id=str(competition_id))


# ---------- participants ----------

async def list_participants(session: AsyncSession, competition_id: UUID) -> list[tuple[Participant, User]]:
    return [tuple(r) for r in (await session.execute(
        select(Participant, User)
        .join(User, User.id == Participant.user_id)
        .where(Participant.competition_id == competition_id)
        .order_by(Participant.joined_at.asc())
    )).all()]


async def invite_participant(session: AsyncSession, competition_id: UUID, organizer_id: UUID, email: str) -> tuple[Participant, User]:
    await access.require_organizer(session, competition_id, organizer_id, "Only organizer can invite participants")
    user = await session.scalar(select(User).where(User.email == (email or "").strip().lower()))
    if not user:
        raise NotFound("User with this email not found")
    if await access.is_participant(session, competition_id, user.id):
        raise StateConflict("User is already a participant")
    participant = Participant(competition_id=competition_id, user_id=user.id, buy_in_paid=False, joined_at=utcnow())
    session.add(participant)
    await session.flush()
    log.info("participant_added", competition_id=str(competition_id), user_id=str(user.id))
    return participant, user


async def _participant(session: AsyncSession, competition_id: UUID, user_id: UUID) -> Participant:
    participant = await session.scalar(
        select(Participant).where(Participant.competition_id == competition_id, Participant.user_id == user_id)
    )
    if not participant:
        raise NotFound("Participant not found")
    return participant


async def remove_participant(session: AsyncSession, competition_id: UUID, actor_id: UUID, user_id: UUID) -> None:
    """The organizer may remove anyone but themselves; a participant may leave."""
    competition = await access.get_competition_or_404(session, competition_id)
    if actor_id != competition.organizer_id and actor_id != user_id:
        raise NotAuthorized("Not authorized to remove this participant")
    if user_id == competition.organizer_id:
        raise ValidationFailed("Cannot remove organizer from challenge")
    participant = await _participant(session, competition_id, user_id)
    await session.delete(participant)
    log.info("participant_removed", competition_id=str(competition_id), user_id=str(user_id), by=str(actor_id))


async def set_buy_in_paid(
    session: AsyncSession, competition_id: UUID, organizer_id: UUID, user_id: UUID, paid: bool
) -> Participant:
    await access.require_organizer(session, competition_id, organizer_id, "Only organizer can update buy-ins")
    participant = await _participant(session, competition_id, user_id)
    participant.buy_in_paid = paid
    return participant
