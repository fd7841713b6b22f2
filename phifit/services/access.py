from __future__ import annotations
from uuid import UUID
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from phifit.errors import NotAuthorized, NotFound
from phifit.models.competition import Competition, Participant
from phifit.models.week import Week


async def get_competition_or_404(session: AsyncSession, competition_id: UUID) -> Competition:
    competition = await session.get(Competition, competition_id)
    if not competition:
        raise NotFound("Challenge not found")
    return competition


async def get_week_or_404(session: AsyncSession, competition_id: UUID, week_id: UUID) -> Week:
    week = await session.get(Week, week_id)
    if not week or week.competition_id != competition_id:
        raise NotFound("Week not found")
    return week


async def is_participant(session: AsyncSession, competition_id: UUID, user_id: UUID) -> bool:
    found = await session.scalar(
        select(Participant.id).where(Participant.competition_id == competition_id, Participant.user_id == user_id)
    )
    return found is not None


async def require_organizer(
    session: AsyncSession, competition_id: UUID, user_id: UUID, detail: str = "Only the organizer can do this"
) -> Competition:
    competition = await get_competition_or_404(session, competition_id)
    if competition.organizer_id != user_id:
        raise NotAuthorized(detail)
    return competition


async def require_participant(session: AsyncSession, competition_id: UUID, user_id: UUID) -> Competition:
    """Organizer or participant; anyone else gets a 403."""
    competition = await get_competition_or_404(session, competition_id)
    if competition.organizer_id != user_id and not await is_participant(session, competition_id, user_id):
        raise NotAuthorized("You must be a participant in this challenge")
    return competition
