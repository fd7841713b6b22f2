from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, assert_never
from uuid import UUID
import structlog
from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from phifit.errors import NotFound, StateConflict
from phifit.models.competition import Participant
from phifit.models.ledger import LedgerReason, TokenLedger
from phifit.models.task import Completion, TaskTemplate
from phifit.models.week import Week, WeekStatus
from phifit.services import ledger

log = structlog.get_logger()


@dataclass(frozen=True)
class AwardResult:
    awarded: int
    already_awarded: int


@dataclass(frozen=True)
class RecalculateResult:
    awarded: int
    revoked: int
    unchanged: int


async def detect(session: AsyncSession, competition_id: UUID, week_id: UUID) -> set[UUID]:
    """
    Participants who completed every currently active task in the week.
    Completions of deactivated tasks neither help nor hurt.
    """
    active_ids = set((await session.execute(
        select(TaskTemplate.id).where(TaskTemplate.competition_id == competition_id, TaskTemplate.active.is_(True))
    )).scalars().all())
    if not active_ids:
        return set()

    rows = (await session.execute(
        select(Completion.user_id, func.count(func.distinct(Completion.task_template_id)))
        .join(Participant, (Participant.user_id == Completion.user_id) & (Participant.competition_id == competition_id))
        .where(Completion.week_id == week_id, Completion.task_template_id.in_(active_ids))
        .group_by(Completion.user_id)
    )).all()
    return {uid for uid, n in rows if n == len(active_ids)}


def award(session: AsyncSession, competition_id: UUID, week_id: UUID, user_ids: Iterable[UUID]) -> int:
    n = 0
    for uid in user_ids:
        ledger.append(
            session,
            competition_id=competition_id,
            user_id=uid,
            week_id=week_id,
            delta=1,
            reason=LedgerReason.PERFECT_WEEK_EARNED,
        )
        n += 1
    return n


async def _awarded_users(session: AsyncSession, competition_id: UUID, week_id: UUID) -> dict[UUID, UUID]:
    """user_id -> ledger entry id of existing perfect-week tokens for the week."""
    rows = (await session.execute(
        select(TokenLedger.user_id, TokenLedger.id).where(
            TokenLedger.competition_id == competition_id,
            TokenLedger.week_id == week_id,
            TokenLedger.reason == LedgerReason.PERFECT_WEEK_EARNED,
        )
    )).all()
    return {uid: entry_id for uid, entry_id in rows}


async def award_idempotent(session: AsyncSession, competition_id: UUID, week_id: UUID) -> AwardResult:
    """Award one token per qualifier, skipping users already holding this week's token."""
    qualifiers = await detect(session, competition_id, week_id)
    if not qualifiers:
        return AwardResult(awarded=0, already_awarded=0)
    existing = await _awarded_users(session, competition_id, week_id)
    to_award = sorted(qualifiers - existing.keys(), key=str)
    awarded = award(session, competition_id, week_id, to_award)
    result = AwardResult(awarded=awarded, already_awarded=len(qualifiers) - awarded)
    if awarded:
        log.info("perfect_week_tokens_awarded", competition_id=str(competition_id), week_id=str(week_id),
                 awarded=result.awarded, already_awarded=result.already_awarded)
    return result


async def recalculate(session: AsyncSession, competition_id: UUID, week_id: UUID) -> RecalculateResult:
    """
    Re-detect qualifiers for a locked week and reconcile the ledger: insert
    missing tokens and hard-delete tokens of users who no longer qualify.
    Only perfect-week entries of this week are touched.
    """
    week = await session.get(Week, week_id, populate_existing=True)
    if not week or week.competition_id != competition_id:
        raise NotFound("Week not found")
    match week.status:
        case WeekStatus.LOCKED:
            pass
        case WeekStatus.UPCOMING | WeekStatus.OPEN:
            raise StateConflict("Tokens can only be recalculated for locked weeks")
        case _:
            assert_never(week.status)

    qualifiers = await detect(session, competition_id, week_id)
    existing = await _awarded_users(session, competition_id, week_id)

    to_award = sorted(qualifiers - existing.keys(), key=str)
    to_revoke = [existing[uid] for uid in existing.keys() - qualifiers]

    award(session, competition_id, week_id, to_award)
    if to_revoke:
        await session.execute(delete(TokenLedger).where(TokenLedger.id.in_(to_revoke)))

    result = RecalculateResult(
        awarded=len(to_award),
        revoked=len(to_revoke),
        unchanged=len(qualifiers & existing.keys()),
    )
    log.info("perfect_week_tokens_recalculated", competition_id=str(competition_id), week_id=str(week_id),
             awarded=result.awarded, revoked=result.revoked, unchanged=result.unchanged)
    return result
