"""
Points leaderboards and advisory prize maths.

Scores are recomputed on every read from completions joined to the task's
*current* point value, so editing a task's points re-scores history.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Iterable
from uuid import UUID
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from phifit.models.competition import Competition, Participant
from phifit.models.task import Completion, TaskTemplate
from phifit.models.user import User
from phifit.models.week import Week, WeekStatus

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


@dataclass
class Standing:
    user_id: UUID
    display_name: str
    points: int
    rank: int = 0
    tied: bool = False


@dataclass(frozen=True)
class Winner:
    user_id: UUID
    display_name: str
    points: int
    prize_amount: Decimal


@dataclass(frozen=True)
class PayoutSummary:
    participant_count: int
    total_pool: Decimal
    weekly_prize: Decimal
    weekly_payout_total: Decimal
    grand_prize: Decimal
    token_champ_prize: Decimal


def rank_scores(rows: Iterable[Standing]) -> list[Standing]:
    """
    Sort by points descending and assign competition ranks: equal scores share
    a rank and the next distinct score skips ahead ([10, 10, 8] -> 1, 1, 3).
    An entry is `tied` when it equals its neighbour above or below.
    """
    ordered = sorted(rows, key=lambda r: (-r.points, r.display_name.lower(), str(r.user_id)))
    current = 1
    for i, row in enumerate(ordered):
        if i > 0 and row.points != ordered[i - 1].points:
            current = i + 1
        row.rank = current
        row.tied = (
            (i > 0 and ordered[i - 1].points == row.points)
            or (i + 1 < len(ordered) and ordered[i + 1].points == row.points)
        )
    return ordered


def split_prize(prize_amount: Decimal, winner_count: int) -> Decimal:
    # remainder cents are not redistributed
    if winner_count <= 0:
        return Decimal("0")
    return (Decimal(prize_amount) / winner_count).quantize(CENT, rounding=ROUND_DOWN)


def winners(leaderboard: list[Standing], prize_amount: Decimal) -> list[Winner]:
    if not leaderboard:
        return []
    top = max(s.points for s in leaderboard)
    tops = [s for s in leaderboard if s.points == top]
    share = split_prize(prize_amount, len(tops))
    return [Winner(user_id=s.user_id, display_name=s.display_name, points=s.points, prize_amount=share) for s in tops]


def payout_summary(competition: Competition, participant_count: int) -> PayoutSummary:
    pool = Decimal(competition.buy_in_amount or 0) * participant_count
    weekly = Decimal(competition.weekly_prize_percent or 0) / HUNDRED * pool
    return PayoutSummary(
        participant_count=participant_count,
        total_pool=pool.quantize(CENT),
        weekly_prize=weekly.quantize(CENT),
        weekly_payout_total=(weekly * competition.number_of_weeks).quantize(CENT),
        grand_prize=(Decimal(competition.grand_prize_percent or 0) / HUNDRED * pool).quantize(CENT),
        token_champ_prize=(Decimal(competition.token_champ_prize_percent or 0) / HUNDRED * pool).quantize(CENT),
    )


def prize_allocation_percent(weekly: Decimal, number_of_weeks: int, grand: Decimal, token_champ: Decimal) -> Decimal:
    return Decimal(weekly) * number_of_weeks + Decimal(grand) + Decimal(token_champ)


# ---------- queries ----------

async def _scores(session: AsyncSession, competition_id: UUID, week_ids: list[UUID] | None) -> list[Standing]:
    """Every participant with their summed points over `week_ids` (None = no weeks)."""
    participants = (await session.execute(
        select(User.id, User.display_name)
        .join(Participant, Participant.user_id == User.id)
        .where(Participant.competition_id == competition_id)
    )).all()
    points: dict[UUID, int] = {}
    if week_ids:
        rows = (await session.execute(
            select(Completion.user_id, func.sum(TaskTemplate.points))
            .join(TaskTemplate, TaskTemplate.id == Completion.task_template_id)
            .where(Completion.competition_id == competition_id, Completion.week_id.in_(week_ids))
            .group_by(Completion.user_id)
        )).all()
        points = {uid: int(total or 0) for uid, total in rows}
    return rank_scores(
        Standing(user_id=uid, display_name=name, points=points.get(uid, 0)) for uid, name in participants
    )


async def weekly_leaderboard(session: AsyncSession, competition_id: UUID, week_id: UUID) -> list[Standing]:
    return await _scores(session, competition_id, [week_id])


async def overall_leaderboard(session: AsyncSession, competition_id: UUID) -> list[Standing]:
    """Totals over LOCKED weeks only; open and upcoming weeks never count."""
    locked = (await session.execute(
        select(Week.id).where(Week.competition_id == competition_id, Week.status == WeekStatus.LOCKED)
    )).scalars().all()
    return await _scores(session, competition_id, list(locked))


async def participant_count(session: AsyncSession, competition_id: UUID) -> int:
    n = await session.scalar(
        select(func.count()).select_from(Participant).where(Participant.competition_id == competition_id)
    )
    return int(n or 0)
