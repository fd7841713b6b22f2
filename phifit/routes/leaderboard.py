from __future__ import annotations
from uuid import UUID
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from phifit.auth_deps import get_current_user
from phifit.db import get_session
from phifit.models.user import User
from phifit.schemas.leaderboard import (
    LeaderboardRow, OverallLeaderboard, PayoutSummaryPublic, WeeklyLeaderboard, WinnerPublic,
)
from phifit.services import access, leaderboard

router = APIRouter(prefix="/challenges/{competition_id}/leaderboard", tags=["leaderboard"])

@router.get("/weeks/{week_id}", response_model=WeeklyLeaderboard)
async def weekly(
    competition_id: UUID,
    week_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    competition = await access.require_participant(session, competition_id, user.id)
    week = await access.get_week_or_404(session, competition_id, week_id)
    rows = await leaderboard.weekly_leaderboard(session, competition_id, week_id)
    payouts = leaderboard.payout_summary(competition, len(rows))
    return WeeklyLeaderboard(
        week_id=week.id,
        week_index=week.week_index,
        rows=[LeaderboardRow.model_validate(r) for r in rows],
        winners=[WinnerPublic.model_validate(w) for w in leaderboard.winners(rows, payouts.weekly_prize)],
    )

@router.get("", response_model=OverallLeaderboard)
async def overall(
    competition_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    competition = await access.require_participant(session, competition_id, user.id)
    rows = await leaderboard.overall_leaderboard(session, competition_id)
    payouts = leaderboard.payout_summary(competition, len(rows))
    return OverallLeaderboard(
        rows=[LeaderboardRow.model_validate(r) for r in rows],
        winners=[WinnerPublic.model_validate(w) for w in leaderboard.winners(rows, payouts.grand_prize)],
        payouts=PayoutSummaryPublic.model_validate(payouts),
    )
