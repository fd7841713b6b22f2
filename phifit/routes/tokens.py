from __future__ import annotations
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from phifit.auth_deps import get_current_user
from phifit.db import get_session
from phifit.errors import NotAuthorized
from phifit.models.user import User
from phifit.schemas.tokens import LedgerEntryPublic, LedgerHistory, TokenBalance, TokenLeaderboardRow
from phifit.services import access, ledger

router = APIRouter(prefix="/challenges/{competition_id}/tokens", tags=["tokens"])

@router.get("/balance", response_model=TokenBalance)
async def get_balance(
    competition_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await access.require_participant(session, competition_id, user.id)
    avail = await ledger.available_balance(session, competition_id, user.id)
    return TokenBalance(user_id=user.id, total=avail.total, staked=avail.staked, available=avail.available)

@router.get("/ledger", response_model=LedgerHistory)
async def get_ledger(
    competition_id: UUID,
    user_id: UUID | None = Query(default=None, alias="userId"),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    competition = await access.require_participant(session, competition_id, user.id)
    target = user_id or user.id
    if target != user.id and competition.organizer_id != user.id:
        raise NotAuthorized("You can only view your own token history")
    entries = await ledger.history(session, competition_id, target)
    return LedgerHistory(
        user_id=target,
        balance=sum(e.delta for e in entries),
        entries=[LedgerEntryPublic.model_validate(e, from_attributes=True) for e in entries],
    )

@router.get("/leaderboard", response_model=list[TokenLeaderboardRow])
async def get_token_leaderboard(
    competition_id: UUID,
    limit: int = Query(default=10, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await access.require_participant(session, competition_id, user.id)
    rows = await ledger.token_leaderboard(session, competition_id, limit)
    return [
        TokenLeaderboardRow(user_id=r.user_id, display_name=r.display_name, balance=r.points, rank=r.rank, tied=r.tied)
        for r in rows
    ]
