from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID
import structlog
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from phifit.errors import InsufficientBalance, ValidationFailed
from phifit.models.competition import Participant
from phifit.models.ledger import LedgerReason, TokenLedger
from phifit.models.side_challenge import OPEN_STATUSES, SideChallenge, SideChallengeStatus
from phifit.models.user import User
from phifit.models.week import Week
from phifit.services.leaderboard import Standing, rank_scores

log = structlog.get_logger()


@dataclass(frozen=True)
class Availability:
    total: int
    staked: int
    available: int


@dataclass(frozen=True)
class HistoryEntry:
    id: UUID
    delta: int
    reason: LedgerReason
    created_at: datetime
    week_id: UUID | None
    week_index: int | None
    related_entity_id: UUID | None


# ---------- writes ----------

def append(
    session: AsyncSession,
    *,
    competition_id: UUID,
    user_id: UUID,
    delta: int,
    reason: LedgerReason,
    week_id: UUID | None = None,
    related_entity_id: UUID | None = None,
) -> TokenLedger:
    """
    Add one immutable entry. Never commits: the entry lands together with the
    state change that justifies it, in the caller's transaction.
    """
    if delta == 0:
        raise ValueError("ledger delta must be non-zero")
    entry = TokenLedger(
        competition_id=competition_id,
        user_id=user_id,
        week_id=week_id,
        delta=int(delta),
        reason=reason,
        related_entity_id=related_entity_id,
    )
    session.add(entry)
    return entry


async def lock_token_holders(session: AsyncSession, competition_id: UUID, *user_ids: UUID) -> None:
    """
    Serialize stake operations per (competition, user) by locking the
    participant rows. Rows are locked in id order so two users staking against
    each other cannot deadlock. No-op on SQLite, which serializes writers anyway.
    """
    ids = sorted(set(user_ids), key=str)
    if not ids:
        return
    await session.execute(
        select(Participant.id)
        .where(Participant.competition_id == competition_id, Participant.user_id.in_(ids))
        .order_by(Participant.user_id)
        .with_for_update()
    )


# ---------- reads ----------

async def balance(session: AsyncSession, competition_id: UUID, user_id: UUID) -> int:
    total = await session.scalar(
        select(func.coalesce(func.sum(TokenLedger.delta), 0)).where(
            TokenLedger.competition_id == competition_id,
            TokenLedger.user_id == user_id,
        )
    )
    return int(total or 0)


async def balances(session: AsyncSession, competition_id: UUID) -> dict[UUID, int]:
    """Balance per participant, zero for participants with no entries."""
    rows = (await session.execute(
        select(TokenLedger.user_id, func.sum(TokenLedger.delta))
        .where(TokenLedger.competition_id == competition_id)
        .group_by(TokenLedger.user_id)
    )).all()
    out = {uid: int(total or 0) for uid, total in rows}
    participant_ids = (await session.execute(
        select(Participant.user_id).where(Participant.competition_id == competition_id)
    )).scalars().all()
    for uid in participant_ids:
        out.setdefault(uid, 0)
    return out


async def history(session: AsyncSession, competition_id: UUID, user_id: UUID) -> list[HistoryEntry]:
    rows = (await session.execute(
        select(TokenLedger, Week.week_index)
        .outerjoin(Week, Week.id == TokenLedger.week_id)
        .where(TokenLedger.competition_id == competition_id, TokenLedger.user_id == user_id)
        .order_by(TokenLedger.created_at.desc())
    )).all()
    return [
        HistoryEntry(
            id=e.id,
            delta=int(e.delta),
            reason=e.reason,
            created_at=e.created_at,
            week_id=e.week_id,
            week_index=week_index,
            related_entity_id=e.related_entity_id,
        ) for (e, week_index) in rows
    ]


async def staked_tokens(session: AsyncSession, competition_id: UUID, user_id: UUID) -> int:
    """Tokens committed to the user's own still-open wagers."""
    rows = (await session.execute(
        select(SideChallenge.stake_tokens, SideChallenge.created_by_user_id, SideChallenge.status)
        .where(
            SideChallenge.competition_id == competition_id,
            SideChallenge.status.in_(OPEN_STATUSES),
            or_(SideChallenge.created_by_user_id == user_id, SideChallenge.opponent_user_id == user_id),
        )
    )).all()
    staked = 0
    for stake, creator_id, status in rows:
        # creator stakes on proposal, opponent only once accepted
        if creator_id == user_id or status == SideChallengeStatus.ACCEPTED:
            staked += int(stake)
    return staked


async def available_balance(session: AsyncSession, competition_id: UUID, user_id: UUID) -> Availability:
    """
    `total` counts tokens held including those committed to open wagers. Stake
    debits are already in the ledger, so `total - staked` is the ledger balance.
    """
    held = await balance(session, competition_id, user_id)
    staked = await staked_tokens(session, competition_id, user_id)
    total = held + staked
    return Availability(total=total, staked=staked, available=total - staked)


async def ensure_can_stake(session: AsyncSession, competition_id: UUID, user_id: UUID, amount: int) -> Availability:
    """
    Raise unless `amount` can be staked now. Callers that go on to debit must
    hold `lock_token_holders` for this user first so the check stays valid
    until commit.
    """
    if amount <= 0:
        raise ValidationFailed("stake_tokens must be greater than 0")
    avail = await available_balance(session, competition_id, user_id)
    if avail.available < amount:
        log.info("stake_rejected", competition_id=str(competition_id), user_id=str(user_id),
                 required=amount, available=avail.available, staked=avail.staked)
        raise InsufficientBalance(required=amount, available=avail.available, staked=avail.staked)
    return avail


async def token_leaderboard(session: AsyncSession, competition_id: UUID, limit: int | None = None) -> list[Standing]:
    """Participants ranked by token balance (ties share a rank)."""
    by_user = await balances(session, competition_id)
    if not by_user:
        return []
    names = dict((await session.execute(
        select(User.id, User.display_name).where(User.id.in_(list(by_user)))
    )).all())
    ranked = rank_scores(
        Standing(user_id=uid, display_name=names.get(uid, ""), points=bal) for uid, bal in by_user.items()
    )
    return ranked[:limit] if limit else ranked
