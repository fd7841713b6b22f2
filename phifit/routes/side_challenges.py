from __future__ import annotations
from uuid import UUID
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from phifit.auth_deps import get_current_user
from phifit.db import get_session
from phifit.errors import NotFound
from phifit.models.side_challenge import SideChallenge
from phifit.models.user import User
from phifit.schemas.side_challenge import SideChallengeCreate, SideChallengePublic, SubmissionPublic, SubmitResult, VoidRequest
from phifit.services import access, side_challenges

router = APIRouter(prefix="/challenges/{competition_id}/weeks/{week_id}/side-challenges", tags=["side-challenges"])

async def to_public(session: AsyncSession, items: list[SideChallenge]) -> list[SideChallengePublic]:
    subs = await side_challenges.submissions_for(session, [sc.id for sc in items])
    out = []
    for sc in items:
        pub = SideChallengePublic.model_validate(sc)
        pub.submissions = [SubmissionPublic.model_validate(s) for s in subs.get(sc.id, [])]
        out.append(pub)
    return out

async def _check_scope(session: AsyncSession, competition_id: UUID, week_id: UUID, side_challenge_id: UUID) -> None:
    sc = await side_challenges.get(session, side_challenge_id)
    if sc.competition_id != competition_id or sc.week_id != week_id:
        raise NotFound("Side challenge not found")

@router.get("", response_model=list[SideChallengePublic])
async def list_side_challenges(
    competition_id: UUID,
    week_id: UUID,
    mine: bool = True,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await access.require_participant(session, competition_id, user.id)
    await access.get_week_or_404(session, competition_id, week_id)
    items = await side_challenges.list_for_week(session, competition_id, week_id, user.id if mine else None)
    return await to_public(session, items)

@router.post("", response_model=SideChallengePublic, status_code=201)
async def propose(
    competition_id: UUID,
    week_id: UUID,
    payload: SideChallengeCreate,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    sc = await side_challenges.propose(
        session,
        competition_id=competition_id,
        week_id=week_id,
        creator_id=user.id,
        opponent_id=payload.opponent_user_id,
        title=payload.title,
        rules=payload.rules,
        metric_type=payload.metric_type,
        unit=payload.unit,
        stake_tokens=payload.stake_tokens,
        target_value=payload.target_value,
        expires_at=payload.expires_at,
    )
    await session.commit()
    return (await to_public(session, [sc]))[0]

@router.post("/{side_challenge_id}/accept", response_model=SideChallengePublic)
async def accept(
    competition_id: UUID,
    week_id: UUID,
    side_challenge_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await _check_scope(session, competition_id, week_id, side_challenge_id)
    sc = await side_challenges.accept(session, side_challenge_id, user.id)
    await session.commit()
    return (await to_public(session, [sc]))[0]

@router.post("/{side_challenge_id}/decline", response_model=SideChallengePublic)
async def decline(
    competition_id: UUID,
    week_id: UUID,
    side_challenge_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await _check_scope(session, competition_id, week_id, side_challenge_id)
    sc = await side_challenges.decline(session, side_challenge_id, user.id)
    await session.commit()
    return (await to_public(session, [sc]))[0]

@router.post("/{side_challenge_id}/submit", response_model=SideChallengePublic)
async def submit(
    competition_id: UUID,
    week_id: UUID,
    side_challenge_id: UUID,
    payload: SubmitResult,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await _check_scope(session, competition_id, week_id, side_challenge_id)
    sc = await side_challenges.submit_result(
        session, side_challenge_id, user.id, payload.value_number, payload.value_display, payload.note
    )
    await session.commit()
    return (await to_public(session, [sc]))[0]

@router.post("/{side_challenge_id}/void", response_model=SideChallengePublic)
async def void(
    competition_id: UUID,
    week_id: UUID,
    side_challenge_id: UUID,
    payload: VoidRequest,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await _check_scope(session, competition_id, week_id, side_challenge_id)
    sc = await side_challenges.void(session, side_challenge_id, user.id, payload.reason)
    await session.commit()
    return (await to_public(session, [sc]))[0]
