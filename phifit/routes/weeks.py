from __future__ import annotations
from dataclasses import asdict
from uuid import UUID
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from phifit.auth_deps import get_current_user
from phifit.db import get_session
from phifit.models.user import User
from phifit.schemas.competition import ParticipantPublic, WeekPublic
from phifit.schemas.task import AdminCompletionToggle, CompletionPublic, CompletionResult, CompletionToggle, TaskPublic
from phifit.schemas.week import (
    OverviewStats, RecalculateSummary, WeekDetail, WeekLockAction, WeekLockSummary, WeekOverviewPublic,
)
from phifit.services import access, perfect_week, tasks, weeks

router = APIRouter(prefix="/challenges/{competition_id}/weeks", tags=["weeks"])

def _completion_result(completion) -> CompletionResult:
    if completion is None:
        return CompletionResult(completed=False)
    return CompletionResult(completed=True, completion=CompletionPublic.model_validate(completion))

@router.get("", response_model=list[WeekPublic])
async def list_weeks(
    competition_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await access.require_participant(session, competition_id, user.id)
    return [WeekPublic.model_validate(w) for w in await weeks.list_weeks(session, competition_id)]

@router.get("/{week_id}", response_model=WeekDetail)
async def get_week(
    competition_id: UUID,
    week_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await access.require_participant(session, competition_id, user.id)
    sheet = await tasks.week_sheet(session, competition_id, week_id)
    return WeekDetail(
        week=WeekPublic.model_validate(sheet.week),
        completions=[CompletionPublic.model_validate(c) for c in sheet.completions],
        points_by_user=sheet.points_by_user,
    )

@router.get("/{week_id}/admin/overview", response_model=WeekOverviewPublic)
async def admin_overview(
    competition_id: UUID,
    week_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    overview = await tasks.week_overview(session, competition_id, week_id, user.id)
    return WeekOverviewPublic(
        week=WeekPublic.model_validate(overview.week),
        participants=[
            ParticipantPublic(
                user_id=u.id, display_name=u.display_name, email=u.email,
                buy_in_paid=p.buy_in_paid, joined_at=p.joined_at,
            )
            for p, u in overview.participants
        ],
        tasks=[TaskPublic.model_validate(t) for t in overview.tasks],
        completions=[CompletionPublic.model_validate(c) for c in overview.completions],
        points_by_user=overview.points_by_user,
        perfect_user_ids=sorted(overview.perfect_user_ids, key=str),
        stats=OverviewStats(
            total_completions=len(overview.completions),
            perfect_weeks=len(overview.perfect_user_ids),
            average_points=overview.average_points,
        ),
    )

@router.get("/{week_id}/completions", response_model=list[CompletionPublic])
async def list_completions(
    competition_id: UUID,
    week_id: UUID,
    mine: bool = False,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await access.require_participant(session, competition_id, user.id)
    rows = await tasks.list_completions(session, competition_id, week_id, user.id if mine else None)
    return [CompletionPublic.model_validate(c) for c in rows]

@router.post("/{week_id}/completions", response_model=CompletionResult)
async def toggle_completion(
    competition_id: UUID,
    week_id: UUID,
    payload: CompletionToggle,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    completion = await tasks.toggle_own_completion(
        session, competition_id, week_id, payload.task_template_id, user.id, payload.completed
    )
    await session.commit()
    return _completion_result(completion)

@router.post("/{week_id}/admin/completions", response_model=CompletionResult)
async def admin_toggle_completion(
    competition_id: UUID,
    week_id: UUID,
    payload: AdminCompletionToggle,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    completion = await tasks.organizer_set_completion(
        session, competition_id, week_id, payload.task_template_id, user.id, payload.user_id,
        payload.completed, payload.note,
    )
    await session.commit()
    return _completion_result(completion)

@router.post("/{week_id}/admin/lock")
async def lock_or_unlock(
    competition_id: UUID,
    week_id: UUID,
    payload: WeekLockAction,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    if payload.action == "lock":
        # commits the lock, then each lock effect on its own
        result = await weeks.force_lock(session, competition_id, week_id, user.id)
        week = await access.get_week_or_404(session, competition_id, week_id)
        return {
            "week": WeekPublic.model_validate(week),
            "message": "Week locked successfully",
            "lock": WeekLockSummary.model_validate(asdict(result)),
        }
    week = await weeks.force_unlock(session, competition_id, week_id, user.id)
    await session.commit()
    return {"week": WeekPublic.model_validate(week), "message": "Week unlocked successfully"}

@router.post("/{week_id}/admin/recalculate-tokens", response_model=RecalculateSummary)
async def recalculate_tokens(
    competition_id: UUID,
    week_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await access.require_organizer(session, competition_id, user.id, "Only organizers can use admin endpoints")
    result = await perfect_week.recalculate(session, competition_id, week_id)
    await session.commit()
    return RecalculateSummary.model_validate(asdict(result))
