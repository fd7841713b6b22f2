from __future__ import annotations
from uuid import UUID
from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession
from phifit.auth_deps import get_current_user
from phifit.db import get_session
from phifit.models.competition import Competition
from phifit.models.user import User
from phifit.schemas.competition import (
    BuyInUpdate, CompetitionCreate, CompetitionDetail, CompetitionPublic, CompetitionUpdate,
    InviteRequest, ParticipantPublic, WeekPublic,
)
from phifit.schemas.task import TaskCreate, TaskPublic, TaskUpdate
from phifit.services import access, competitions, tasks, weeks

router = APIRouter(prefix="/challenges", tags=["challenges"])

async def hydrate_detail(session: AsyncSession, competition: Competition, user_id: UUID) -> CompetitionDetail:
    participants = await competitions.list_participants(session, competition.id)
    return CompetitionDetail(
        **CompetitionPublic.model_validate(competition).model_dump(),
        is_organizer=competition.organizer_id == user_id,
        current_week_index=weeks.current_week_index(
            competition.start_date, competition.number_of_weeks, competition.timezone
        ),
        participants=[
            ParticipantPublic(
                user_id=u.id, display_name=u.display_name, email=u.email,
                buy_in_paid=p.buy_in_paid, joined_at=p.joined_at,
            )
            for p, u in participants
        ],
        tasks=[TaskPublic.model_validate(t) for t in await tasks.list_tasks(session, competition.id)],
        weeks=[WeekPublic.model_validate(w) for w in await weeks.list_weeks(session, competition.id)],
    )

@router.post("", response_model=CompetitionDetail, status_code=201)
async def create_competition(
    payload: CompetitionCreate,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    competition = await competitions.create_competition(session, user.id, **payload.model_dump())
    await session.commit()
    return await hydrate_detail(session, competition, user.id)

@router.get("", response_model=list[CompetitionPublic])
async def list_my_competitions(session: AsyncSession = Depends(get_session), user: User = Depends(get_current_user)):
    return [CompetitionPublic.model_validate(c) for c in await competitions.list_for_user(session, user.id)]

@router.get("/{competition_id}", response_model=CompetitionDetail)
async def get_competition(
    competition_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    competition = await access.require_participant(session, competition_id, user.id)
    return await hydrate_detail(session, competition, user.id)

@router.patch("/{competition_id}", response_model=CompetitionDetail)
async def update_competition(
    competition_id: UUID,
    payload: CompetitionUpdate,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    competition = await competitions.update_competition(
        session, competition_id, user.id, payload.model_dump(exclude_unset=True)
    )
    await session.commit()
    return await hydrate_detail(session, competition, user.id)

@router.delete("/{competition_id}", status_code=204)
async def delete_competition(
    competition_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await competitions.delete_competition(session, competition_id, user.id)
    await session.commit()
    return Response(status_code=204)

# ---------- participants ----------

@router.post("/{competition_id}/participants", response_model=ParticipantPublic, status_code=201)
async def invite_participant(
    competition_id: UUID,
    payload: InviteRequest,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    participant, invited = await competitions.invite_participant(session, competition_id, user.id, payload.email)
    await session.commit()
    return ParticipantPublic(
        user_id=invited.id, display_name=invited.display_name, email=invited.email,
        buy_in_paid=participant.buy_in_paid, joined_at=participant.joined_at,
    )

@router.delete("/{competition_id}/participants/{user_id}", status_code=204)
async def remove_participant(
    competition_id: UUID,
    user_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await competitions.remove_participant(session, competition_id, user.id, user_id)
    await session.commit()
    return Response(status_code=204)

@router.patch("/{competition_id}/participants/{user_id}", status_code=204)
async def update_buy_in(
    competition_id: UUID,
    user_id: UUID,
    payload: BuyInUpdate,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await competitions.set_buy_in_paid(session, competition_id, user.id, user_id, payload.buy_in_paid)
    await session.commit()
    return Response(status_code=204)

# ---------- tasks ----------

@router.get("/{competition_id}/tasks", response_model=list[TaskPublic])
async def list_tasks(
    competition_id: UUID,
    include_inactive: bool = False,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await access.require_participant(session, competition_id, user.id)
    return [TaskPublic.model_validate(t) for t in await tasks.list_tasks(session, competition_id, include_inactive)]

@router.post("/{competition_id}/tasks", response_model=TaskPublic, status_code=201)
async def create_task(
    competition_id: UUID,
    payload: TaskCreate,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    task = await tasks.create_task(session, competition_id, user.id, **payload.model_dump())
    await session.commit()
    return TaskPublic.model_validate(task)

@router.patch("/{competition_id}/tasks/{task_id}", response_model=TaskPublic)
async def update_task(
    competition_id: UUID,
    task_id: UUID,
    payload: TaskUpdate,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    task = await tasks.update_task(session, competition_id, task_id, user.id, payload.model_dump(exclude_unset=True))
    await session.commit()
    return TaskPublic.model_validate(task)

@router.delete("/{competition_id}/tasks/{task_id}", response_model=TaskPublic)
async def delete_task(
    competition_id: UUID,
    task_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    # soft delete: completions and history stay
    task = await tasks.deactivate_task(session, competition_id, task_id, user.id)
    await session.commit()
    return TaskPublic.model_validate(task)
