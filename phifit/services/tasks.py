from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, assert_never
from uuid import UUID
import structlog
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from phifit.db import utcnow
from phifit.errors import NotAuthorized, NotFound, StateConflict, ValidationFailed
from phifit.models.task import Completion, CompletionSource, TaskTemplate
from phifit.models.competition import Participant
from phifit.models.user import User
from phifit.models.week import Week, WeekStatus
from phifit.services import access, competitions, leaderboard, perfect_week

log = structlog.get_logger()


# ---------- task templates ----------

async def list_tasks(session: AsyncSession, competition_id: UUID, include_inactive: bool = False) -> list[TaskTemplate]:
    stmt = select(TaskTemplate).where(TaskTemplate.competition_id == competition_id)
    if not include_inactive:
        stmt = stmt.where(TaskTemplate.active.is_(True))
    return list((await session.execute(stmt.order_by(TaskTemplate.order.asc()))).scalars().all())


def _check_task_fields(name: str | None, points: int | None) -> None:
    if name is not None and len(name.strip()) < 2:
        raise ValidationFailed("Task name must be at least 2 characters")
    if points is not None and points < 0:
        raise ValidationFailed("points must not be negative")


async def create_task(
    session: AsyncSession, competition_id: UUID, user_id: UUID, *, name: str, points: int = 1, description: str = ""
) -> TaskTemplate:
    await access.require_organizer(session, competition_id, user_id, "Only organizer can create tasks")
    _check_task_fields(name, points)
    max_order = await session.scalar(
        select(func.max(TaskTemplate.order)).where(TaskTemplate.competition_id == competition_id)
    )
    task = TaskTemplate(
        competition_id=competition_id,
        name=name.strip(),
        description=(description or "").strip(),
        points=points,
        active=True,
        order=(max_order if max_order is not None else -1) + 1,
    )
    session.add(task)
    await session.flush()
    log.info("task_created", competition_id=str(competition_id), task_id=str(task.id), points=points)
    return task


async def _task(session: AsyncSession, competition_id: UUID, task_id: UUID) -> TaskTemplate:
    task = await session.get(TaskTemplate, task_id)
    if not task or task.competition_id != competition_id:
        raise NotFound("Task not found")
    return task


async def update_task(
    session: AsyncSession, competition_id: UUID, task_id: UUID, user_id: UUID, changes: dict[str, Any]
) -> TaskTemplate:
    """Point changes re-score every week, locked ones included."""
    await access.require_organizer(session, competition_id, user_id, "Only organizer can update tasks")
    task = await _task(session, competition_id, task_id)
    changes = {k: v for k, v in changes.items() if k in ("name", "description", "points", "active", "order") and v is not None}
    _check_task_fields(changes.get("name"), changes.get("points"))
    for key, value in changes.items():
        setattr(task, key, value.strip() if isinstance(value, str) else value)
    log.info("task_updated", task_id=str(task_id), fields=sorted(changes))
    return task


async def deactivate_task(session: AsyncSession, competition_id: UUID, task_id: UUID, user_id: UUID) -> TaskTemplate:
    await access.require_organizer(session, competition_id, user_id, "Only organizer can delete tasks")
    task = await _task(session, competition_id, task_id)
    task.active = False
    log.info("task_deactivated", task_id=str(task_id))
    return task


# ---------- completions ----------

async def list_completions(
    session: AsyncSession, competition_id: UUID, week_id: UUID, user_id: UUID | None = None
) -> list[Completion]:
    await access.get_week_or_404(session, competition_id, week_id)
    stmt = select(Completion).where(Completion.competition_id == competition_id, Completion.week_id == week_id)
    if user_id is not None:
        stmt = stmt.where(Completion.user_id == user_id)
    return list((await session.execute(stmt.order_by(Completion.completed_at.asc()))).scalars().all())


async def _active_task(session: AsyncSession, competition_id: UUID, task_id: UUID) -> TaskTemplate:
    task = await session.get(TaskTemplate, task_id)
    if not task or task.competition_id != competition_id or not task.active:
        raise NotFound("Task not found or inactive")
    return task


async def _set_completion(
    session: AsyncSession,
    *,
    competition_id: UUID,
    week_id: UUID,
    task_id: UUID,
    user_id: UUID,
    completed: bool,
    source: CompletionSource,
    editor_id: UUID | None = None,
    note: str | None = None,
    now: datetime,
) -> Completion | None:
    existing = await session.scalar(
        select(Completion).where(
            Completion.week_id == week_id, Completion.task_template_id == task_id, Completion.user_id == user_id
        )
    )
    if not completed:
        if existing:
            await session.delete(existing)
        return None

    completion = existing or Completion(
        competition_id=competition_id, week_id=week_id, task_template_id=task_id, user_id=user_id,
    )
    completion.completed_at = now
    completion.source = source
    match source:
        case CompletionSource.ORGANIZER_EDIT:
            completion.edited_by_user_id = editor_id
            completion.edited_at = now
            completion.note = note or None
        case CompletionSource.PARTICIPANT:
            pass
        case _:
            assert_never(source)
    if not existing:
        session.add(completion)
    await session.flush()
    return completion


async def toggle_own_completion(
    session: AsyncSession,
    competition_id: UUID,
    week_id: UUID,
    task_id: UUID,
    user_id: UUID,
    completed: bool,
    now: datetime | None = None,
) -> Completion | None:
    """Participants edit their own checklist while the week is OPEN."""
    if not await access.is_participant(session, competition_id, user_id):
        raise NotAuthorized("You must be a participant in this challenge")
    week = await access.get_week_or_404(session, competition_id, week_id)
    match week.status:
        case WeekStatus.OPEN:
            pass
        case WeekStatus.UPCOMING | WeekStatus.LOCKED:
            raise StateConflict("Week is not open for completions")
        case _:
            assert_never(week.status)
    await _active_task(session, competition_id, task_id)
    return await _set_completion(
        session, competition_id=competition_id, week_id=week_id, task_id=task_id, user_id=user_id,
        completed=completed, source=CompletionSource.PARTICIPANT, now=now or utcnow(),
    )


async def organizer_set_completion(
    session: AsyncSession,
    competition_id: UUID,
    week_id: UUID,
    task_id: UUID,
    organizer_id: UUID,
    user_id: UUID,
    completed: bool,
    note: str | None = None,
    now: datetime | None = None,
) -> Completion | None:
    """
    Organizer correction in any week state, audited on the row. Editing a
    locked week does not move tokens; run the perfect-week recalculation after.
    """
    await access.require_organizer(session, competition_id, organizer_id, "Only organizers can use admin endpoints")
    await access.get_week_or_404(session, competition_id, week_id)
    if not await access.is_participant(session, competition_id, user_id):
        raise NotFound("User is not a participant in this challenge")
    await _active_task(session, competition_id, task_id)
    completion = await _set_completion(
        session, competition_id=competition_id, week_id=week_id, task_id=task_id, user_id=user_id,
        completed=completed, source=CompletionSource.ORGANIZER_EDIT, editor_id=organizer_id, note=note,
        now=now or utcnow(),
    )
    log.info("completion_edited_by_organizer", week_id=str(week_id), task_id=str(task_id), user_id=str(user_id),
             completed=completed, organizer_id=str(organizer_id))
    return completion


# ---------- week views ----------

@dataclass
class WeekSheet:
    week: Week
    completions: list[Completion]
    points_by_user: dict[UUID, int]


@dataclass
class WeekOverview:
    week: Week
    participants: list[tuple[Participant, User]]
    tasks: list[TaskTemplate]
    completions: list[Completion]
    points_by_user: dict[UUID, int]
    perfect_user_ids: set[UUID]

    @property
    def average_points(self) -> float:
        if not self.participants:
            return 0.0
        return round(sum(self.points_by_user.values()) / len(self.participants), 2)


async def _points_by_user(session: AsyncSession, competition_id: UUID, week_id: UUID) -> dict[UUID, int]:
    board = await leaderboard.weekly_leaderboard(session, competition_id, week_id)
    return {row.user_id: row.points for row in board}


async def week_sheet(session: AsyncSession, competition_id: UUID, week_id: UUID) -> WeekSheet:
    """One week with every completion and the points they are currently worth."""
    week = await access.get_week_or_404(session, competition_id, week_id)
    return WeekSheet(
        week=week,
        completions=await list_completions(session, competition_id, week_id),
        points_by_user=await _points_by_user(session, competition_id, week_id),
    )


async def week_overview(session: AsyncSession, competition_id: UUID, week_id: UUID, organizer_id: UUID) -> WeekOverview:
    """
    Organizer grid for a week: participants by name, active tasks in order,
    all completions with their audit fields, and who is on track for a
    perfect week.
    """
    await access.require_organizer(session, competition_id, organizer_id, "Only organizers can access admin overview")
    week = await access.get_week_or_404(session, competition_id, week_id)
    participants = sorted(
        await competitions.list_participants(session, competition_id), key=lambda pu: pu[1].display_name.lower()
    )
    return WeekOverview(
        week=week,
        participants=participants,
        tasks=await list_tasks(session, competition_id),
        completions=await list_completions(session, competition_id, week_id),
        points_by_user=await _points_by_user(session, competition_id, week_id),
        perfect_user_ids=await perfect_week.detect(session, competition_id, week_id),
    )
