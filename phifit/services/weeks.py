"""
Week boundaries and the week status lifecycle.

Weeks are 7-day blocks starting at local midnight in the competition's
timezone. `derive_weeks` is pure and is used for creation and display; the
persisted `Week.status` is authoritative once written and only three paths
write it: the lock sweep, the organizer lock/unlock override and
`regenerate_weeks`.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone as dt_tz
from typing import assert_never
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from phifit.db import utcnow
from phifit.errors import ValidationFailed
from phifit.models.competition import Competition
from phifit.models.week import Week, WeekStatus
from phifit.services import access, perfect_week, side_challenges

log = structlog.get_logger()

ONE_MICROSECOND = timedelta(microseconds=1)


@dataclass(frozen=True)
class DerivedWeek:
    week_index: int
    start_at: datetime
    end_at: datetime  # inclusive
    status: WeekStatus


@dataclass
class WeekLockResult:
    week_id: UUID
    competition_id: UUID
    week_index: int
    status: str = "locked"
    tokens: perfect_week.AwardResult | None = None
    side_challenges: side_challenges.CleanupResult | None = None
    errors: list[str] = field(default_factory=list)


@dataclass
class SweepResult:
    locked: int = 0
    opened: int = 0
    results: list[WeekLockResult] = field(default_factory=list)


# ---------- pure derivation ----------

def zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationFailed(f"timezone: unknown timezone {tz_name!r}")


def local_midnight_utc(d: date, tz_name: str) -> datetime:
    """00:00 local on `d` as a UTC instant."""
    local = datetime(d.year, d.month, d.day, tzinfo=zone(tz_name))
    return local.astimezone(dt_tz.utc)


def week_bounds(start_date: date, week_index: int, tz_name: str = "UTC") -> tuple[datetime, datetime]:
    start = local_midnight_utc(start_date + timedelta(days=7 * week_index), tz_name)
    next_start = local_midnight_utc(start_date + timedelta(days=7 * (week_index + 1)), tz_name)
    return start, next_start - ONE_MICROSECOND


def derive_status(start_at: datetime, end_at: datetime, now: datetime) -> WeekStatus:
    if now < start_at:
        return WeekStatus.UPCOMING
    if now > end_at:
        return WeekStatus.LOCKED
    return WeekStatus.OPEN


def derive_weeks(
    start_date: date, number_of_weeks: int, tz_name: str = "UTC", now: datetime | None = None
) -> list[DerivedWeek]:
    now = now or utcnow()
    weeks = []
    for i in range(number_of_weeks):
        start, end = week_bounds(start_date, i, tz_name)
        weeks.append(DerivedWeek(week_index=i, start_at=start, end_at=end, status=derive_status(start, end, now)))
    return weeks


def competition_end(start_date: date, number_of_weeks: int, tz_name: str = "UTC") -> datetime:
    return week_bounds(start_date, number_of_weeks - 1, tz_name)[1]


def current_week_index(
    start_date: date, number_of_weeks: int, tz_name: str = "UTC", now: datetime | None = None
) -> int | None:
    """Index of the week containing `now`; None before the start or after the end."""
    now = now or utcnow()
    for w in derive_weeks(start_date, number_of_weeks, tz_name, now):
        if w.status == WeekStatus.OPEN:
            return w.week_index
    return None


def is_active(start_date: date, number_of_weeks: int, tz_name: str = "UTC", now: datetime | None = None) -> bool:
    now = now or utcnow()
    return local_midnight_utc(start_date, tz_name) <= now <= competition_end(start_date, number_of_weeks, tz_name)


# ---------- persistence ----------

async def create_weeks(session: AsyncSession, competition: Competition, now: datetime | None = None) -> list[Week]:
    """Insert all weeks of a new competition with their derived status."""
    rows = [
        Week(
            competition_id=competition.id,
            week_index=w.week_index,
            start_at=w.start_at,
            end_at=w.end_at,
            status=w.status,
        )
        for w in derive_weeks(competition.start_date, competition.number_of_weeks, competition.timezone, now)
    ]
    session.add_all(rows)
    return rows


async def list_weeks(session: AsyncSession, competition_id: UUID) -> list[Week]:
    return list((await session.execute(
        select(Week).where(Week.competition_id == competition_id).order_by(Week.week_index.asc())
    )).scalars().all())


async def regenerate_weeks(session: AsyncSession, competition: Competition, now: datetime | None = None) -> list[Week]:
    """
    Recompute boundaries after a start date or timezone change.
    LOCKED weeks keep their status. A week whose new bounds are already in the
    past becomes OPEN so the next sweep locks it and runs the lock effects.
    """
    now = now or utcnow()
    rows = (await session.execute(
        select(Week).where(Week.competition_id == competition.id).execution_options(populate_existing=True)
    )).scalars().all()
    existing = {w.week_index: w for w in rows}
    for d in derive_weeks(competition.start_date, competition.number_of_weeks, competition.timezone, now):
        week = existing.get(d.week_index)
        if week is None:
            week = Week(competition_id=competition.id, week_index=d.week_index, status=WeekStatus.UPCOMING)
            session.add(week)
            existing[d.week_index] = week
        week.start_at, week.end_at = d.start_at, d.end_at
        match week.status:
            case WeekStatus.LOCKED:
                pass
            case WeekStatus.UPCOMING | WeekStatus.OPEN:
                week.status = WeekStatus.OPEN if d.status == WeekStatus.LOCKED else d.status
            case _:
                assert_never(week.status)
    log.info("weeks_regenerated", competition_id=str(competition.id), weeks=competition.number_of_weeks)
    return sorted(existing.values(), key=lambda w: w.week_index)


# ---------- lock effects ----------

async def run_lock_effects(
    session: AsyncSession, competition_id: UUID, week_id: UUID, week_index: int, now: datetime
) -> WeekLockResult:
    """
    Perfect-week award, then side-challenge cleanup, each committed on its own.
    A failure in one is logged and reported; it never undoes the lock.
    """
    result = WeekLockResult(week_id=week_id, competition_id=competition_id, week_index=week_index)
    try:
        result.tokens = await perfect_week.award_idempotent(session, competition_id, week_id)
        await session.commit()
    except Exception as e:
        await session.rollback()
        result.errors.append(f"perfect_week: {e}")
        log.exception("perfect_week_award_failed", competition_id=str(competition_id), week_id=str(week_id))
    try:
        result.side_challenges = await side_challenges.cleanup_on_week_lock(session, competition_id, week_id, now)
        await session.commit()
    except Exception as e:
        await session.rollback()
        result.errors.append(f"side_challenges: {e}")
        log.exception("side_challenge_cleanup_failed", competition_id=str(competition_id), week_id=str(week_id))
    return result


async def sweep(session: AsyncSession, now: datetime | None = None) -> SweepResult:
    """
    Periodic pass over every competition. Commits as it goes:
      1. each OPEN week whose end has passed is locked (committed), then its
         lock effects run best-effort;
      2. UPCOMING weeks that now contain `now` are opened.
    Re-running against an unchanged world writes nothing.
    """
    now = now or utcnow()
    out = SweepResult()

    due = (await session.execute(
        select(Week.id, Week.competition_id, Week.week_index)
        .where(Week.status == WeekStatus.OPEN, Week.end_at < now)
        .order_by(Week.end_at.asc())
    )).all()
    log.info("week_sweep_started", due=len(due))

    for week_id, competition_id, week_index in due:
        try:
            res = await session.execute(
                update(Week)
                .where(Week.id == week_id, Week.status == WeekStatus.OPEN)
                .values(status=WeekStatus.LOCKED, locked_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        except Exception as e:
            await session.rollback()
            log.exception("week_lock_failed", week_id=str(week_id), competition_id=str(competition_id))
            out.results.append(WeekLockResult(
                week_id=week_id, competition_id=competition_id, week_index=week_index, status="error", errors=[str(e)],
            ))
            continue
        if res.rowcount == 0:
            # locked concurrently by someone else
            continue
        out.locked += 1
        log.info("week_locked", week_id=str(week_id), competition_id=str(competition_id), week_index=week_index)
        out.results.append(await run_lock_effects(session, competition_id, week_id, week_index, now))

    res = await session.execute(
        update(Week)
        .where(Week.status == WeekStatus.UPCOMING, Week.start_at <= now, Week.end_at >= now)
        .values(status=WeekStatus.OPEN)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    out.opened = int(res.rowcount or 0)
    if out.opened:
        log.info("weeks_opened", count=out.opened)

    log.info("week_sweep_finished", locked=out.locked, opened=out.opened)
    return out


# ---------- organizer override ----------

async def force_lock(
    session: AsyncSession, competition_id: UUID, week_id: UUID, user_id: UUID, now: datetime | None = None
) -> WeekLockResult:
    """Lock regardless of timing and run the lock effects. Locking again re-runs them idempotently."""
    now = now or utcnow()
    await access.require_organizer(session, competition_id, user_id, "Only organizers can lock/unlock weeks")
    week = await access.get_week_or_404(session, competition_id, week_id)
    await session.refresh(week, with_for_update=True)
    match week.status:
        case WeekStatus.UPCOMING | WeekStatus.OPEN:
            week.status = WeekStatus.LOCKED
            week.locked_at = now
        case WeekStatus.LOCKED:
            pass
        case _:
            assert_never(week.status)
    week_index = week.week_index
    await session.commit()
    log.info("week_locked", week_id=str(week_id), competition_id=str(competition_id), week_index=week_index,
             forced_by=str(user_id))
    return await run_lock_effects(session, competition_id, week_id, week_index, now)


async def force_unlock(session: AsyncSession, competition_id: UUID, week_id: UUID, user_id: UUID) -> Week:
    """Reopen a week. No side effects: awarded tokens and settled wagers stay as they are."""
    await access.require_organizer(session, competition_id, user_id, "Only organizers can lock/unlock weeks")
    week = await access.get_week_or_404(session, competition_id, week_id)
    await session.refresh(week, with_for_update=True)
    week.status = WeekStatus.OPEN
    week.locked_at = None
    log.info("week_unlocked", week_id=str(week_id), competition_id=str(competition_id), forced_by=str(user_id))
    return week
