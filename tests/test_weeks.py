from datetime import date, timedelta
import pytest
from sqlalchemy import select

from conftest import grant, make_competition, make_user, utc
from phifit.errors import NotAuthorized, ValidationFailed
from phifit.models.side_challenge import MetricType, SideChallenge, SideChallengeStatus
from phifit.models.week import Week, WeekStatus
from phifit.services import ledger, perfect_week, side_challenges, tasks, weeks


# ---------- pure derivation ----------

def test_derive_weeks_utc_boundaries_and_status():
    now = utc(2025, 1, 10, 12)
    derived = weeks.derive_weeks(date(2025, 1, 6), 3, "UTC", now)
    assert [w.week_index for w in derived] == [0, 1, 2]
    assert derived[0].start_at == utc(2025, 1, 6)
    assert derived[0].end_at == utc(2025, 1, 12, 23, 59, 59, 999999)
    assert derived[1].start_at == utc(2025, 1, 13)
    assert [w.status for w in derived] == [WeekStatus.OPEN, WeekStatus.UPCOMING, WeekStatus.UPCOMING]


def test_end_is_inclusive():
    start, end = weeks.week_bounds(date(2025, 1, 6), 0)
    assert weeks.derive_status(start, end, end) == WeekStatus.OPEN
    assert weeks.derive_status(start, end, end + timedelta(microseconds=1)) == WeekStatus.LOCKED
    assert weeks.derive_status(start, end, start - timedelta(microseconds=1)) == WeekStatus.UPCOMING


def test_timezone_boundaries_are_local_midnights():
    # New York is UTC-5 in January
    start, end = weeks.week_bounds(date(2025, 1, 6), 0, "America/New_York")
    assert start == utc(2025, 1, 6, 5)
    assert end == utc(2025, 1, 13, 4, 59, 59, 999999)


def test_dst_week_is_shorter_in_utc():
    # US spring-forward on 2025-03-09: the week spanning it is 167 hours long
    start, end = weeks.week_bounds(date(2025, 3, 3), 0, "America/New_York")
    assert (end - start) + timedelta(microseconds=1) == timedelta(hours=167)


def test_unknown_timezone_rejected():
    with pytest.raises(ValidationFailed):
        weeks.derive_weeks(date(2025, 1, 6), 1, "Mars/Olympus_Mons")


def test_current_week_and_activity():
    start = date(2025, 1, 6)
    assert weeks.current_week_index(start, 4, now=utc(2025, 1, 5)) is None
    assert weeks.current_week_index(start, 4, now=utc(2025, 1, 20)) == 2
    assert weeks.current_week_index(start, 4, now=utc(2025, 2, 3)) is None
    assert weeks.competition_end(start, 4) == utc(2025, 2, 2, 23, 59, 59, 999999)
    assert weeks.is_active(start, 4, now=utc(2025, 2, 2, 23))
    assert not weeks.is_active(start, 4, now=utc(2025, 2, 3))


# ---------- sweep ----------

async def _weeks(session, competition_id):
    return list((await session.execute(
        select(Week).where(Week.competition_id == competition_id)
        .order_by(Week.week_index).execution_options(populate_existing=True)
    )).scalars().all())


@pytest.mark.asyncio
async def test_sweep_locks_and_opens_and_is_idempotent(session):
    org = await make_user(session, "org")
    comp = await make_competition(session, org, start_date=date(2025, 1, 6), number_of_weeks=3, now=utc(2025, 1, 8))
    await session.commit()
    assert [w.status for w in await _weeks(session, comp.id)] == [WeekStatus.OPEN, WeekStatus.UPCOMING, WeekStatus.UPCOMING]

    now = utc(2025, 1, 14)
    first = await weeks.sweep(session, now)
    assert (first.locked, first.opened) == (1, 1)
    assert first.results[0].week_index == 0
    assert first.results[0].errors == []

    rows = await _weeks(session, comp.id)
    assert [w.status for w in rows] == [WeekStatus.LOCKED, WeekStatus.OPEN, WeekStatus.UPCOMING]
    assert rows[0].locked_at == now

    second = await weeks.sweep(session, now)
    assert (second.locked, second.opened) == (0, 0)
    again = await _weeks(session, comp.id)
    assert [(w.status, w.locked_at) for w in again] == [(w.status, w.locked_at) for w in rows]


@pytest.mark.asyncio
async def test_force_lock_and_unlock(session):
    org = await make_user(session, "org")
    other = await make_user(session, "other")
    comp = await make_competition(session, org, other, start_date=date(2025, 1, 6), number_of_weeks=2,
                                  now=utc(2025, 1, 8))
    await session.commit()
    week = (await _weeks(session, comp.id))[1]
    assert week.status == WeekStatus.UPCOMING

    with pytest.raises(NotAuthorized):
        await weeks.force_lock(session, comp.id, week.id, other.id)

    result = await weeks.force_lock(session, comp.id, week.id, org.id, now=utc(2025, 1, 9))
    assert result.week_index == 1
    assert result.tokens is not None and result.side_challenges is not None
    week = (await _weeks(session, comp.id))[1]
    assert week.status == WeekStatus.LOCKED
    assert week.locked_at == utc(2025, 1, 9)

    # locking again re-runs the effects without changing anything
    again = await weeks.force_lock(session, comp.id, week.id, org.id, now=utc(2025, 1, 10))
    assert again.tokens.awarded == 0
    assert (await _weeks(session, comp.id))[1].locked_at == utc(2025, 1, 9)

    await weeks.force_unlock(session, comp.id, week.id, org.id)
    await session.commit()
    week = (await _weeks(session, comp.id))[1]
    assert week.status == WeekStatus.OPEN
    assert week.locked_at is None


@pytest.mark.asyncio
async def test_sweep_never_reopens_locked_week(session):
    org = await make_user(session, "org")
    comp = await make_competition(session, org, start_date=date(2025, 1, 6), number_of_weeks=2, now=utc(2025, 1, 8))
    await session.commit()
    week0 = (await _weeks(session, comp.id))[0]
    await weeks.force_lock(session, comp.id, week0.id, org.id, now=utc(2025, 1, 8))

    await weeks.sweep(session, utc(2025, 1, 9))
    assert (await _weeks(session, comp.id))[0].status == WeekStatus.LOCKED


@pytest.mark.asyncio
async def test_regenerate_keeps_locked_and_never_writes_locked(session):
    org = await make_user(session, "org")
    comp = await make_competition(session, org, start_date=date(2025, 1, 6), number_of_weeks=3, now=utc(2025, 1, 8))
    await session.commit()
    await weeks.sweep(session, utc(2025, 1, 14))  # week 0 locked, week 1 open

    comp.start_date = date(2024, 12, 23)
    await weeks.regenerate_weeks(session, comp, now=utc(2025, 1, 14))
    await session.commit()

    rows = await _weeks(session, comp.id)
    assert rows[0].status == WeekStatus.LOCKED
    assert rows[0].start_at == utc(2024, 12, 23)
    # week 1 now ended in the past: left OPEN for the sweep to lock
    assert rows[1].status == WeekStatus.OPEN
    assert rows[1].end_at < utc(2025, 1, 14)
    assert rows[2].status == WeekStatus.OPEN

    result = await weeks.sweep(session, utc(2025, 1, 14))
    assert result.locked == 2
    assert all(w.status == WeekStatus.LOCKED for w in await _weeks(session, comp.id))


# ---------- lock effect failures ----------

async def _locked_fixtures(session):
    """Two competitions whose week 0 ends before the sweep; each has one perfect week and one open wager."""
    created = {}
    for name in ("good", "bad"):
        org = await make_user(session, f"{name}-org")
        rival = await make_user(session, f"{name}-rival")
        comp = await make_competition(session, org, rival, name=f"{name} league", start_date=date(2025, 1, 6),
                                      number_of_weeks=2, now=utc(2025, 1, 8))
        task = await tasks.create_task(session, comp.id, org.id, name="Walk")
        week0 = (await weeks.list_weeks(session, comp.id))[0]
        await tasks.toggle_own_completion(session, comp.id, week0.id, task.id, org.id, True, now=utc(2025, 1, 8))
        grant(session, comp, org, 2)
        grant(session, comp, rival, 2)
        sc = await side_challenges.propose(
            session, competition_id=comp.id, week_id=week0.id, creator_id=org.id, opponent_id=rival.id,
            title="Steps", rules="Most steps", metric_type=MetricType.HIGHER_WINS, unit="steps",
            stake_tokens=1, now=utc(2025, 1, 8),
        )
        created[name] = (comp.id, org.id, sc.id)
    await session.commit()
    return created["good"], created["bad"]


async def _wager_status(session, sc_id) -> SideChallengeStatus:
    return (await session.get(SideChallenge, sc_id, populate_existing=True)).status


@pytest.mark.asyncio
async def test_sweep_keeps_lock_when_token_award_fails(session, monkeypatch):
    (good, good_org, good_sc), (bad, bad_org, bad_sc) = await _locked_fixtures(session)
    real_award = perfect_week.award_idempotent

    async def failing_award(session, competition_id, week_id):
        if competition_id == bad:
            raise RuntimeError("ledger unavailable")
        return await real_award(session, competition_id, week_id)

    monkeypatch.setattr(perfect_week, "award_idempotent", failing_award)
    result = await weeks.sweep(session, utc(2025, 1, 14))

    assert result.locked == 2
    by_comp = {r.competition_id: r for r in result.results}
    assert by_comp[bad].errors == ["perfect_week: ledger unavailable"]
    assert by_comp[bad].tokens is None
    # the wager cleanup still ran for the failing week
    assert by_comp[bad].side_challenges.voided == 1
    assert by_comp[good].errors == []
    assert by_comp[good].tokens.awarded == 1

    for cid in (good, bad):
        assert (await _weeks(session, cid))[0].status == WeekStatus.LOCKED
    assert await _wager_status(session, bad_sc) == SideChallengeStatus.VOID
    # 2 granted, stake refunded, plus the perfect-week token where it was awarded
    assert await ledger.balance(session, good, good_org) == 3
    assert await ledger.balance(session, bad, bad_org) == 2


@pytest.mark.asyncio
async def test_sweep_keeps_lock_when_wager_cleanup_fails(session, monkeypatch):
    (good, good_org, good_sc), (bad, bad_org, bad_sc) = await _locked_fixtures(session)
    real_cleanup = side_challenges.cleanup_on_week_lock

    async def failing_cleanup(session, competition_id, week_id, now=None):
        if competition_id == bad:
            raise RuntimeError("cleanup crashed")
        return await real_cleanup(session, competition_id, week_id, now)

    monkeypatch.setattr(side_challenges, "cleanup_on_week_lock", failing_cleanup)
    result = await weeks.sweep(session, utc(2025, 1, 14))

    assert result.locked == 2
    by_comp = {r.competition_id: r for r in result.results}
    assert by_comp[bad].errors == ["side_challenges: cleanup crashed"]
    assert by_comp[bad].side_challenges is None
    assert by_comp[bad].tokens.awarded == 1
    assert by_comp[good].errors == []
    assert by_comp[good].side_challenges.voided == 1

    for cid in (good, bad):
        assert (await _weeks(session, cid))[0].status == WeekStatus.LOCKED
    assert await _wager_status(session, good_sc) == SideChallengeStatus.VOID
    assert await _wager_status(session, bad_sc) == SideChallengeStatus.PROPOSED
    # the token awarded before the failure stays
    assert await ledger.balance(session, bad, bad_org) == 2
