import random
from datetime import date
import pytest
from sqlalchemy.exc import IntegrityError

from conftest import grant, make_competition, make_user, utc
from phifit.errors import InsufficientBalance, ValidationFailed
from phifit.models.competition import Participant
from phifit.models.ledger import LedgerReason
from phifit.models.side_challenge import MetricType
from phifit.services import ledger, side_challenges, weeks


async def _setup(session):
    a = await make_user(session, "A")
    b = await make_user(session, "B")
    comp = await make_competition(session, a, b, start_date=date(2025, 1, 6), number_of_weeks=2, now=utc(2025, 1, 8))
    week0 = (await weeks.list_weeks(session, comp.id))[0]
    return comp, week0, a, b


def _propose(session, comp, week, creator, opponent, stake):
    return side_challenges.propose(
        session, competition_id=comp.id, week_id=week.id, creator_id=creator.id, opponent_id=opponent.id,
        title="Steps", rules="Most steps", metric_type=MetricType.HIGHER_WINS, unit="steps",
        stake_tokens=stake, now=utc(2025, 1, 8),
    )


@pytest.mark.asyncio
async def test_balance_is_sum_of_deltas(session):
    comp, week0, a, _ = await _setup(session)
    deltas = [3, -1, 4, -1, 5, -2, 6]
    random.Random(7).shuffle(deltas)
    for d in deltas:
        ledger.append(
            session, competition_id=comp.id, user_id=a.id, delta=d,
            reason=LedgerReason.SIDE_CHALLENGE_STAKE if d < 0 else LedgerReason.SIDE_CHALLENGE_WIN,
        )
    await session.commit()
    assert await ledger.balance(session, comp.id, a.id) == sum(deltas)


@pytest.mark.asyncio
async def test_zero_delta_rejected(session):
    comp, _, a, _ = await _setup(session)
    with pytest.raises(ValueError):
        ledger.append(session, competition_id=comp.id, user_id=a.id, delta=0, reason=LedgerReason.SIDE_CHALLENGE_WIN)


@pytest.mark.asyncio
async def test_sign_convention_enforced_by_database(session):
    comp, _, a, _ = await _setup(session)
    await session.commit()
    ledger.append(session, competition_id=comp.id, user_id=a.id, delta=2, reason=LedgerReason.SIDE_CHALLENGE_STAKE)
    with pytest.raises(IntegrityError):
        await session.commit()
    await session.rollback()


@pytest.mark.asyncio
async def test_one_perfect_week_token_per_week(session):
    comp, week0, a, _ = await _setup(session)
    await session.commit()
    for _ in range(2):
        ledger.append(session, competition_id=comp.id, user_id=a.id, week_id=week0.id, delta=1,
                      reason=LedgerReason.PERFECT_WEEK_EARNED)
    with pytest.raises(IntegrityError):
        await session.commit()
    await session.rollback()


@pytest.mark.asyncio
async def test_available_balance_tracks_stakes(session):
    comp, week0, a, b = await _setup(session)
    grant(session, comp, a, 5)
    grant(session, comp, b, 4)
    await session.commit()

    sc = await _propose(session, comp, week0, a, b, 3)
    await session.commit()
    assert await ledger.available_balance(session, comp.id, a.id) == ledger.Availability(total=5, staked=3, available=2)
    # opponent has not staked yet
    assert await ledger.available_balance(session, comp.id, b.id) == ledger.Availability(total=4, staked=0, available=4)

    await side_challenges.accept(session, sc.id, b.id, now=utc(2025, 1, 8))
    await session.commit()
    assert await ledger.available_balance(session, comp.id, b.id) == ledger.Availability(total=4, staked=3, available=1)


@pytest.mark.asyncio
async def test_second_stake_over_balance_is_rejected(session):
    comp, week0, a, b = await _setup(session)
    c = await make_user(session, "C")
    session.add(Participant(competition_id=comp.id, user_id=c.id))
    grant(session, comp, a, 5)
    await session.commit()

    await _propose(session, comp, week0, a, b, 3)
    await session.commit()
    with pytest.raises(InsufficientBalance) as exc:
        await _propose(session, comp, week0, a, c, 3)
    assert exc.value.status_code == 402
    assert exc.value.context == {"required": 3, "available": 2, "staked": 3}
    competition_id, user_id = comp.id, a.id
    await session.rollback()

    # nothing of the failed attempt landed
    assert await ledger.balance(session, competition_id, user_id) == 2
    assert (await ledger.available_balance(session, competition_id, user_id)).staked == 3


@pytest.mark.asyncio
async def test_ensure_can_stake_rejects_non_positive(session):
    comp, _, a, _ = await _setup(session)
    with pytest.raises(ValidationFailed):
        await ledger.ensure_can_stake(session, comp.id, a.id, 0)


@pytest.mark.asyncio
async def test_history_newest_first_with_week_index(session):
    comp, week0, a, _ = await _setup(session)
    ledger.append(session, competition_id=comp.id, user_id=a.id, delta=1, reason=LedgerReason.PERFECT_WEEK_EARNED,
                  week_id=week0.id)
    await session.commit()
    grant(session, comp, a, 2)
    await session.commit()

    entries = await ledger.history(session, comp.id, a.id)
    assert [e.delta for e in entries] == [2, 1]
    assert [e.week_index for e in entries] == [None, 0]


@pytest.mark.asyncio
async def test_token_leaderboard_ranks_all_participants(session):
    comp, _, a, b = await _setup(session)
    grant(session, comp, b, 3)
    await session.commit()
    rows = await ledger.token_leaderboard(session, comp.id)
    assert [(r.display_name, r.points, r.rank) for r in rows] == [("B", 3, 1), ("A", 0, 2)]
    assert len(await ledger.token_leaderboard(session, comp.id, limit=1)) == 1
