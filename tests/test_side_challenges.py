import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
import pytest
from sqlalchemy import select, func

from conftest import grant, make_competition, make_user, utc
from phifit.errors import InsufficientBalance, NotAuthorized, NotFound, StateConflict, ValidationFailed
from phifit.models.competition import Participant
from phifit.models.ledger import TokenLedger
from phifit.models.side_challenge import MetricType, SideChallenge, SideChallengeStatus, SideChallengeSubmission
from phifit.services import ledger, side_challenges, weeks
from phifit.services.side_challenges import Outcome, calculate_winner

NOW = utc(2025, 1, 8)
CREATOR, OPPONENT = uuid.uuid4(), uuid.uuid4()


# ---------- winner calculation ----------

def test_higher_wins():
    r = calculate_winner(MetricType.HIGHER_WINS, None, Decimal("1000"), Decimal("1500"), CREATOR, OPPONENT)
    assert (r.outcome, r.winner_user_id) == (Outcome.OPPONENT, OPPONENT)
    assert r.reason == "Higher value wins: 1500 > 1000"


def test_lower_wins():
    r = calculate_winner(MetricType.LOWER_WINS, None, Decimal("25.5"), Decimal("27"), CREATOR, OPPONENT)
    assert (r.outcome, r.winner_user_id) == (Outcome.CREATOR, CREATOR)
    assert r.reason == "Lower value wins: 25.5 < 27"


def test_tie():
    r = calculate_winner(MetricType.HIGHER_WINS, None, Decimal("1000.0000"), Decimal("1000"), CREATOR, OPPONENT)
    assert (r.outcome, r.winner_user_id) == (Outcome.TIE, None)
    assert r.reason == "Tie: Both achieved 1000"


def test_target_threshold_closest_wins():
    r = calculate_winner(MetricType.TARGET_THRESHOLD, Decimal("10"), Decimal("12"), Decimal("9"), CREATOR, OPPONENT)
    assert r.outcome == Outcome.OPPONENT
    assert r.reason == "Closest to target 10: Opponent 9 (distance 1) vs Creator 12 (distance 2)"
    tie = calculate_winner(MetricType.TARGET_THRESHOLD, Decimal("10"), Decimal("8"), Decimal("12"), CREATOR, OPPONENT)
    assert tie.outcome == Outcome.TIE
    assert tie.reason == "Tie: Both equally distant from target 10"


def test_target_threshold_requires_target():
    with pytest.raises(ValidationFailed):
        calculate_winner(MetricType.TARGET_THRESHOLD, None, Decimal("1"), Decimal("2"), CREATOR, OPPONENT)


# ---------- engine ----------

async def _setup(session, a_tokens=5, b_tokens=5):
    a = await make_user(session, "A")
    b = await make_user(session, "B")
    comp = await make_competition(session, a, b, start_date=date(2025, 1, 6), number_of_weeks=2, now=NOW)
    grant(session, comp, a, a_tokens)
    grant(session, comp, b, b_tokens)
    await session.commit()
    week0 = (await weeks.list_weeks(session, comp.id))[0]
    return comp, week0, a, b


async def _propose(session, comp, week, creator, opponent, stake=3, **kwargs):
    kwargs.setdefault("metric_type", MetricType.HIGHER_WINS)
    sc = await side_challenges.propose(
        session, competition_id=comp.id, week_id=week.id, creator_id=creator.id, opponent_id=opponent.id,
        title="Step battle", rules="Most steps on Saturday", unit="steps", stake_tokens=stake,
        now=kwargs.pop("now", NOW), **kwargs,
    )
    await session.commit()
    return sc


async def _net(session, sc_id, user_id) -> int:
    total = await session.scalar(
        select(func.coalesce(func.sum(TokenLedger.delta), 0))
        .where(TokenLedger.related_entity_id == sc_id, TokenLedger.user_id == user_id)
    )
    return int(total)


async def _reload(session, sc_id) -> SideChallenge:
    return await session.get(SideChallenge, sc_id, populate_existing=True)


@pytest.mark.asyncio
async def test_decisive_resolution_moves_stake(session):
    comp, week0, a, b = await _setup(session)
    sc = await _propose(session, comp, week0, a, b)
    assert (await ledger.available_balance(session, comp.id, a.id)).available == 2

    await side_challenges.accept(session, sc.id, b.id, now=NOW)
    await session.commit()
    assert (await ledger.available_balance(session, comp.id, b.id)).available == 2

    sc = await side_challenges.submit_result(session, sc.id, a.id, Decimal("1000"), now=NOW)
    await session.commit()
    assert sc.status == SideChallengeStatus.ACCEPTED

    sc = await side_challenges.submit_result(session, sc.id, b.id, Decimal("1500"), now=NOW)
    await session.commit()
    assert sc.status == SideChallengeStatus.RESOLVED
    assert sc.winner_user_id == b.id
    assert sc.resolved_at == NOW
    assert sc.resolution_note == "Auto-resolved: Higher value wins: 1500 > 1000"

    assert await _net(session, sc.id, b.id) == 3
    assert await _net(session, sc.id, a.id) == -3
    assert await ledger.balance(session, comp.id, b.id) == 8
    assert await ledger.balance(session, comp.id, a.id) == 2
    assert (await ledger.available_balance(session, comp.id, a.id)).staked == 0


@pytest.mark.asyncio
async def test_tie_refunds_both(session):
    comp, week0, a, b = await _setup(session)
    sc = await _propose(session, comp, week0, a, b)
    await side_challenges.accept(session, sc.id, b.id, now=NOW)
    await side_challenges.submit_result(session, sc.id, a.id, Decimal("1000"), now=NOW)
    sc = await side_challenges.submit_result(session, sc.id, b.id, Decimal("1000"), now=NOW)
    await session.commit()

    assert sc.status == SideChallengeStatus.RESOLVED
    assert sc.winner_user_id is None
    assert await _net(session, sc.id, a.id) == 0
    assert await _net(session, sc.id, b.id) == 0
    assert await ledger.balance(session, comp.id, a.id) == 5


@pytest.mark.asyncio
async def test_unanswered_wager_voided_on_week_lock(session):
    comp, week0, a, b = await _setup(session)
    sc = await _propose(session, comp, week0, a, b)

    result = await weeks.sweep(session, utc(2025, 1, 14))
    assert result.results[0].side_challenges.voided == 1

    sc = await _reload(session, sc.id)
    assert sc.status == SideChallengeStatus.VOID
    assert sc.resolution_note == side_challenges.LOCK_VOID_NOTE
    assert await _net(session, sc.id, a.id) == 0
    assert await _net(session, sc.id, b.id) == 0
    assert await ledger.balance(session, comp.id, b.id) == 5


@pytest.mark.asyncio
async def test_week_lock_voids_wagers_missing_a_result(session):
    comp, week0, a, b = await _setup(session, a_tokens=10, b_tokens=10)
    c = await make_user(session, "C")
    session.add(Participant(competition_id=comp.id, user_id=c.id))
    grant(session, comp, c, 10)
    await session.commit()

    done = await _propose(session, comp, week0, a, b)
    await side_challenges.accept(session, done.id, b.id, now=NOW)
    half = await _propose(session, comp, week0, a, c, stake=2)
    await side_challenges.accept(session, half.id, c.id, now=NOW)
    await session.commit()

    await side_challenges.submit_result(session, half.id, a.id, Decimal("5"), now=NOW)
    await session.commit()

    cleanup = await side_challenges.cleanup_on_week_lock(session, comp.id, week0.id, now=utc(2025, 1, 13))
    await session.commit()
    assert (cleanup.resolved, cleanup.voided, cleanup.failed) == (0, 2, 0)
    assert await _net(session, half.id, c.id) == 0
    assert await _net(session, half.id, a.id) == 0
    assert await _net(session, done.id, b.id) == 0


@pytest.mark.asyncio
async def test_cleanup_resolves_when_both_results_are_in(session):
    comp, week0, a, b = await _setup(session)
    sc = await _propose(session, comp, week0, a, b)
    await side_challenges.accept(session, sc.id, b.id, now=NOW)
    await session.commit()

    # results recorded without going through submit_result, so nothing resolved them yet
    session.add_all([
        SideChallengeSubmission(side_challenge_id=sc.id, user_id=a.id, value_number=Decimal("3"), value_display="3 steps"),
        SideChallengeSubmission(side_challenge_id=sc.id, user_id=b.id, value_number=Decimal("4"), value_display="4 steps"),
    ])
    await session.commit()

    cleanup = await side_challenges.cleanup_on_week_lock(session, comp.id, week0.id, now=utc(2025, 1, 13))
    await session.commit()
    assert cleanup.resolved == 1
    sc = await _reload(session, sc.id)
    assert sc.winner_user_id == b.id
    assert sc.resolution_note.startswith("Auto-resolved on week lock: ")
    assert await _net(session, sc.id, b.id) == 3


@pytest.mark.asyncio
async def test_decline_refunds_creator(session):
    comp, week0, a, b = await _setup(session)
    sc = await _propose(session, comp, week0, a, b)

    with pytest.raises(NotAuthorized):
        await side_challenges.decline(session, sc.id, a.id)
    sc = await side_challenges.decline(session, sc.id, b.id)
    await session.commit()
    assert sc.status == SideChallengeStatus.DECLINED
    assert sc.resolution_note == "Declined by opponent"
    assert await _net(session, sc.id, a.id) == 0

    with pytest.raises(StateConflict):
        await side_challenges.accept(session, sc.id, b.id, now=NOW)


@pytest.mark.asyncio
async def test_void_before_and_after_accept(session):
    comp, week0, a, b = await _setup(session)
    c = await make_user(session, "C")
    session.add(Participant(competition_id=comp.id, user_id=c.id))
    grant(session, comp, c, 5)
    await session.commit()

    proposed = await _propose(session, comp, week0, a, b)
    accepted = await _propose(session, comp, week0, c, b, stake=2)
    await side_challenges.accept(session, accepted.id, b.id, now=NOW)
    await session.commit()

    with pytest.raises(NotAuthorized):
        await side_challenges.void(session, proposed.id, b.id, "cheating")
    with pytest.raises(ValidationFailed):
        await side_challenges.void(session, proposed.id, a.id, "  ")

    proposed = await side_challenges.void(session, proposed.id, a.id, "wrong week")
    accepted = await side_challenges.void(session, accepted.id, a.id, "duplicate")
    await session.commit()

    assert proposed.resolution_note == "Voided by organizer: wrong week"
    assert accepted.status == SideChallengeStatus.VOID
    for sc, user in ((proposed, a), (proposed, b), (accepted, c), (accepted, b)):
        assert await _net(session, sc.id, user.id) == 0

    with pytest.raises(StateConflict) as exc:
        await side_challenges.void(session, accepted.id, a.id, "again")
    assert exc.value.detail == "Challenge is already voided"


@pytest.mark.asyncio
async def test_cannot_void_resolved(session):
    comp, week0, a, b = await _setup(session)
    sc = await _propose(session, comp, week0, a, b)
    await side_challenges.accept(session, sc.id, b.id, now=NOW)
    await side_challenges.submit_result(session, sc.id, a.id, Decimal("1"), now=NOW)
    await side_challenges.submit_result(session, sc.id, b.id, Decimal("2"), now=NOW)
    await session.commit()
    with pytest.raises(StateConflict) as exc:
        await side_challenges.void(session, sc.id, a.id, "late")
    assert exc.value.detail == "Cannot void a resolved challenge"


@pytest.mark.asyncio
async def test_accept_rules(session):
    comp, week0, a, b = await _setup(session, b_tokens=2)
    sc = await _propose(session, comp, week0, a, b)

    with pytest.raises(NotAuthorized):
        await side_challenges.accept(session, sc.id, a.id, now=NOW)
    with pytest.raises(StateConflict) as exc:
        await side_challenges.accept(session, sc.id, b.id, now=NOW + timedelta(hours=49))
    assert exc.value.detail == "Challenge proposal has expired"
    with pytest.raises(InsufficientBalance):
        await side_challenges.accept(session, sc.id, b.id, now=NOW)
    with pytest.raises(NotFound):
        await side_challenges.accept(session, uuid.uuid4(), b.id, now=NOW)


@pytest.mark.asyncio
async def test_propose_rules(session):
    comp, week0, a, b = await _setup(session)
    outsider = await make_user(session, "Out")
    await session.commit()

    with pytest.raises(NotAuthorized):
        await _propose(session, comp, week0, a, a)
    with pytest.raises(ValidationFailed):
        await _propose(session, comp, week0, a, outsider)
    with pytest.raises(NotAuthorized):
        await _propose(session, comp, week0, outsider, a)
    with pytest.raises(ValidationFailed):
        await _propose(session, comp, week0, a, b, stake=0)
    with pytest.raises(ValidationFailed):
        await _propose(session, comp, week0, a, b, metric_type=MetricType.TARGET_THRESHOLD)
    with pytest.raises(ValidationFailed):
        await _propose(session, comp, week0, a, b, expires_at=NOW - timedelta(minutes=1))
    with pytest.raises(ValidationFailed):
        await _propose(session, comp, week0, a, b, expires_at=datetime(2025, 1, 9, 12))

    await _propose(session, comp, week0, a, b, stake=1)
    with pytest.raises(StateConflict):
        await _propose(session, comp, week0, b, a, stake=1)


@pytest.mark.asyncio
async def test_no_proposals_on_locked_week(session):
    comp, week0, a, b = await _setup(session)
    await weeks.force_lock(session, comp.id, week0.id, a.id, now=NOW)
    with pytest.raises(StateConflict):
        await _propose(session, comp, week0, a, b)


@pytest.mark.asyncio
async def test_submit_rules(session):
    comp, week0, a, b = await _setup(session)
    outsider = await make_user(session, "Out")
    await session.commit()
    sc = await _propose(session, comp, week0, a, b)

    with pytest.raises(StateConflict):
        await side_challenges.submit_result(session, sc.id, a.id, Decimal("1"), now=NOW)
    await side_challenges.accept(session, sc.id, b.id, now=NOW)
    await session.commit()

    with pytest.raises(ValidationFailed):
        await side_challenges.submit_result(session, sc.id, a.id, Decimal("-1"), now=NOW)
    with pytest.raises(NotAuthorized):
        await side_challenges.submit_result(session, sc.id, outsider.id, Decimal("1"), now=NOW)

    sc = await side_challenges.submit_result(session, sc.id, a.id, Decimal("1500"), now=NOW)
    await session.commit()
    with pytest.raises(StateConflict) as exc:
        await side_challenges.submit_result(session, sc.id, a.id, Decimal("1600"), now=NOW)
    assert exc.value.detail == "You have already submitted your result"

    subs = (await side_challenges.submissions_for(session, [sc.id]))[sc.id]
    assert [s.value_display for s in subs] == ["1500 steps"]


@pytest.mark.asyncio
async def test_list_for_week_filters_mine(session):
    comp, week0, a, b = await _setup(session)
    c = await make_user(session, "C")
    session.add(Participant(competition_id=comp.id, user_id=c.id))
    await session.commit()
    sc = await _propose(session, comp, week0, a, b)

    assert [x.id for x in await side_challenges.list_for_week(session, comp.id, week0.id)] == [sc.id]
    assert [x.id for x in await side_challenges.list_for_week(session, comp.id, week0.id, b.id)] == [sc.id]
    assert await side_challenges.list_for_week(session, comp.id, week0.id, c.id) == []
