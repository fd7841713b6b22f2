"""
Head-to-head token wagers scoped to one week.

    PROPOSED -> ACCEPTED -> (both submit) -> RESOLVED
    PROPOSED -> DECLINED
    PROPOSED | ACCEPTED -> VOID   (organizer, or week lock cleanup)

Creator stakes on proposal, opponent on acceptance. Every status change and
the ledger entries it implies are written in the caller's transaction; nothing
here commits.
"""
from __future__ import annotations
import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import assert_never
from uuid import UUID
import structlog
from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from phifit.config import settings
from phifit.db import utcnow
from phifit.errors import NotAuthorized, NotFound, StateConflict, ValidationFailed
from phifit.models.ledger import LedgerReason
from phifit.models.side_challenge import (
    OPEN_STATUSES, MetricType, SideChallenge, SideChallengeStatus, SideChallengeSubmission,
)
from phifit.models.week import Week, WeekStatus
from phifit.services import access, ledger

log = structlog.get_logger()

LOCK_VOID_NOTE = "Voided due to week lock with incomplete submissions"


class Outcome(str, enum.Enum):
    CREATOR = "creator"
    OPPONENT = "opponent"
    TIE = "tie"


@dataclass(frozen=True)
class WinnerCalculation:
    outcome: Outcome
    winner_user_id: UUID | None
    reason: str


@dataclass(frozen=True)
class CleanupResult:
    resolved: int = 0
    voided: int = 0
    failed: int = 0


def _fmt(value: Decimal) -> str:
    # 1500.0000 -> "1500", 2.5000 -> "2.5"
    return format(Decimal(value).normalize(), "f")


def calculate_winner(
    metric_type: MetricType,
    target_value: Decimal | None,
    creator_value: Decimal,
    opponent_value: Decimal,
    creator_user_id: UUID,
    opponent_user_id: UUID,
) -> WinnerCalculation:
    c, o = Decimal(str(creator_value)), Decimal(str(opponent_value))

    match metric_type:
        case MetricType.HIGHER_WINS:
            if c > o:
                return WinnerCalculation(Outcome.CREATOR, creator_user_id, f"Higher value wins: {_fmt(c)} > {_fmt(o)}")
            if o > c:
                return WinnerCalculation(Outcome.OPPONENT, opponent_user_id, f"Higher value wins: {_fmt(o)} > {_fmt(c)}")
            return WinnerCalculation(Outcome.TIE, None, f"Tie: Both achieved {_fmt(c)}")
        case MetricType.LOWER_WINS:
            if c < o:
                return WinnerCalculation(Outcome.CREATOR, creator_user_id, f"Lower value wins: {_fmt(c)} < {_fmt(o)}")
            if o < c:
                return WinnerCalculation(Outcome.OPPONENT, opponent_user_id, f"Lower value wins: {_fmt(o)} < {_fmt(c)}")
            return WinnerCalculation(Outcome.TIE, None, f"Tie: Both achieved {_fmt(c)}")
        case MetricType.TARGET_THRESHOLD:
            if target_value is None:
                raise ValidationFailed("target_value is required for TARGET_THRESHOLD metric type")
            t = Decimal(str(target_value))
            dc, do = abs(c - t), abs(o - t)
            if dc < do:
                return WinnerCalculation(
                    Outcome.CREATOR, creator_user_id,
                    f"Closest to target {_fmt(t)}: Creator {_fmt(c)} (distance {_fmt(dc)}) "
                    f"vs Opponent {_fmt(o)} (distance {_fmt(do)})",
                )
            if do < dc:
                return WinnerCalculation(
                    Outcome.OPPONENT, opponent_user_id,
                    f"Closest to target {_fmt(t)}: Opponent {_fmt(o)} (distance {_fmt(do)}) "
                    f"vs Creator {_fmt(c)} (distance {_fmt(dc)})",
                )
            return WinnerCalculation(Outcome.TIE, None, f"Tie: Both equally distant from target {_fmt(t)}")
        case _:
            assert_never(metric_type)


# ---------- helpers ----------

async def _locked_for_update(session: AsyncSession, side_challenge_id: UUID) -> SideChallenge:
    sc = await session.get(SideChallenge, side_challenge_id, with_for_update=True, populate_existing=True)
    if not sc:
        raise NotFound("Side challenge not found")
    return sc


async def _submissions(session: AsyncSession, side_challenge_id: UUID) -> list[SideChallengeSubmission]:
    return list((await session.execute(
        select(SideChallengeSubmission)
        .where(SideChallengeSubmission.side_challenge_id == side_challenge_id)
        .order_by(SideChallengeSubmission.submitted_at.asc())
    )).scalars().all())


def _pair(sc: SideChallenge, subs: list[SideChallengeSubmission]):
    by_user = {s.user_id: s for s in subs}
    return by_user.get(sc.created_by_user_id), by_user.get(sc.opponent_user_id)


def _refund(session: AsyncSession, sc: SideChallenge, user_id: UUID, reason: LedgerReason) -> None:
    ledger.append(
        session,
        competition_id=sc.competition_id,
        user_id=user_id,
        week_id=sc.week_id,
        delta=sc.stake_tokens,
        reason=reason,
        related_entity_id=sc.id,
    )


def _settle(session: AsyncSession, sc: SideChallenge, result: WinnerCalculation) -> None:
    match result.outcome:
        case Outcome.TIE:
            _refund(session, sc, sc.created_by_user_id, LedgerReason.SIDE_CHALLENGE_TIE_REFUND)
            _refund(session, sc, sc.opponent_user_id, LedgerReason.SIDE_CHALLENGE_TIE_REFUND)
        case Outcome.CREATOR | Outcome.OPPONENT:
            # loser's stake debit stands
            ledger.append(
                session,
                competition_id=sc.competition_id,
                user_id=result.winner_user_id,
                week_id=sc.week_id,
                delta=sc.stake_tokens * 2,
                reason=LedgerReason.SIDE_CHALLENGE_WIN,
                related_entity_id=sc.id,
            )
        case _:
            assert_never(result.outcome)


def _resolve(
    session: AsyncSession,
    sc: SideChallenge,
    creator_sub: SideChallengeSubmission,
    opponent_sub: SideChallengeSubmission,
    note_prefix: str,
    now: datetime,
) -> WinnerCalculation:
    result = calculate_winner(
        sc.metric_type, sc.target_value,
        creator_sub.value_number, opponent_sub.value_number,
        sc.created_by_user_id, sc.opponent_user_id,
    )
    sc.status = SideChallengeStatus.RESOLVED
    sc.winner_user_id = result.winner_user_id
    sc.resolved_at = now
    sc.resolution_note = f"{note_prefix}: {result.reason}"
    _settle(session, sc, result)
    log.info("side_challenge_resolved", side_challenge_id=str(sc.id), outcome=result.outcome.value,
             winner_user_id=str(result.winner_user_id) if result.winner_user_id else None)
    return result


def _void(session: AsyncSession, sc: SideChallenge, note: str) -> None:
    match sc.status:
        case SideChallengeStatus.PROPOSED:
            opponent_staked = False
        case SideChallengeStatus.ACCEPTED:
            opponent_staked = True
        case SideChallengeStatus.RESOLVED:
            raise StateConflict("Cannot void a resolved challenge")
        case SideChallengeStatus.VOID:
            raise StateConflict("Challenge is already voided")
        case SideChallengeStatus.DECLINED:
            raise StateConflict("Challenge was already declined")
        case _:
            assert_never(sc.status)

    sc.status = SideChallengeStatus.VOID
    sc.resolution_note = note
    _refund(session, sc, sc.created_by_user_id, LedgerReason.SIDE_CHALLENGE_VOID_REFUND)
    if opponent_staked:
        _refund(session, sc, sc.opponent_user_id, LedgerReason.SIDE_CHALLENGE_VOID_REFUND)
    log.info("side_challenge_voided", side_challenge_id=str(sc.id), opponent_refunded=opponent_staked)


# ---------- reads ----------

async def get(session: AsyncSession, side_challenge_id: UUID) -> SideChallenge:
    sc = await session.get(SideChallenge, side_challenge_id)
    if not sc:
        raise NotFound("Side challenge not found")
    return sc


async def list_for_week(
    session: AsyncSession, competition_id: UUID, week_id: UUID, user_id: UUID | None = None
) -> list[SideChallenge]:
    """Newest first; with `user_id`, only wagers that user is a party to."""
    stmt = select(SideChallenge).where(SideChallenge.competition_id == competition_id, SideChallenge.week_id == week_id)
    if user_id is not None:
        stmt = stmt.where(or_(SideChallenge.created_by_user_id == user_id, SideChallenge.opponent_user_id == user_id))
    return list((await session.execute(stmt.order_by(SideChallenge.created_at.desc()))).scalars().all())


async def submissions_for(session: AsyncSession, side_challenge_ids: list[UUID]) -> dict[UUID, list[SideChallengeSubmission]]:
    out: dict[UUID, list[SideChallengeSubmission]] = {i: [] for i in side_challenge_ids}
    if not side_challenge_ids:
        return out
    rows = (await session.execute(
        select(SideChallengeSubmission)
        .where(SideChallengeSubmission.side_challenge_id.in_(side_challenge_ids))
        .order_by(SideChallengeSubmission.submitted_at.asc())
    )).scalars().all()
    for s in rows:
        out[s.side_challenge_id].append(s)
    return out


# ---------- transitions ----------

async def propose(
    session: AsyncSession,
    *,
    competition_id: UUID,
    week_id: UUID,
    creator_id: UUID,
    opponent_id: UUID,
    title: str,
    rules: str,
    metric_type: MetricType,
    unit: str,
    stake_tokens: int,
    target_value: Decimal | None = None,
    expires_at: datetime | None = None,
    now: datetime | None = None,
) -> SideChallenge:
    now = now or utcnow()
    title, rules, unit = (title or "").strip(), (rules or "").strip(), (unit or "").strip()
    for field, value in (("title", title), ("rules", rules), ("unit", unit)):
        if not value:
            raise ValidationFailed(f"{field} is required")
    if stake_tokens is None or stake_tokens <= 0:
        raise ValidationFailed("stake_tokens must be greater than 0")
    match metric_type:
        case MetricType.TARGET_THRESHOLD:
            if target_value is None:
                raise ValidationFailed("target_value is required for TARGET_THRESHOLD metric type")
        case MetricType.HIGHER_WINS | MetricType.LOWER_WINS:
            target_value = None
        case _:
            assert_never(metric_type)
    if expires_at is not None and expires_at.tzinfo is None:
        raise ValidationFailed("expires_at must include a UTC offset")
    if expires_at is not None and expires_at <= now:
        raise ValidationFailed("expires_at must be in the future")

    if creator_id == opponent_id:
        raise NotAuthorized("Cannot challenge yourself")
    if not await access.is_participant(session, competition_id, creator_id):
        raise NotAuthorized("You must be a participant in this challenge")
    if not await access.is_participant(session, competition_id, opponent_id):
        raise ValidationFailed("Opponent must be a participant in this challenge")

    week = await access.get_week_or_404(session, competition_id, week_id)
    if week.status == WeekStatus.LOCKED:
        raise StateConflict("Cannot create side challenges for locked weeks")

    # serializes both stake checks and the duplicate-pair check
    await ledger.lock_token_holders(session, competition_id, creator_id, opponent_id)

    duplicate = await session.scalar(
        select(SideChallenge.id).where(
            SideChallenge.competition_id == competition_id,
            SideChallenge.week_id == week_id,
            SideChallenge.status.in_(OPEN_STATUSES),
            or_(
                and_(SideChallenge.created_by_user_id == creator_id, SideChallenge.opponent_user_id == opponent_id),
                and_(SideChallenge.created_by_user_id == opponent_id, SideChallenge.opponent_user_id == creator_id),
            ),
        ).limit(1)
    )
    if duplicate:
        raise StateConflict("You already have an active challenge with this participant this week")

    await ledger.ensure_can_stake(session, competition_id, creator_id, stake_tokens)

    sc = SideChallenge(
        competition_id=competition_id,
        week_id=week_id,
        created_by_user_id=creator_id,
        opponent_user_id=opponent_id,
        title=title,
        rules=rules,
        metric_type=metric_type,
        unit=unit,
        target_value=target_value,
        stake_tokens=stake_tokens,
        status=SideChallengeStatus.PROPOSED,
        created_at=now,
        expires_at=expires_at or (now + timedelta(hours=settings.side_challenge_expiry_hours)),
    )
    session.add(sc)
    await session.flush()
    ledger.append(
        session,
        competition_id=competition_id,
        user_id=creator_id,
        week_id=week_id,
        delta=-stake_tokens,
        reason=LedgerReason.SIDE_CHALLENGE_STAKE,
        related_entity_id=sc.id,
    )
    log.info("side_challenge_proposed", side_challenge_id=str(sc.id), competition_id=str(competition_id),
             week_id=str(week_id), stake_tokens=stake_tokens)
    return sc


async def accept(session: AsyncSession, side_challenge_id: UUID, user_id: UUID, now: datetime | None = None) -> SideChallenge:
    now = now or utcnow()
    sc = await _locked_for_update(session, side_challenge_id)
    if sc.opponent_user_id != user_id:
        raise NotAuthorized("Only the opponent can accept this challenge")
    match sc.status:
        case SideChallengeStatus.PROPOSED:
            pass
        case SideChallengeStatus.ACCEPTED | SideChallengeStatus.RESOLVED | SideChallengeStatus.DECLINED | SideChallengeStatus.VOID:
            raise StateConflict("Challenge has already been responded to")
        case _:
            assert_never(sc.status)
    if now > sc.expires_at:
        raise StateConflict("Challenge proposal has expired")
    week = await session.get(Week, sc.week_id)
    if week is not None and week.status == WeekStatus.LOCKED:
        raise StateConflict("Cannot accept side challenges for locked weeks")

    await ledger.lock_token_holders(session, sc.competition_id, user_id)
    await ledger.ensure_can_stake(session, sc.competition_id, user_id, sc.stake_tokens)

    sc.status = SideChallengeStatus.ACCEPTED
    sc.accepted_at = now
    ledger.append(
        session,
        competition_id=sc.competition_id,
        user_id=user_id,
        week_id=sc.week_id,
        delta=-sc.stake_tokens,
        reason=LedgerReason.SIDE_CHALLENGE_STAKE,
        related_entity_id=sc.id,
    )
    log.info("side_challenge_accepted", side_challenge_id=str(sc.id))
    return sc


async def decline(session: AsyncSession, side_challenge_id: UUID, user_id: UUID) -> SideChallenge:
    sc = await _locked_for_update(session, side_challenge_id)
    if sc.opponent_user_id != user_id:
        raise NotAuthorized("Only the opponent can decline this challenge")
    match sc.status:
        case SideChallengeStatus.PROPOSED:
            pass
        case SideChallengeStatus.ACCEPTED | SideChallengeStatus.RESOLVED | SideChallengeStatus.DECLINED | SideChallengeStatus.VOID:
            raise StateConflict("Challenge has already been responded to")
        case _:
            assert_never(sc.status)

    sc.status = SideChallengeStatus.DECLINED
    sc.resolution_note = "Declined by opponent"
    # opponent never staked
    _refund(session, sc, sc.created_by_user_id, LedgerReason.SIDE_CHALLENGE_VOID_REFUND)
    log.info("side_challenge_declined", side_challenge_id=str(sc.id))
    return sc


async def submit_result(
    session: AsyncSession,
    side_challenge_id: UUID,
    user_id: UUID,
    value_number: Decimal,
    value_display: str | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> SideChallenge:
    """Record one party's result; the second submission resolves and settles."""
    now = now or utcnow()
    if value_number is None:
        raise ValidationFailed("value_number is required")
    value_number = Decimal(str(value_number))
    if value_number < 0:
        raise ValidationFailed("value_number must be a non-negative number")

    sc = await _locked_for_update(session, side_challenge_id)
    if user_id not in (sc.created_by_user_id, sc.opponent_user_id):
        raise NotAuthorized("You are not a participant in this challenge")
    match sc.status:
        case SideChallengeStatus.ACCEPTED:
            pass
        case SideChallengeStatus.PROPOSED | SideChallengeStatus.RESOLVED | SideChallengeStatus.DECLINED | SideChallengeStatus.VOID:
            raise StateConflict("Challenge must be accepted before submitting results")
        case _:
            assert_never(sc.status)

    subs = await _submissions(session, sc.id)
    if any(s.user_id == user_id for s in subs):
        raise StateConflict("You have already submitted your result")

    sub = SideChallengeSubmission(
        side_challenge_id=sc.id,
        user_id=user_id,
        value_number=value_number,
        value_display=(value_display or "").strip() or f"{_fmt(value_number)} {sc.unit}",
        note=note,
        submitted_at=now,
    )
    session.add(sub)
    await session.flush()
    log.info("side_challenge_result_submitted", side_challenge_id=str(sc.id), user_id=str(user_id))

    creator_sub, opponent_sub = _pair(sc, subs + [sub])
    if creator_sub and opponent_sub:
        _resolve(session, sc, creator_sub, opponent_sub, "Auto-resolved", now)
    return sc


async def void(
    session: AsyncSession, side_challenge_id: UUID, user_id: UUID, reason: str, now: datetime | None = None
) -> SideChallenge:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("reason is required")
    sc = await _locked_for_update(session, side_challenge_id)
    await access.require_organizer(session, sc.competition_id, user_id, "Only organizers can void challenges")
    _void(session, sc, f"Voided by organizer: {reason}")
    return sc


async def cleanup_on_week_lock(
    session: AsyncSession, competition_id: UUID, week_id: UUID, now: datetime | None = None
) -> CleanupResult:
    """
    Resolve wagers that have both results, void every other open wager.
    Each wager runs in its own savepoint; a failure is logged and skipped.
    """
    now = now or utcnow()
    ids = (await session.execute(
        select(SideChallenge.id).where(
            SideChallenge.competition_id == competition_id,
            SideChallenge.week_id == week_id,
            SideChallenge.status.in_(OPEN_STATUSES),
        ).order_by(SideChallenge.created_at.asc())
    )).scalars().all()

    resolved = voided = failed = 0
    for sc_id in ids:
        try:
            async with session.begin_nested():
                sc = await _locked_for_update(session, sc_id)
                if sc.status.is_terminal:
                    continue
                creator_sub, opponent_sub = _pair(sc, await _submissions(session, sc_id))
                if sc.status == SideChallengeStatus.ACCEPTED and creator_sub and opponent_sub:
                    _resolve(session, sc, creator_sub, opponent_sub, "Auto-resolved on week lock", now)
                    resolved += 1
                else:
                    _void(session, sc, LOCK_VOID_NOTE)
                    voided += 1
        except Exception:
            failed += 1
            log.exception("side_challenge_cleanup_failed", side_challenge_id=str(sc_id), week_id=str(week_id))

    result = CleanupResult(resolved=resolved, voided=voided, failed=failed)
    if ids:
        log.info("side_challenges_cleaned_up", competition_id=str(competition_id), week_id=str(week_id),
                 resolved=resolved, voided=voided, failed=failed)
    return result
