from __future__ import annotations
from pydantic import BaseModel
from typing import Literal
from uuid import UUID
from phifit.schemas.competition import ParticipantPublic, WeekPublic
from phifit.schemas.task import CompletionPublic, TaskPublic

class WeekLockAction(BaseModel):
    action: Literal["lock", "unlock"]

class TokenAwardSummary(BaseModel):
    awarded: int
    already_awarded: int

class CleanupSummary(BaseModel):
    resolved: int
    voided: int
    failed: int = 0

class WeekLockSummary(BaseModel):
    week_id: UUID
    competition_id: UUID
    week_index: int
    status: str
    tokens: TokenAwardSummary | None = None
    side_challenges: CleanupSummary | None = None
    errors: list[str] = []

class SweepSummary(BaseModel):
    locked: int
    opened: int
    results: list[WeekLockSummary]

class RecalculateSummary(BaseModel):
    awarded: int
    revoked: int
    unchanged: int

class WeekDetail(BaseModel):
    week: WeekPublic
    completions: list[CompletionPublic]
    points_by_user: dict[UUID, int]

class OverviewStats(BaseModel):
    total_completions: int
    perfect_weeks: int
    average_points: float

class WeekOverviewPublic(BaseModel):
    week: WeekPublic
    participants: list[ParticipantPublic]
    tasks: list[TaskPublic]
    completions: list[CompletionPublic]
    points_by_user: dict[UUID, int]
    perfect_user_ids: list[UUID]
    stats: OverviewStats
