from __future__ import annotations
from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator
from decimal import Decimal
from uuid import UUID
from datetime import datetime
from phifit.models.side_challenge import MetricType, SideChallengeStatus

class SideChallengeCreate(BaseModel):
    opponent_user_id: UUID
    title: str = Field(min_length=1, max_length=120)
    rules: str = Field(min_length=1)
    metric_type: MetricType
    unit: str = Field(min_length=1, max_length=32)
    target_value: Decimal | None = None
    stake_tokens: int = Field(gt=0)
    expires_at: AwareDatetime | None = None  # default: now + SIDE_CHALLENGE_EXPIRY_HOURS

    @model_validator(mode="after")
    def target_for_threshold(self):
        if self.metric_type == MetricType.TARGET_THRESHOLD and self.target_value is None:
            raise ValueError("target_value is required for TARGET_THRESHOLD metric type")
        return self

class SubmitResult(BaseModel):
    value_number: Decimal = Field(ge=0)
    value_display: str | None = Field(default=None, max_length=120)
    note: str | None = None

class VoidRequest(BaseModel):
    reason: str = Field(min_length=1)

class SubmissionPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    value_number: Decimal
    value_display: str
    note: str | None = None
    submitted_at: datetime

class SideChallengePublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    competition_id: UUID
    week_id: UUID
    created_by_user_id: UUID
    opponent_user_id: UUID
    title: str
    rules: str
    metric_type: MetricType
    unit: str
    target_value: Decimal | None = None
    stake_tokens: int
    status: SideChallengeStatus
    created_at: datetime
    accepted_at: datetime | None = None
    expires_at: datetime
    resolved_at: datetime | None = None
    winner_user_id: UUID | None = None
    resolution_note: str | None = None
    submissions: list[SubmissionPublic] = []
