from __future__ import annotations
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from decimal import Decimal
from uuid import UUID
from datetime import date, datetime
from phifit.models.competition import CompetitionStatus
from phifit.models.week import WeekStatus
from phifit.schemas.task import TaskPublic

class CompetitionCreate(BaseModel):
    name: str = Field(min_length=3, max_length=120)
    description: str = ""
    start_date: date
    number_of_weeks: int = Field(ge=1, le=52)
    timezone: str = "UTC"  # IANA name; week boundaries are local midnights
    buy_in_amount: Decimal = Field(default=Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    weekly_prize_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    grand_prize_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    token_champ_prize_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)

class CompetitionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=3, max_length=120)
    description: str | None = None
    start_date: date | None = None
    timezone: str | None = None
    buy_in_amount: Decimal | None = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    weekly_prize_percent: Decimal | None = Field(default=None, ge=0, le=100)
    grand_prize_percent: Decimal | None = Field(default=None, ge=0, le=100)
    token_champ_prize_percent: Decimal | None = Field(default=None, ge=0, le=100)
    status: CompetitionStatus | None = None

class CompetitionPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organizer_id: UUID
    name: str
    description: str
    start_date: date
    number_of_weeks: int
    timezone: str
    buy_in_amount: Decimal
    weekly_prize_percent: Decimal
    grand_prize_percent: Decimal
    token_champ_prize_percent: Decimal
    status: CompetitionStatus
    created_at: datetime

class WeekPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    week_index: int
    start_at: datetime
    end_at: datetime
    status: WeekStatus
    locked_at: datetime | None = None

class ParticipantPublic(BaseModel):
    user_id: UUID
    display_name: str
    email: EmailStr
    buy_in_paid: bool
    joined_at: datetime

class CompetitionDetail(CompetitionPublic):
    is_organizer: bool
    current_week_index: int | None = None
    participants: list[ParticipantPublic]
    tasks: list[TaskPublic]
    weeks: list[WeekPublic]

class InviteRequest(BaseModel):
    email: EmailStr

class BuyInUpdate(BaseModel):
    buy_in_paid: bool
