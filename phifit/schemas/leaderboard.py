from __future__ import annotations
from pydantic import BaseModel, ConfigDict
from decimal import Decimal
from uuid import UUID

class LeaderboardRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    display_name: str
    points: int
    rank: int
    tied: bool

class WinnerPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    display_name: str
    points: int
    prize_amount: Decimal

class PayoutSummaryPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    participant_count: int
    total_pool: Decimal
    weekly_prize: Decimal
    weekly_payout_total: Decimal
    grand_prize: Decimal
    token_champ_prize: Decimal

class WeeklyLeaderboard(BaseModel):
    week_id: UUID
    week_index: int
    rows: list[LeaderboardRow]
    winners: list[WinnerPublic]

class OverallLeaderboard(BaseModel):
    rows: list[LeaderboardRow]
    winners: list[WinnerPublic]
    payouts: PayoutSummaryPublic
