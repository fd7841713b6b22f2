from __future__ import annotations
from pydantic import BaseModel
from uuid import UUID
from datetime import datetime
from phifit.models.ledger import LedgerReason

class TokenBalance(BaseModel):
    user_id: UUID
    total: int
    staked: int
    available: int

class LedgerEntryPublic(BaseModel):
    id: UUID
    delta: int
    reason: LedgerReason
    created_at: datetime
    week_id: UUID | None = None
    week_index: int | None = None
    related_entity_id: UUID | None = None

class LedgerHistory(BaseModel):
    user_id: UUID
    balance: int
    entries: list[LedgerEntryPublic]

class TokenLeaderboardRow(BaseModel):
    user_id: UUID
    display_name: str
    balance: int
    rank: int
    tied: bool
