from __future__ import annotations
import secrets
from dataclasses import asdict
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from phifit.db import get_session
from phifit.schemas.week import SweepSummary
from phifit.services import weeks

router = APIRouter(prefix="/cron", tags=["cron"])

def require_cron_secret(
    request: Request, x_cron_secret: str | None = Header(default=None, alias="X-Cron-Secret")
) -> None:
    expected = request.app.state.settings.cron_secret
    # no secret configured = open endpoint (local dev)
    if not expected:
        return
    if not x_cron_secret or not secrets.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid cron secret")

@router.post("/lock-weeks", response_model=SweepSummary, dependencies=[Depends(require_cron_secret)])
async def lock_weeks(session: AsyncSession = Depends(get_session)):
    result = await weeks.sweep(session)
    return SweepSummary.model_validate(asdict(result))
