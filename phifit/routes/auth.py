from __future__ import annotations
import math
import time
import uuid
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from phifit.auth_deps import get_current_user
from phifit.config import settings
from phifit.db import get_session, utcnow
from phifit.models.user import User
from phifit.rate_limit import RateLimiter
from phifit.schemas.auth import RegisterRequest, LoginRequest, LoginResponse, RefreshRequest, UserPublic, TokenPair
from phifit.security import SESSION_COOKIE, hash_pin, verify_pin, make_access_token, make_refresh_token, decode_token

router = APIRouter(prefix="/auth", tags=["auth"])
log = structlog.get_logger()

def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE, token,
        max_age=settings.access_ttl_min * 60,
        httponly=True,
        samesite="lax",
        secure=settings.session_cookie_secure,
    )

@router.post("/register", status_code=201, response_model=UserPublic)
async def register(payload: RegisterRequest, session: AsyncSession = Depends(get_session)):
    exists = await session.scalar(select(User).where(User.email == payload.email))
    if exists:
        raise HTTPException(status_code=409, detail="Email already registered")
    user = User(email=payload.email, display_name=payload.display_name, pin_hash=hash_pin(payload.pin))
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise HTTPException(status_code=409, detail="Email already registered")
    await session.refresh(user)
    log.info("user_registered", user_id=str(user.id))
    return UserPublic.model_validate(user)

@router.post("/login", response_model=LoginResponse)
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    limiter: RateLimiter = request.app.state.rate_limiter
    key = f"login:{payload.email}"
    limit = await limiter.hit(key)
    if not limit.allowed:
        minutes = max(1, math.ceil(((limit.locked_until or limit.reset_at) - time.time()) / 60))
        log.warning("login_rate_limited", email=payload.email)
        return JSONResponse(
            status_code=429,
            content={"detail": f"Too many failed attempts. Account locked for {minutes} minutes."},
            headers={"Retry-After": str(limit.retry_after_seconds())},
        )

    user = await session.scalar(select(User).where(User.email == payload.email))
    if not user or not verify_pin(payload.pin, user.pin_hash):
        raise HTTPException(status_code=401, detail="Invalid email or PIN")

    await limiter.reset(key)
    user.last_login_at = utcnow()
    await session.commit()

    access = make_access_token(str(user.id))
    _set_session_cookie(response, access)
    log.info("user_logged_in", user_id=str(user.id))
    return LoginResponse(access=access, refresh=make_refresh_token(str(user.id)), user=UserPublic.model_validate(user))

@router.post("/refresh", response_model=TokenPair)
async def refresh(payload: RefreshRequest, response: Response, session: AsyncSession = Depends(get_session)):
    try:
        data = decode_token(payload.refresh)
        user_id = uuid.UUID(str(data.get("sub")))
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")
    if data.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Wrong token type")
    if not await session.get(User, user_id):
        raise HTTPException(status_code=401, detail="User not found")
    access = make_access_token(str(user_id))
    _set_session_cookie(response, access)
    return TokenPair(access=access, refresh=make_refresh_token(str(user_id)))

@router.get("/me", response_model=UserPublic)
async def me(user: User = Depends(get_current_user)):
    return UserPublic.model_validate(user)

@router.post("/logout", status_code=204)
async def logout():
    response = Response(status_code=204)
    response.delete_cookie(SESSION_COOKIE)
    return response
