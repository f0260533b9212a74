from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select

from .auth_models import User
from .db import db_session
from .errors import AIAccessDeniedError, ClinicError, NotFoundError
from .models import AIUsageLog, UserAIAccess

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AIAccessStatus:
    allowed: bool
    reason: str | None = None
    usage: int = 0
    limit: int = 0
    remaining: int = 0
    token_balance: int = 0
    tokens_used_today: int = 0
    daily_token_limit: int = 0
    tokens_remaining_today: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _today(now: datetime | None = None) -> datetime:
    return datetime.combine((now or datetime.utcnow()).date(), time.min)


def _usage_today(s, user_id: str, now: datetime | None = None) -> tuple[int, int]:
    """(richieste, token) di oggi."""
    count, tokens = s.execute(
        select(func.count(AIUsageLog.id), func.coalesce(func.sum(AIUsageLog.tokens_used), 0)).where(
            AIUsageLog.user_id == user_id, AIUsageLog.created_at >= _today(now)
        )
    ).one()
    return int(count), int(tokens)


def _status(grant: UserAIAccess | None, usage: int, tokens: int) -> AIAccessStatus:
    if grant is None:
        return AIAccessStatus(False, "AI access is not enabled for your account")

    figures = dict(
        usage=usage,
        limit=grant.daily_limit,
        remaining=max(grant.daily_limit - usage, 0),
        token_balance=grant.token_balance,
        tokens_used_today=tokens,
        daily_token_limit=grant.daily_token_limit,
        tokens_remaining_today=max(grant.daily_token_limit - tokens, 0),
    )
    if not grant.ai_enabled:
        return AIAccessStatus(False, "AI access has been disabled by an administrator", **figures)
    if usage >= grant.daily_limit:
        return AIAccessStatus(False, "Daily AI request limit reached", **figures)
    # oltre la quota giornaliera si attinge ai token acquistati
    if tokens >= grant.daily_token_limit and grant.token_balance <= 0:
        return AIAccessStatus(False, "Daily AI token limit reached", **figures)
    return AIAccessStatus(True, None, **figures)


def check_ai_access(user_id: str, now: datetime | None = None) -> AIAccessStatus:
    with db_session() as s:
        grant = s.execute(select(UserAIAccess).where(UserAIAccess.user_id == user_id)).scalar_one_or_none()
        usage, tokens = _usage_today(s, user_id, now)
        return _status(grant, usage, tokens)


def require_ai_access(user_id: str) -> AIAccessStatus:
    status = check_ai_access(user_id)
    if not status.allowed:
        raise AIAccessDeniedError(status.reason or "AI access not available", usage=status.usage, limit=status.limit)
    return status


def log_ai_usage(
    user_id: str,
    feature_type: str,
    tokens_used: int = 0,
    cost_estimate: Decimal | float = 0,
    metadata: dict | None = None,
) -> None:
    """Registra l'uso; i token oltre la quota giornaliera scalano dal saldo."""
    with db_session() as s:
        grant = s.execute(select(UserAIAccess).where(UserAIAccess.user_id == user_id)).scalar_one_or_none()
        _, before = _usage_today(s, user_id)

        s.add(
            AIUsageLog(
                user_id=user_id,
                feature_type=feature_type,
                tokens_used=tokens_used,
                cost_estimate=Decimal(str(cost_estimate)),
                meta=metadata,
            )
        )

        if grant and tokens_used:
            limit = grant.daily_token_limit
            overflow = max(before + tokens_used - limit, 0) - max(before - limit, 0)
            if overflow:
                grant.token_balance = max(grant.token_balance - overflow, 0)
                logger.info("User %s drew %d tokens from balance", user_id, overflow)


# =========================
# Amministrazione
# =========================
def _grant(s, user_id: str) -> UserAIAccess:
    grant = s.execute(select(UserAIAccess).where(UserAIAccess.user_id == user_id)).scalar_one_or_none()
    if not grant:
        raise NotFoundError("No AI access record for this user.")
    return grant


def grant_ai_access(user_id: str, daily_limit: int = 100, daily_token_limit: int = 10000) -> None:
    with db_session() as s:
        if not s.get(User, user_id):
            raise NotFoundError("User not found.")
        if s.execute(select(UserAIAccess.id).where(UserAIAccess.user_id == user_id)).first():
            raise ClinicError("User already has an AI access record.")
        s.add(
            UserAIAccess(
                user_id=user_id,
                ai_enabled=True,
                daily_limit=daily_limit,
                daily_token_limit=daily_token_limit,
                token_balance=0,
            )
        )


def set_ai_enabled(user_id: str, enabled: bool) -> None:
    with db_session() as s:
        _grant(s, user_id).ai_enabled = enabled
    logger.info("AI access %s for user %s", "enabled" if enabled else "disabled", user_id)


def update_ai_limits(user_id: str, daily_limit: int | None = None, daily_token_limit: int | None = None) -> None:
    if (daily_limit is not None and daily_limit < 0) or (daily_token_limit is not None and daily_token_limit < 0):
        raise ClinicError("Limits cannot be negative.")
    with db_session() as s:
        grant = _grant(s, user_id)
        if daily_limit is not None:
            grant.daily_limit = daily_limit
        if daily_token_limit is not None:
            grant.daily_token_limit = daily_token_limit


def add_tokens(user_id: str, amount: int) -> int:
    """Ricarica token acquistati; ritorna il nuovo saldo."""
    if amount <= 0:
        raise ClinicError("Token amount must be positive.")
    with db_session() as s:
        grant = _grant(s, user_id)
        grant.token_balance += amount
        return grant.token_balance


def list_ai_access_flat() -> list[dict]:
    with db_session() as s:
        rows = s.execute(
            select(UserAIAccess, User.username).join(User, User.id == UserAIAccess.user_id).order_by(User.username)
        ).all()
        out = []
        for grant, username in rows:
            usage, tokens = _usage_today(s, grant.user_id)
            out.append(
                {
                    "user_id": grant.user_id,
                    "username": username,
                    "ai_enabled": grant.ai_enabled,
                    "daily_limit": grant.daily_limit,
                    "daily_token_limit": grant.daily_token_limit,
                    "token_balance": grant.token_balance,
                    "usage_today": usage,
                    "tokens_used_today": tokens,
                }
            )
        return out


def usage_stats(days: int = 30) -> list[dict]:
    """Uso per funzionalità negli ultimi N giorni."""
    since = _today() - timedelta(days=days)
    with db_session() as s:
        rows = s.execute(
            select(
                AIUsageLog.feature_type,
                func.count(AIUsageLog.id),
                func.coalesce(func.sum(AIUsageLog.tokens_used), 0),
                func.coalesce(func.sum(AIUsageLog.cost_estimate), 0),
            )
            .where(AIUsageLog.created_at >= since)
            .group_by(AIUsageLog.feature_type)
            .order_by(AIUsageLog.feature_type)
        ).all()
    return [
        {"feature_type": f, "requests": int(n), "tokens": int(t), "cost": str(Decimal(str(c)).quantize(Decimal("0.0001")))}
        for f, n, t, c in rows
    ]
