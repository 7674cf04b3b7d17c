"""Dependency providers, settings management and engine access checks."""

import hmac
from dataclasses import dataclass, field
from functools import lru_cache
from typing import FrozenSet, Optional
from uuid import UUID

from fastapi import Cookie, Depends, Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import OrganizationMember, User
from .security import JWTError, decode_token
from .services.rate_limiter import OrganizationRateLimiter
from .telemetry import set_user_context


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ADMIN_SECRET_KEY: str = "supersecretkey-change-this-in-production"
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: Optional[str] = None

    # Shared secret sent by schedulers in the `x-cron-secret` header
    CRON_SECRET: Optional[str] = None

    REDIS_URL: str = "redis://localhost:6379/0"

    # Payment processor export API
    PROCESSOR_API_BASE_URL: str = "https://secure.actblue.com/api/v1/csvs"
    EXPORT_POLL_INTERVAL_SECONDS: float = 10
    EXPORT_MAX_POLLS_RECONCILE: int = 12
    EXPORT_MAX_POLLS_INGEST: int = 30

    # Backfill orchestrator
    BACKFILL_DEFAULT_DAYS_BACK: int = 365
    BACKFILL_DEFAULT_CHUNK_DAYS: int = 30
    BACKFILL_MAX_ATTEMPTS: int = 3
    BACKFILL_INTER_CHUNK_DELAY_SECONDS: float = 5
    BACKFILL_STALE_CHUNK_MINUTES: int = 30

    # Reconciliation
    RECONCILIATION_LOOKBACK_DAYS: int = 7
    RECONCILIATION_PERCENT_THRESHOLD: float = 1.0
    RECONCILIATION_AMOUNT_THRESHOLD: float = 100.0

    AUTO_MATCH_MIN_CONFIDENCE: float = 0.7

    # Advisory per-organization limit on expensive operations
    RATE_LIMIT_PER_MINUTE: int = 10

    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


@dataclass
class EngineActor:
    """Who is calling an engine endpoint.

    Either the scheduler (cron secret) or a user; admins and the scheduler may
    act on any organization, members only on their own.
    """
    label: str
    is_admin: bool = False
    is_cron: bool = False
    user: Optional[User] = None
    organization_ids: FrozenSet[UUID] = field(default_factory=frozenset)

    def can_access(self, organization_id: Optional[UUID]) -> bool:
        if self.is_admin:
            return True
        return organization_id is not None and organization_id in self.organization_ids


def _bearer_token(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    if value.startswith("Bearer "):
        return value[len("Bearer "):]
    return value


def _user_from_token(db: Session, token: str) -> User:
    try:
        payload = decode_token(token)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user = db.query(User).filter(User.email == subject).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def get_current_user(
    db: Session = Depends(get_db),
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
    authorization: Optional[str] = Header(default=None),
) -> User:
    """Resolve the current user from the `access_token` cookie or a Bearer header."""
    token = _bearer_token(access_token) or _bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return _user_from_token(db, token)


def require_engine_access(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    x_cron_secret: Optional[str] = Header(default=None, alias="x-cron-secret"),
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
    authorization: Optional[str] = Header(default=None),
) -> EngineActor:
    """Authenticate a scheduled job or a user.

    Raises:
        HTTPException 401: no valid credential was presented
    """
    if x_cron_secret is not None:
        if settings.CRON_SECRET and hmac.compare_digest(x_cron_secret, settings.CRON_SECRET):
            return EngineActor(label="cron", is_admin=True, is_cron=True)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")

    token = _bearer_token(access_token) or _bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    user = _user_from_token(db, token)

    memberships = (
        db.query(OrganizationMember.organization_id)
        .filter(OrganizationMember.user_id == user.id, OrganizationMember.status == "active")
        .all()
    )
    set_user_context(user_id=str(user.id), email=user.email)
    return EngineActor(
        label=user.email,
        is_admin=bool(user.is_superuser),
        user=user,
        organization_ids=frozenset(org_id for (org_id,) in memberships),
    )


def require_admin_or_cron(actor: EngineActor = Depends(require_engine_access)) -> EngineActor:
    """Only platform admins and the scheduler may start backfills."""
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return actor


def require_organization_access(actor: EngineActor, organization_id: Optional[UUID]) -> None:
    """Raise 403 unless the actor may act on `organization_id`.

    A missing organization id is allowed only for admins/scheduler (all orgs).
    """
    if organization_id is None and not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="organization_id is required")
    if not actor.can_access(organization_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No access to this organization")


def get_rate_limiter(settings: Settings = Depends(get_settings)) -> OrganizationRateLimiter:
    """Advisory per-organization limiter backed by the shared Redis client."""
    from . import state

    return OrganizationRateLimiter(state.redis_client, limit_per_minute=settings.RATE_LIMIT_PER_MINUTE)
