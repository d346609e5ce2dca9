from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, Request
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from tabapp.auth import Principal, Role
from tabapp.config import settings
from tabapp.models import User, WebSession


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def load_principal_from_token(db: Session, token: str | None) -> Principal | None:
    if not token:
        return None

    row = db.execute(
        select(WebSession, User)
        .join(User, User.id == WebSession.user_id)
        .where(WebSession.session_token == token)
    ).one_or_none()
    if not row:
        return None

    web_session, user = row
    now = _now()
    if web_session.revoked_at is not None or _aware(web_session.expires_at) <= now:
        return None

    web_session.last_seen_at = now
    web_session.expires_at = now + timedelta(minutes=settings.session_ttl_minutes)
    return Principal(
        id=user.id,
        email=user.email,
        role=Role(user.role.value if hasattr(user.role, 'value') else user.role),
        active=user.active,
    )


def install_auth_session_middleware(app: FastAPI, session_factory: sessionmaker) -> None:
    @app.middleware('http')
    async def auth_session_middleware(request: Request, call_next):
        token = request.cookies.get(settings.session_cookie_name)
        with session_factory() as db:
            request.state.principal = load_principal_from_token(db, token)
            db.commit()
        return await call_next(request)
