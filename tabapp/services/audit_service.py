from __future__ import annotations

from sqlalchemy.orm import Session

from tabapp.auth import RequestContext
from tabapp.models import AuditLog


def log_audit(
    db: Session,
    ctx: RequestContext,
    *,
    action: str,
    shop_id: int,
    tab_id: int | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_user_id=ctx.principal.id,
            action=action,
            shop_id=shop_id,
            tab_id=tab_id,
            ip=ctx.ip,
            meta=metadata or {},
        )
    )
