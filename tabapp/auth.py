from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from fastapi import Depends, HTTPException, Request, status

from tabapp.errors import UnauthorizedError


class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class TabAction(str, Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    APPROVE = "APPROVE"
    CLOSE = "CLOSE"
    ORDER = "ORDER"
    MARK_BILL_PAID = "MARK_BILL_PAID"


@dataclass
class Principal:
    id: int
    email: str
    role: Role
    active: bool


@dataclass(frozen=True)
class AuthResource:
    """What an action targets: a shop, and optionally one of its tabs."""

    shop_id: int
    shop_owner_id: int
    tab_id: int | None = None
    tab_owner_id: int | None = None


Authorizer = Callable[[Principal, AuthResource, TabAction], bool]

TAB_OWNER_ACTIONS = {TabAction.READ, TabAction.UPDATE}


def is_admin_role(role: Role) -> bool:
    return role == Role.ADMIN


def default_authorizer(principal: Principal, resource: AuthResource, action: TabAction) -> bool:
    if not principal.active:
        return False
    if is_admin_role(principal.role):
        return True
    if principal.id == resource.shop_owner_id:
        return True
    if action == TabAction.CREATE:
        return resource.tab_id is None
    if resource.tab_id is not None and principal.id == resource.tab_owner_id:
        return action in TAB_OWNER_ACTIONS
    return False


@dataclass(frozen=True)
class RequestContext:
    principal: Principal
    authorizer: Authorizer = field(default=default_authorizer)
    ip: str | None = None

    def authorize(self, resource: AuthResource, action: TabAction) -> None:
        if not self.authorizer(self.principal, resource, action):
            raise UnauthorizedError()


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    if not principal.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return principal


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None


def get_request_context(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> RequestContext:
    authorizer = getattr(request.app.state, "authorizer", default_authorizer)
    return RequestContext(principal=principal, authorizer=authorizer, ip=get_client_ip(request))
