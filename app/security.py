from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.errors import ApiError, ForbiddenError
from app.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

# Capabilities are opaque strings carried in the access token.
PERMISSION_VIEW_ALL_BRANCHES = "admin.view_all_branches"
PERMISSION_MANAGE_COMPANIES = "admin.manage_companies"
PERMISSION_VIEW_SCHEDULE = "account.view_schedule"
PERMISSION_SHIFT_VIEW_ALL = "shift.view_all"
PERMISSION_APPROVE_AUTHORIZATIONS = "shift.approve_authorizations"
PERMISSION_END_SHIFT = "shift.end_shift"

HR_ROLE_NAME = "human resources"
MANAGEMENT_ROLE_NAME = "management"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class CurrentUser:
    user_id: int
    company_id: int | None
    permissions: frozenset[str] = field(default_factory=frozenset)
    roles: tuple[str, ...] = ()

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def has_role(self, role_name: str) -> bool:
        wanted = role_name.strip().lower()
        return any(item.strip().lower() == wanted for item in self.roles)


def create_access_token(
    *,
    user_id: int,
    company_id: int | None,
    permissions: Iterable[str] = (),
    roles: Iterable[str] = (),
) -> tuple[str, int, dict[str, Any]]:
    settings = get_settings()
    now = _utcnow()
    claims = {
        "sub": str(user_id),
        "company_id": company_id,
        "permissions": sorted(set(permissions)),
        "roles": list(roles),
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.access_token_minutes)).timestamp()),
        "jti": str(uuid4()),
        "typ": "access",
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")
    return token, settings.access_token_minutes * 60, claims


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    if payload.get("typ") != "access":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token type is invalid.")
    return payload


def user_from_claims(claims: Mapping[str, Any]) -> CurrentUser:
    try:
        user_id = int(str(claims.get("sub")))
    except ValueError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.") from exc

    raw_company_id = claims.get("company_id")
    company_id = int(raw_company_id) if isinstance(raw_company_id, (int, str)) and str(raw_company_id).isdigit() else None
    permissions = claims.get("permissions")
    roles = claims.get("roles")
    return CurrentUser(
        user_id=user_id,
        company_id=company_id,
        permissions=frozenset(str(item) for item in permissions) if isinstance(permissions, list) else frozenset(),
        roles=tuple(str(item) for item in roles) if isinstance(roles, list) else (),
    )


def require_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CurrentUser:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    user = user_from_claims(decode_token(credentials.credentials))
    request.state.actor = "user"
    request.state.actor_id = str(user.user_id)
    request.state.company_id = user.company_id
    return user


def require_permission(permission: str) -> Callable[..., CurrentUser]:
    def _dependency(user: CurrentUser = Depends(require_user)) -> CurrentUser:
        if not user.has_permission(permission):
            raise ForbiddenError()
        return user

    return _dependency
