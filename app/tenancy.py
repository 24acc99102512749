from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db import ConnectionManager, get_connection_manager, get_master_db
from app.errors import ForbiddenError, NotFoundError, ValidationFailed
from app.models import Company, UserBranch, UserCompanyAccess
from app.realtime import CompanyChannel, RealtimeHub
from app.security import PERMISSION_VIEW_ALL_BRANCHES, CurrentUser, require_user


@dataclass(slots=True)
class TenantContext:
    company: Company
    db: Session
    channel: CompanyChannel | None


def get_realtime_hub(request: Request) -> RealtimeHub | None:
    return getattr(request.app.state, "realtime_hub", None)


def resolve_user_company(master_db: Session, user: CurrentUser) -> Company:
    if user.company_id is None:
        raise ValidationFailed("No company selected", code="COMPANY_REQUIRED")
    company = master_db.get(Company, user.company_id)
    if company is None or not company.is_active:
        raise NotFoundError("Company not found or inactive", code="COMPANY_NOT_FOUND")
    access = master_db.scalar(
        select(UserCompanyAccess.id).where(
            UserCompanyAccess.user_id == user.user_id,
            UserCompanyAccess.company_id == company.id,
            UserCompanyAccess.is_active.is_(True),
        )
    )
    if access is None:
        raise ForbiddenError("No access to this company")
    return company


def get_tenant_context(
    request: Request,
    user: CurrentUser = Depends(require_user),
    master_db: Session = Depends(get_master_db),
) -> Generator[TenantContext, None, None]:
    manager: ConnectionManager = get_connection_manager(request)
    company = resolve_user_company(master_db, user)
    hub = get_realtime_hub(request)
    db = manager.tenant_session(company.db_name)
    request.state.company_id = company.id
    try:
        yield TenantContext(
            company=company,
            db=db,
            channel=hub.for_company(company.id) if hub is not None else None,
        )
    finally:
        db.close()


def visible_branch_ids(db: Session, user: CurrentUser) -> list[int] | None:
    """Branches the user may see; ``None`` means all of them."""
    if user.has_permission(PERMISSION_VIEW_ALL_BRANCHES):
        return None
    return list(db.scalars(select(UserBranch.branch_id).where(UserBranch.user_id == user.user_id)).all())


def ensure_branch_visible(db: Session, user: CurrentUser, branch_id: int) -> None:
    branch_ids = visible_branch_ids(db, user)
    if branch_ids is not None and branch_id not in branch_ids:
        raise ForbiddenError("No access to this branch")
