from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.audit import audit_user_action
from app.db import get_connection_manager, get_master_db
from app.errors import ApiError
from app.schemas import BranchCreateRequest, BranchRead, CompanyProvisionRequest, CompanyRead
from app.security import PERMISSION_MANAGE_COMPANIES, CurrentUser, require_permission
from app.services.provisioning import (
    deactivate_company,
    get_company,
    list_companies,
    provision_company,
    register_branch,
)
from app.services.tenant_migrations import (
    TenantMigrationError,
    TenantMigrator,
    migrate_all_companies,
    migrate_company,
)

router = APIRouter(prefix="/api/admin", tags=["admin"])

require_admin = require_permission(PERMISSION_MANAGE_COMPANIES)


@router.get("/companies", response_model=list[CompanyRead])
def admin_list_companies(
    include_inactive: bool = Query(default=False),
    _user: CurrentUser = Depends(require_admin),
    master_db: Session = Depends(get_master_db),
) -> list[CompanyRead]:
    return [CompanyRead.model_validate(row) for row in list_companies(master_db, include_inactive=include_inactive)]


@router.post("/companies", response_model=CompanyRead, status_code=201)
def admin_provision_company(
    payload: CompanyProvisionRequest,
    request: Request,
    user: CurrentUser = Depends(require_admin),
    master_db: Session = Depends(get_master_db),
) -> CompanyRead:
    company = provision_company(
        get_connection_manager(request),
        master_db,
        name=payload.name,
        slug=payload.slug,
        company_code=payload.company_code,
    )
    audit_user_action(
        request,
        master_db,
        user,
        "COMPANY_PROVISIONED",
        entity_type="company",
        entity_id=company.id,
        company_id=company.id,
        details={"db_name": company.db_name, "migration_version": company.migration_version},
    )
    return CompanyRead.model_validate(company)


@router.post("/companies/{company_id}/deactivate", response_model=CompanyRead)
def admin_deactivate_company(
    company_id: int,
    request: Request,
    user: CurrentUser = Depends(require_admin),
    master_db: Session = Depends(get_master_db),
) -> CompanyRead:
    company = deactivate_company(get_connection_manager(request), master_db, get_company(master_db, company_id))
    audit_user_action(
        request,
        master_db,
        user,
        "COMPANY_DEACTIVATED",
        entity_type="company",
        entity_id=company.id,
        company_id=company.id,
    )
    return CompanyRead.model_validate(company)


@router.post("/companies/{company_id}/branches", response_model=BranchRead, status_code=201)
def admin_register_branch(
    company_id: int,
    payload: BranchCreateRequest,
    request: Request,
    user: CurrentUser = Depends(require_admin),
    master_db: Session = Depends(get_master_db),
) -> BranchRead:
    branch = register_branch(
        get_connection_manager(request),
        master_db,
        company=get_company(master_db, company_id),
        name=payload.name,
        erp_branch_id=payload.erp_branch_id,
        is_main_branch=payload.is_main_branch,
    )
    audit_user_action(
        request,
        master_db,
        user,
        "BRANCH_REGISTERED",
        entity_type="branch",
        entity_id=branch.id,
        company_id=company_id,
        details={"erp_branch_id": payload.erp_branch_id},
    )
    return BranchRead.model_validate(branch)


@router.get("/companies/{company_id}/migrations")
def admin_migration_status(
    company_id: int,
    request: Request,
    _user: CurrentUser = Depends(require_admin),
    master_db: Session = Depends(get_master_db),
) -> dict[str, Any]:
    company = get_company(master_db, company_id)
    engine = get_connection_manager(request).get_tenant(company.db_name)
    return {"company_id": company.id, "db_name": company.db_name, **TenantMigrator().status(engine).to_dict()}


@router.post("/companies/{company_id}/migrate")
def admin_migrate_company(
    company_id: int,
    request: Request,
    user: CurrentUser = Depends(require_admin),
    master_db: Session = Depends(get_master_db),
) -> dict[str, Any]:
    company = get_company(master_db, company_id)
    try:
        result = migrate_company(get_connection_manager(request), master_db, company)
    except TenantMigrationError as exc:
        master_db.rollback()
        raise ApiError(status_code=500, code="TENANT_MIGRATION_FAILED", message=str(exc)) from exc
    report = {"company_id": company.id, "db_name": company.db_name, "ok": True, **result.to_dict()}
    audit_user_action(
        request,
        master_db,
        user,
        "TENANT_MIGRATED",
        entity_type="company",
        entity_id=company.id,
        company_id=company.id,
        details=report,
    )
    return report


@router.post("/migrations/run")
def admin_migrate_all(
    request: Request,
    include_inactive: bool = Query(default=False),
    user: CurrentUser = Depends(require_admin),
    master_db: Session = Depends(get_master_db),
) -> dict[str, Any]:
    report = migrate_all_companies(get_connection_manager(request), master_db, include_inactive=include_inactive)
    failed = [item["company_id"] for item in report if not item["ok"]]
    audit_user_action(
        request,
        master_db,
        user,
        "TENANT_MIGRATE_ALL",
        entity_type="company",
        entity_id=None,
        details={"companies": len(report), "failed": failed},
        success=not failed,
    )
    return {"ok": not failed, "companies": report}
