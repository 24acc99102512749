from __future__ import annotations

import logging
import re

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.db import ConnectionManager, validate_db_name
from app.errors import ApiError, ConflictError, NotFoundError
from app.models import Branch, Company, ErpBranchDirectory
from app.services.tenant_migrations import TenantMigrationError, TenantMigrator, migrate_company

logger = logging.getLogger("app.provisioning")


class ProvisioningError(ApiError):
    def __init__(self, message: str, *, code: str = "PROVISIONING_FAILED"):
        super().__init__(status_code=500, code=code, message=message)


def db_name_for_slug(slug: str) -> str:
    return validate_db_name("tenant_" + re.sub(r"[^a-z0-9]+", "_", slug.strip().lower()).strip("_"))


def get_company(master_db: Session, company_id: int) -> Company:
    company = master_db.get(Company, company_id)
    if company is None:
        raise NotFoundError("Company not found", code="COMPANY_NOT_FOUND")
    return company


def list_companies(master_db: Session, *, include_inactive: bool = False) -> list[Company]:
    stmt = select(Company).order_by(Company.id.asc())
    if not include_inactive:
        stmt = stmt.where(Company.is_active.is_(True))
    return list(master_db.scalars(stmt).all())


def provision_company(
    manager: ConnectionManager,
    master_db: Session,
    *,
    name: str,
    slug: str,
    company_code: str,
    migrator: TenantMigrator | None = None,
) -> Company:
    """Register a company and bring up its tenant database at the latest schema.

    A failure after the database was created drops it again and removes the company row.
    """
    slug = slug.strip().lower()
    company_code = company_code.strip().upper()
    db_name = db_name_for_slug(slug)

    clash = master_db.scalar(
        select(Company.id).where(
            or_(Company.slug == slug, Company.company_code == company_code, Company.db_name == db_name)
        )
    )
    if clash is not None:
        raise ConflictError("Company slug or code is already in use", code="COMPANY_EXISTS")

    company = Company(name=name.strip(), slug=slug, db_name=db_name, company_code=company_code, is_active=True)
    master_db.add(company)
    try:
        master_db.commit()
    except IntegrityError as exc:
        master_db.rollback()
        raise ConflictError("Company slug or code is already in use", code="COMPANY_EXISTS") from exc
    master_db.refresh(company)

    database_created = False
    try:
        manager.create_database(db_name)
        database_created = True
        result = migrate_company(manager, master_db, company, migrator=migrator)
    except (ApiError, SQLAlchemyError, TenantMigrationError) as exc:
        master_db.rollback()
        logger.error(
            "company_provision_failed",
            extra={"company_id": company.id, "db_name": db_name, "error": str(exc)},
        )
        _undo_provision(manager, master_db, company, drop_database=database_created)
        raise ProvisioningError(f"Company provisioning failed: {exc}") from exc

    logger.info(
        "company_provisioned",
        extra={"company_id": company.id, "db_name": db_name, "migration_version": result.current_version},
    )
    return company


def _undo_provision(manager: ConnectionManager, master_db: Session, company: Company, *, drop_database: bool) -> None:
    if drop_database:
        try:
            manager.drop_database(company.db_name)
        except (ApiError, SQLAlchemyError):
            logger.exception("company_provision_cleanup_failed", extra={"db_name": company.db_name})
    else:
        manager.close_tenant(company.db_name)
    master_db.delete(company)
    master_db.commit()


def register_branch(
    manager: ConnectionManager,
    master_db: Session,
    *,
    company: Company,
    name: str,
    erp_branch_id: int,
    is_main_branch: bool = False,
) -> Branch:
    if not company.is_active:
        raise ConflictError("Company is inactive", code="COMPANY_INACTIVE")
    owner = master_db.scalar(
        select(ErpBranchDirectory.company_id).where(ErpBranchDirectory.erp_company_id == erp_branch_id)
    )
    if owner is not None and owner != company.id:
        raise ConflictError(f"ERP company_id {erp_branch_id} is already registered to another company")

    with manager.tenant_session(company.db_name) as db:
        branch = db.scalar(select(Branch).where(Branch.erp_branch_id == str(erp_branch_id)))
        if branch is None:
            branch = Branch(name=name.strip(), erp_branch_id=str(erp_branch_id), is_main_branch=is_main_branch)
            db.add(branch)
        else:
            branch.name = name.strip()
            branch.is_main_branch = is_main_branch
        db.commit()
        db.refresh(branch)

    entry = master_db.scalar(select(ErpBranchDirectory).where(ErpBranchDirectory.erp_company_id == erp_branch_id))
    if entry is None:
        master_db.add(ErpBranchDirectory(erp_company_id=erp_branch_id, company_id=company.id, branch_id=branch.id))
    else:
        entry.branch_id = branch.id
    try:
        master_db.commit()
    except IntegrityError as exc:
        master_db.rollback()
        raise ConflictError(f"ERP company_id {erp_branch_id} is already registered to another company") from exc

    logger.info(
        "branch_registered",
        extra={"company_id": company.id, "branch_id": branch.id, "erp_branch_id": erp_branch_id},
    )
    return branch


def deactivate_company(manager: ConnectionManager, master_db: Session, company: Company) -> Company:
    company.is_active = False
    master_db.commit()
    manager.close_tenant(company.db_name)
    logger.info("company_deactivated", extra={"company_id": company.id, "db_name": company.db_name})
    return company
