from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import JSONType, MasterBase, TenantBase


class AuditActorType(str, enum.Enum):
    USER = "USER"
    SYSTEM = "SYSTEM"


class EmploymentStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    RESIGNED = "resigned"


class ShiftStatus(str, enum.Enum):
    OPEN = "open"
    STARTED = "started"
    ENDED = "ended"


class CheckInStatus(str, enum.Enum):
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"


class ShiftLogType(str, enum.Enum):
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"
    SHIFT_UPDATED = "shift_updated"
    SHIFT_ENDED = "shift_ended"
    AUTHORIZATION_RESOLVED = "authorization_resolved"


class AuthorizationType(str, enum.Enum):
    EARLY_CHECK_IN = "early_check_in"
    TARDINESS = "tardiness"
    EARLY_CHECK_OUT = "early_check_out"
    LATE_CHECK_OUT = "late_check_out"
    OVERTIME = "overtime"


class AuthorizationStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NO_APPROVAL_NEEDED = "no_approval_needed"


class OvertimeType(str, enum.Enum):
    NORMAL_OVERTIME = "normal_overtime"
    OVERTIME_PREMIUM = "overtime_premium"


class ExchangeStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ExchangeStage(str, enum.Enum):
    AWAITING_EMPLOYEE = "awaiting_employee"
    AWAITING_HR = "awaiting_hr"
    RESOLVED = "resolved"


class PosSessionStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class SyncJobStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENDING = "SENDING"
    DONE = "DONE"
    DEAD_LETTER = "DEAD_LETTER"


# ---------------------------------------------------------------------------
# Master database
# ---------------------------------------------------------------------------


class Company(MasterBase):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    db_name: Mapped[str] = mapped_column(String(63), nullable=False, unique=True)
    company_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    migration_version: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_migrated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
    )

    erp_branches: Mapped[list[ErpBranchDirectory]] = relationship(back_populates="company")


class ErpBranchDirectory(MasterBase):
    __tablename__ = "erp_branch_directory"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    erp_company_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True, index=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    branch_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    company: Mapped[Company] = relationship(back_populates="erp_branches")


class User(MasterBase):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), nullable=False, default="", server_default=text("''"))
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    user_key: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    employment_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=EmploymentStatus.ACTIVE.value,
        server_default=text("'active'"),
    )
    push_notifications_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    roles: Mapped[list[Role]] = relationship(secondary="user_roles", lazy="selectin")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_suspended(self) -> bool:
        return self.employment_status == EmploymentStatus.SUSPENDED.value


class Role(MasterBase):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)


class UserRole(MasterBase):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), nullable=False)


class UserCompanyAccess(MasterBase):
    __tablename__ = "user_company_access"
    __table_args__ = (UniqueConstraint("user_id", "company_id", name="uq_user_company_access_user_company"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))


class ShiftExchangeRequest(MasterBase):
    __tablename__ = "shift_exchange_requests"
    __table_args__ = (
        Index(
            "shift_exchange_requests_pending_requester_shift_unique",
            "requester_company_id",
            "requester_shift_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index(
            "shift_exchange_requests_pending_accepting_shift_unique",
            "accepting_company_id",
            "accepting_shift_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    requester_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    accepting_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    requester_company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False)
    requester_company_db_name: Mapped[str] = mapped_column(String(63), nullable=False)
    requester_branch_id: Mapped[int] = mapped_column(Integer, nullable=False)
    requester_shift_id: Mapped[int] = mapped_column(Integer, nullable=False)
    requester_shift_erp_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    accepting_company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False)
    accepting_company_db_name: Mapped[str] = mapped_column(String(63), nullable=False)
    accepting_branch_id: Mapped[int] = mapped_column(Integer, nullable=False)
    accepting_shift_id: Mapped[int] = mapped_column(Integer, nullable=False)
    accepting_shift_erp_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ExchangeStatus.PENDING.value,
        server_default=text("'pending'"),
        index=True,
    )
    approval_stage: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=ExchangeStage.AWAITING_EMPLOYEE.value,
        server_default=text("'awaiting_employee'"),
    )
    employee_decision_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    employee_rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    hr_decision_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    hr_decision_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    hr_rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    requester_swap_applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepting_swap_applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    swap_last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
    )


class AuditLog(MasterBase):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    company_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)


# ---------------------------------------------------------------------------
# Tenant database
# ---------------------------------------------------------------------------


class Branch(TenantBase):
    __tablename__ = "branches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    erp_branch_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    is_main_branch: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class UserBranch(TenantBase):
    __tablename__ = "user_branches"
    __table_args__ = (UniqueConstraint("user_id", "branch_id", name="uq_user_branches_user_branch"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))


class EmployeeShift(TenantBase):
    __tablename__ = "employee_shifts"
    __table_args__ = (
        UniqueConstraint("erp_shift_id", "branch_id", name="uq_employee_shifts_erp_shift_branch"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    erp_shift_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    employee_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    employee_avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    duty_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    duty_color: Mapped[int | None] = mapped_column(Integer, nullable=True)
    shift_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    shift_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    allocated_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0, server_default=text("0"))
    total_worked_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ShiftStatus.OPEN.value,
        server_default=text("'open'"),
        index=True,
    )
    check_in_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    pending_approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    erp_payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
    )

    branch: Mapped[Branch] = relationship()


class ShiftLog(TenantBase):
    __tablename__ = "shift_logs"
    __table_args__ = (
        UniqueConstraint("erp_attendance_id", "log_type", name="uq_shift_logs_attendance_log_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shift_id: Mapped[int | None] = mapped_column(
        ForeignKey("employee_shifts.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    log_type: Mapped[str] = mapped_column(String(40), nullable=False)
    erp_attendance_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    worked_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    cumulative_minutes: Mapped[float | None] = mapped_column(Float, nullable=True)
    changes: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    erp_payload: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class ShiftAuthorization(TenantBase):
    __tablename__ = "shift_authorizations"
    __table_args__ = (
        UniqueConstraint("shift_log_id", "auth_type", name="uq_shift_authorizations_log_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shift_id: Mapped[int] = mapped_column(
        ForeignKey("employee_shifts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    shift_log_id: Mapped[int | None] = mapped_column(
        ForeignKey("shift_logs.id", ondelete="SET NULL"),
        nullable=True,
    )
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    auth_type: Mapped[str] = mapped_column(String(30), nullable=False)
    diff_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    needs_employee_reason: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    employee_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=AuthorizationStatus.PENDING.value,
        server_default=text("'pending'"),
        index=True,
    )
    overtime_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    resolved_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class EmployeeNotification(TenantBase):
    __tablename__ = "employee_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="info", server_default=text("'info'"))
    link_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class PushSubscription(TenantBase):
    __tablename__ = "push_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    p256dh: Mapped[str] = mapped_column(Text, nullable=False)
    auth: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class PosSession(TenantBase):
    __tablename__ = "pos_sessions"
    __table_args__ = (
        UniqueConstraint("erp_session_id", "branch_id", name="uq_pos_sessions_erp_session_branch"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    erp_session_id: Mapped[str] = mapped_column(String(255), nullable=False)
    session_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PosSessionStatus.OPEN.value,
        server_default=text("'open'"),
    )
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closing_reports: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    erp_payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class PosVerification(TenantBase):
    __tablename__ = "pos_verifications"
    __table_args__ = (
        UniqueConstraint(
            "branch_id",
            "verification_type",
            "external_ref",
            name="uq_pos_verifications_branch_type_ref",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    pos_session_id: Mapped[int | None] = mapped_column(
        ForeignKey("pos_sessions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    verification_type: Mapped[str] = mapped_column(String(40), nullable=False)
    external_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", server_default=text("'pending'"))
    cashier_user_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    erp_payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class SyncJob(TenantBase):
    __tablename__ = "sync_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    scheduled_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SyncJobStatus.PENDING.value,
        server_default=text("'PENDING'"),
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
    )
