from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db import ConnectionManager
from app.errors import ApiError
from app.logging_utils import truncate_error
from app.models import Company, SyncJob, SyncJobStatus
from app.realtime import RealtimeHub
from app.services.erp_client import ErpClient, ErpError
from app.settings import get_settings
from app.timeutils import as_utc

logger = logging.getLogger("app.erp_sync")

JOB_TYPE_ERP_ATTENDANCE_SYNC = "erp_attendance_sync"
JOB_TYPE_ERP_PLANNING_SLOT_REASSIGN = "erp_planning_slot_reassign"
JOB_TYPE_EARLY_CHECK_IN_CHECK = "early_check_in_check"

# A claimed job whose worker died stays SENDING until this lease runs out, then it is claimable again.
CLAIM_LEASE = timedelta(minutes=10)
LEASE_EXPIRED_ERROR = "Claim lease expired before the job finished"

ErpClientFactory = Callable[[], ErpClient]
AfterCommit = Callable[[], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SyncJobContext:
    """What a job handler may touch besides its own tenant session."""

    company_id: int
    db_name: str
    manager: ConnectionManager | None = None
    hub: RealtimeHub | None = None
    erp_client_factory: ErpClientFactory = ErpClient.from_settings
    _erp_client: ErpClient | None = field(default=None, repr=False)

    def erp(self) -> ErpClient:
        if self._erp_client is None:
            self._erp_client = self.erp_client_factory()
        return self._erp_client

    def close(self) -> None:
        if self._erp_client is not None:
            self._erp_client.close()
            self._erp_client = None


def enqueue_job(
    db: Session,
    *,
    job_type: str,
    payload: dict[str, Any],
    idempotency_key: str,
    scheduled_at_utc: datetime | None = None,
) -> SyncJob:
    """Stage a job in the caller's transaction; an existing key wins."""
    existing = db.scalar(select(SyncJob).where(SyncJob.idempotency_key == idempotency_key))
    if existing is not None:
        return existing

    job = SyncJob(
        job_type=job_type,
        payload=payload,
        scheduled_at_utc=scheduled_at_utc or _utcnow(),
        status=SyncJobStatus.PENDING.value,
        attempts=0,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    db.flush()
    return job


def _claim_due_jobs(
    session: Session,
    *,
    now_utc: datetime,
    limit: int,
    max_attempts: int,
    job_ids: Sequence[int] | None = None,
) -> list[SyncJob]:
    """Move due PENDING jobs, and SENDING jobs whose lease ran out, to SENDING in their own transaction.

    While SENDING, ``scheduled_at_utc`` holds the lease deadline. A reclaimed job counts the
    lost run as an attempt, so a job that keeps killing its worker still reaches DEAD_LETTER.
    """
    if session.in_transaction():
        # The claim must be committed on its own; flush whatever the caller staged first.
        session.commit()

    dead: list[SyncJob] = []
    with session.begin():
        stmt = (
            select(SyncJob)
            .where(
                SyncJob.status.in_([SyncJobStatus.PENDING.value, SyncJobStatus.SENDING.value]),
                SyncJob.scheduled_at_utc <= now_utc,
            )
            .order_by(SyncJob.scheduled_at_utc.asc(), SyncJob.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        if job_ids is not None:
            stmt = stmt.where(SyncJob.id.in_(list(job_ids)))

        jobs: list[SyncJob] = []
        for job in session.scalars(stmt).all():
            if job.status == SyncJobStatus.SENDING.value:
                job.attempts = (job.attempts or 0) + 1
                job.last_error = LEASE_EXPIRED_ERROR
                if job.attempts >= max_attempts:
                    job.status = SyncJobStatus.DEAD_LETTER.value
                    dead.append(job)
                    continue
            job.status = SyncJobStatus.SENDING.value
            job.scheduled_at_utc = now_utc + CLAIM_LEASE
            jobs.append(job)

    for job in dead:
        logger.error(
            "sync_job_dead_letter",
            extra={"job_id": job.id, "job_type": job.job_type, "attempts": job.attempts, "error": job.last_error},
        )
    return jobs


def _mark_job_done(session: Session, *, job: SyncJob) -> SyncJob:
    job.status = SyncJobStatus.DONE.value
    job.attempts = (job.attempts or 0) + 1
    job.last_error = None
    session.commit()
    return job


def _mark_job_failure(
    session: Session,
    *,
    job_id: int,
    error: BaseException,
    now_utc: datetime,
    max_attempts: int,
) -> SyncJob | None:
    job = session.get(SyncJob, job_id)
    if job is None:
        return None

    next_attempts = (job.attempts or 0) + 1
    job.attempts = next_attempts
    job.last_error = truncate_error(error, limit=4000)
    if next_attempts < max_attempts:
        job.status = SyncJobStatus.PENDING.value
        job.scheduled_at_utc = now_utc + timedelta(minutes=2**next_attempts)
    else:
        job.status = SyncJobStatus.DEAD_LETTER.value

    session.commit()
    if job.status == SyncJobStatus.DEAD_LETTER.value:
        logger.error(
            "sync_job_dead_letter",
            extra={
                "job_id": job.id,
                "job_type": job.job_type,
                "attempts": job.attempts,
                "idempotency_key": job.idempotency_key,
                "error": job.last_error,
            },
        )
    else:
        logger.warning(
            "sync_job_retry_scheduled",
            extra={
                "job_id": job.id,
                "job_type": job.job_type,
                "attempts": job.attempts,
                "next_attempt_at": job.scheduled_at_utc.isoformat(),
                "error": job.last_error,
            },
        )
    return job


def _handle_attendance_sync(db: Session, job: SyncJob, context: SyncJobContext) -> list[AfterCommit]:
    payload = job.payload or {}
    attendance_id = int(payload["attendance_id"])
    field_name = str(payload["field"])
    value = str(payload["value"])
    erp = context.erp()

    if field_name == "check_in":
        erp.update_attendance_check_in(attendance_id, value)
    elif field_name == "check_out":
        erp.update_attendance_check_out(attendance_id, value)
    else:
        raise ValueError(f"Unsupported attendance field: {field_name}")

    for entry in erp.search_work_entries_by_attendance_id(attendance_id):
        entry_id = int(entry["id"])
        if field_name == "check_in":
            erp.update_work_entry_date_start(entry_id, value)
        else:
            erp.update_work_entry_date_stop(entry_id, value)
    return []


def _handle_planning_slot_reassign(db: Session, job: SyncJob, context: SyncJobContext) -> list[AfterCommit]:
    payload = job.payload or {}
    slot_id = int(payload["slot_id"])
    website_key = str(payload["website_key"])
    erp_company_id = int(payload["erp_company_id"])
    erp = context.erp()

    resource_id = erp.get_resource_id_by_website_key(website_key, erp_company_id)
    if resource_id is None:
        raise ErpError(f"No ERP resource for website key {website_key} in company {erp_company_id}")
    erp.update_planning_slot_state(slot_id, "draft")
    erp.update_planning_slot_resource(slot_id, resource_id)
    erp.update_planning_slot_state(slot_id, "published")
    return []


def _handle_early_check_in_check(db: Session, job: SyncJob, context: SyncJobContext) -> list[AfterCommit]:
    # Imported here: the projector itself enqueues this job type.
    from app.services.webhooks import apply_early_check_in_check

    return apply_early_check_in_check(db, payload=job.payload or {}, context=context)


JOB_HANDLERS: dict[str, Callable[[Session, SyncJob, SyncJobContext], list[AfterCommit]]] = {
    JOB_TYPE_ERP_ATTENDANCE_SYNC: _handle_attendance_sync,
    JOB_TYPE_ERP_PLANNING_SLOT_REASSIGN: _handle_planning_slot_reassign,
    JOB_TYPE_EARLY_CHECK_IN_CHECK: _handle_early_check_in_check,
}


def process_due_jobs(
    db: Session,
    *,
    context: SyncJobContext,
    now_utc: datetime | None = None,
    limit: int = 50,
    job_ids: Sequence[int] | None = None,
) -> list[SyncJob]:
    """Claim and run due outbox jobs of one tenant.

    Failures are retried with a 2^attempts minute backoff and dead-lettered
    after ``erp_sync_max_attempts``.
    """
    reference_utc = as_utc(now_utc or _utcnow())
    max_attempts = max(1, get_settings().erp_sync_max_attempts)

    claimed = _claim_due_jobs(
        db,
        now_utc=reference_utc,
        limit=max(1, limit),
        max_attempts=max_attempts,
        job_ids=job_ids,
    )
    processed: list[SyncJob] = []
    for job in claimed:
        handler = JOB_HANDLERS.get(job.job_type)
        try:
            if handler is None:
                raise ValueError(f"Unknown sync job type: {job.job_type}")
            after_commit = handler(db, job, context)
            processed.append(_mark_job_done(db, job=job))
        except Exception as exc:
            # Any handler failure goes through retry/dead-letter; a claimed job must not stay SENDING.
            if not isinstance(exc, (ErpError, ApiError, SQLAlchemyError, KeyError, ValueError, TypeError)):
                logger.exception("sync_job_handler_crashed", extra={"job_id": job.id, "job_type": job.job_type})
            db.rollback()
            failed = _mark_job_failure(
                db,
                job_id=job.id,
                error=exc,
                now_utc=reference_utc,
                max_attempts=max_attempts,
            )
            if failed is not None:
                processed.append(failed)
            continue

        for callback in after_commit:
            callback()
        logger.info(
            "sync_job_done",
            extra={"job_id": job.id, "job_type": job.job_type, "db_name": context.db_name},
        )
    return processed


def run_jobs_now(
    manager: ConnectionManager,
    *,
    company_id: int,
    db_name: str,
    job_ids: Sequence[int],
    hub: RealtimeHub | None = None,
    erp_client_factory: ErpClientFactory | None = None,
) -> list[SyncJob]:
    """Best-effort immediate attempt of freshly committed jobs; the worker retries leftovers."""
    if not job_ids:
        return []
    context = SyncJobContext(company_id=company_id, db_name=db_name, manager=manager, hub=hub)
    if erp_client_factory is not None:
        context.erp_client_factory = erp_client_factory
    try:
        with manager.tenant_session(db_name) as db:
            return process_due_jobs(db, context=context, job_ids=job_ids, limit=len(job_ids))
    except (ApiError, SQLAlchemyError) as exc:
        logger.warning(
            "sync_job_immediate_attempt_failed",
            extra={"db_name": db_name, "job_ids": list(job_ids), "error": str(exc)},
        )
        return []
    finally:
        context.close()


def run_sync_jobs_for_all_tenants(
    manager: ConnectionManager,
    master_db: Session,
    *,
    hub: RealtimeHub | None = None,
    erp_client_factory: ErpClientFactory | None = None,
    now_utc: datetime | None = None,
    limit_per_tenant: int = 50,
) -> dict[str, Any]:
    companies = list(
        master_db.scalars(select(Company).where(Company.is_active.is_(True)).order_by(Company.id.asc())).all()
    )
    summary: dict[str, Any] = {"tenants": 0, "processed": 0, "dead_letter": 0, "failed_tenants": []}
    for company in companies:
        context = SyncJobContext(company_id=company.id, db_name=company.db_name, manager=manager, hub=hub)
        if erp_client_factory is not None:
            context.erp_client_factory = erp_client_factory
        try:
            with manager.tenant_session(company.db_name) as db:
                jobs = process_due_jobs(db, context=context, now_utc=now_utc, limit=limit_per_tenant)
        except (ApiError, SQLAlchemyError) as exc:
            logger.exception("sync_jobs_tenant_failed", extra={"db_name": company.db_name})
            summary["failed_tenants"].append({"db_name": company.db_name, "error": truncate_error(exc, 500)})
            continue
        finally:
            context.close()
        summary["tenants"] += 1
        summary["processed"] += len(jobs)
        summary["dead_letter"] += sum(1 for job in jobs if job.status == SyncJobStatus.DEAD_LETTER.value)
    return summary
