"""Cronjob and execution persistence.

The claim is the scheduler's only concurrency primitive. A job is claimed by
a compare-and-set UPDATE that re-checks every "due" condition and only
succeeds while ``running_at`` is still NULL, so concurrent pollers (or a
poller and a manual run) can never both win the same job. Callers commit
right after claiming.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from db.models.cronjob import Cronjob, CronjobExecution
from db.models.user import User

EXECUTION_RUNNING = "running"
EXECUTION_SUCCESS = "success"
EXECUTION_FAILURE = "failure"


# ---------------------------------------------------------------------------
# Cronjob CRUD
# ---------------------------------------------------------------------------

async def create_cronjob(db: AsyncSession, **fields: Any) -> Cronjob:
    job = Cronjob(**fields)
    db.add(job)
    await db.flush()
    return job


async def get_cronjob(db: AsyncSession, job_id: str) -> Optional[Cronjob]:
    result = await db.execute(select(Cronjob).where(Cronjob.id == job_id).execution_options(populate_existing=True))
    return result.scalars().first()


async def update_cronjob(db: AsyncSession, job_id: str, values: Dict[str, Any]) -> Optional[Cronjob]:
    if values:
        await db.execute(
            update(Cronjob)
            .where(Cronjob.id == job_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    result = await db.execute(
        select(Cronjob).where(Cronjob.id == job_id).execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def delete_cronjob(db: AsyncSession, job_id: str) -> bool:
    result = await db.execute(
        delete(Cronjob).where(Cronjob.id == job_id).execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def list_cronjobs_by_owner(
    db: AsyncSession,
    owner_id: str,
    enabled: Optional[bool] = None,
    limit: int = 100,
    offset: int = 0,
) -> Tuple[List[Cronjob], int]:
    conditions = [Cronjob.owner_id == owner_id]
    if enabled is not None:
        conditions.append(Cronjob.enabled.is_(enabled))
    total = await db.execute(select(func.count(Cronjob.id)).where(*conditions))
    result = await db.execute(
        select(Cronjob).where(*conditions).order_by(Cronjob.created_at.desc()).limit(limit).offset(offset)
    )
    return list(result.scalars().all()), int(total.scalar_one())


async def list_all_cronjobs(
    db: AsyncSession,
    owner_id: Optional[str] = None,
    enabled: Optional[bool] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Tuple[Cronjob, Optional[str], Optional[str]]], int]:
    """Admin listing joined with the owner's email and name."""
    conditions = []
    if owner_id:
        conditions.append(Cronjob.owner_id == owner_id)
    if enabled is not None:
        conditions.append(Cronjob.enabled.is_(enabled))
    total = await db.execute(select(func.count(Cronjob.id)).where(*conditions))
    result = await db.execute(
        select(Cronjob, User.email, User.name)
        .outerjoin(User, User.id == Cronjob.owner_id)
        .where(*conditions)
        .order_by(Cronjob.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return [tuple(row) for row in result.all()], int(total.scalar_one())


# ---------------------------------------------------------------------------
# Claim / release
# ---------------------------------------------------------------------------

async def claim_due_jobs(db: AsyncSession, now: datetime, limit: int = 50) -> List[Cronjob]:
    """Claim at most ``limit`` due jobs, oldest ``next_run_at`` first."""
    candidates = await db.execute(
        select(Cronjob.id)
        .where(
            Cronjob.enabled.is_(True),
            Cronjob.next_run_at.is_not(None),
            Cronjob.next_run_at <= now,
            Cronjob.running_at.is_(None),
        )
        .order_by(Cronjob.next_run_at.asc())
        .limit(limit)
    )
    claimed_ids = []
    for job_id in candidates.scalars().all():
        result = await db.execute(
            update(Cronjob)
            .where(
                Cronjob.id == job_id,
                Cronjob.enabled.is_(True),
                Cronjob.next_run_at <= now,
                Cronjob.running_at.is_(None),
            )
            .values(running_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed_ids.append(job_id)
    if not claimed_ids:
        return []
    result = await db.execute(
        select(Cronjob)
        .where(Cronjob.id.in_(claimed_ids))
        .order_by(Cronjob.next_run_at.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def claim_job(db: AsyncSession, job_id: str, now: datetime) -> Optional[Cronjob]:
    """Claim one job regardless of its schedule (manual runs)."""
    result = await db.execute(
        update(Cronjob)
        .where(Cronjob.id == job_id, Cronjob.running_at.is_(None))
        .values(running_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return await update_cronjob(db, job_id, {})


async def finish_run(
    db: AsyncSession,
    job_id: str,
    next_run_at: Optional[datetime],
    last_status: str,
    last_error: Optional[str],
    last_duration_ms: Optional[int],
) -> bool:
    """Release the claim and store the outcome summary shown in listings."""
    result = await db.execute(
        update(Cronjob)
        .where(Cronjob.id == job_id)
        .values(
            running_at=None,
            next_run_at=next_run_at,
            last_status=last_status,
            last_error=last_error,
            last_duration_ms=last_duration_ms,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def release_stale_claims(db: AsyncSession, claimed_before: datetime, now: datetime) -> List[str]:
    """Free jobs whose claim outlived any possible run (the process died mid-run).

    Their dangling executions are closed as failures; ``next_run_at`` is left
    as is, so the job is due again on the next tick.
    """
    stale = await db.execute(
        select(Cronjob.id, Cronjob.running_at).where(
            Cronjob.running_at.is_not(None),
            Cronjob.running_at < claimed_before,
        )
    )
    released = []
    for job_id, running_at in stale.all():
        result = await db.execute(
            update(Cronjob)
            .where(Cronjob.id == job_id, Cronjob.running_at == running_at)
            .values(running_at=None, last_status="error", last_error="Run abandoned before completion")
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        await fail_running_executions(db, job_id, now, "Run abandoned before completion")
        released.append(job_id)
    return released


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------

async def start_execution(db: AsyncSession, job_id: str, started_at: datetime, trigger: str = "schedule") -> CronjobExecution:
    await db.execute(
        update(Cronjob)
        .where(Cronjob.id == job_id)
        .values(last_run_at=started_at)
        .execution_options(synchronize_session=False)
    )
    execution = CronjobExecution(cronjob_id=job_id, status=EXECUTION_RUNNING, trigger=trigger, started_at=started_at)
    db.add(execution)
    await db.flush()
    return execution


async def complete_execution(
    db: AsyncSession,
    execution_id: str,
    status: str,
    finished_at: datetime,
    output: Optional[str] = None,
    error: Optional[str] = None,
    usage: Optional[Dict[str, int]] = None,
) -> Optional[CronjobExecution]:
    """Move a running execution to its terminal status; a no-op once terminal."""
    execution = await get_execution(db, execution_id)
    if execution is None:
        return None
    duration_ms = max(0, int((finished_at - execution.started_at).total_seconds() * 1000))
    await db.execute(
        update(CronjobExecution)
        .where(CronjobExecution.id == execution_id, CronjobExecution.status == EXECUTION_RUNNING)
        .values(status=status, finished_at=finished_at, duration_ms=duration_ms, output=output, error=error, **(usage or {}))
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        select(CronjobExecution)
        .where(CronjobExecution.id == execution_id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def fail_running_executions(db: AsyncSession, job_id: str, finished_at: datetime, error: str) -> int:
    dangling = await db.execute(
        select(CronjobExecution.id).where(
            CronjobExecution.cronjob_id == job_id,
            CronjobExecution.status == EXECUTION_RUNNING,
        )
    )
    count = 0
    for execution_id in dangling.scalars().all():
        await complete_execution(db, execution_id, EXECUTION_FAILURE, finished_at, error=error)
        count += 1
    return count


async def get_execution(db: AsyncSession, execution_id: str) -> Optional[CronjobExecution]:
    result = await db.execute(select(CronjobExecution).where(CronjobExecution.id == execution_id))
    return result.scalars().first()


async def list_executions(
    db: AsyncSession,
    job_id: str,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[CronjobExecution], int]:
    conditions = [CronjobExecution.cronjob_id == job_id]
    if status:
        conditions.append(CronjobExecution.status == status)
    total = await db.execute(select(func.count(CronjobExecution.id)).where(*conditions))
    result = await db.execute(
        select(CronjobExecution)
        .where(*conditions)
        .order_by(CronjobExecution.started_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total.scalar_one())


async def delete_old_executions(db: AsyncSession, started_before: datetime) -> int:
    result = await db.execute(
        delete(CronjobExecution)
        .where(CronjobExecution.started_at < started_before, CronjobExecution.status != EXECUTION_RUNNING)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
