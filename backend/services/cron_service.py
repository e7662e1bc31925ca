"""Cronjob CRUD and the in-process scheduler that runs due jobs.

The scheduler polls on a fixed interval. Each tick first frees claims left
behind by a crashed run, then claims due jobs (see ``db.stores.cronjobs``) and
runs them concurrently, each one against its owner's gateway. A run always
ends with exactly one terminal execution record, a released claim and a
recomputed ``next_run_at``, whatever the gateway did.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from config import config
from core.config import settings
from core.errors import Conflict, Forbidden, NotFound, ValidationError
from db.session import SessionLocal, get_or_use_session
from db.stores import cronjobs as cron_store
from db.stores import users as user_store
from schemas.cronjob_schema import (
    AtSchedule,
    CronSchedule,
    Cronjob,
    CronjobCreate,
    CronjobExecution,
    CronjobExecutionList,
    CronjobList,
    CronjobUpdate,
    EverySchedule,
    ScheduleValidationResult,
    SchedulerStatus,
    SystemEventPayload,
)
from services.gateway_client import GatewayClient, GatewayError, GatewayTarget, build_hook_request, session_key_for
from services.schedule import (
    SCHEDULE_AT,
    SCHEDULE_EVERY,
    compute_next_run,
    is_valid_schedule,
    next_fire_time,
    preview_fire_times,
    schedule_value,
)
from utils.clock import utcnow
from utils.db import safe_commit
from utils.timing import timeit

logger = logging.getLogger(__name__)

TRIGGER_SCHEDULE = "schedule"
TRIGGER_MANUAL = "manual"

MAINTENANCE_INTERVAL = timedelta(hours=1)


# ---------------------------------------------------------------------------
# Mapping request models onto columns
# ---------------------------------------------------------------------------

def _schedule_columns(schedule) -> Dict[str, Any]:
    columns = {
        "schedule_type": schedule.kind,
        "schedule_expr": None,
        "schedule_tz": None,
        "schedule_interval_ms": None,
        "schedule_anchor_ms": None,
        "schedule_at_ms": None,
    }
    if isinstance(schedule, CronSchedule):
        columns.update(schedule_expr=schedule.expr.strip(), schedule_tz=schedule.tz or None)
    elif isinstance(schedule, EverySchedule):
        columns.update(schedule_interval_ms=schedule.every_ms, schedule_anchor_ms=schedule.anchor_ms)
    elif isinstance(schedule, AtSchedule):
        columns.update(schedule_at_ms=schedule.at_ms)
    return columns


def _schedule_value(schedule) -> Any:
    if isinstance(schedule, CronSchedule):
        return schedule.expr.strip()
    if isinstance(schedule, EverySchedule):
        return schedule.every_ms
    return schedule.at_ms


def _payload_columns(payload) -> Dict[str, Any]:
    if isinstance(payload, SystemEventPayload):
        return {
            "payload_kind": payload.kind,
            "message": payload.text,
            "wake_mode": payload.wake_mode,
            "model": None,
            "thinking": None,
            "timeout_seconds": None,
            "deliver": False,
            "channel": None,
            "to_recipient": None,
            "best_effort_deliver": False,
        }
    return {
        "payload_kind": payload.kind,
        "message": payload.message,
        "wake_mode": payload.wake_mode,
        "model": payload.model,
        "thinking": payload.thinking,
        "timeout_seconds": payload.timeout_seconds,
        "deliver": payload.deliver,
        "channel": payload.channel,
        "to_recipient": payload.to,
        "best_effort_deliver": payload.best_effort_deliver,
    }


def _require_valid_schedule(schedule) -> None:
    tz = schedule.tz if isinstance(schedule, CronSchedule) else None
    if not is_valid_schedule(schedule.kind, _schedule_value(schedule), tz):
        if isinstance(schedule, CronSchedule):
            raise ValidationError("Invalid cron schedule format")
        raise ValidationError("Invalid schedule")


def _first_run(schedule, now: datetime) -> Optional[datetime]:
    tz = schedule.tz if isinstance(schedule, CronSchedule) else None
    anchor = schedule.anchor_ms if isinstance(schedule, EverySchedule) else None
    return next_fire_time(schedule.kind, _schedule_value(schedule), now, tz=tz, anchor_ms=anchor)


async def _owned_job(db: AsyncSession, owner_id: Optional[str], job_id: str, is_admin: bool = False):
    job = await cron_store.get_cronjob(db, job_id)
    if job is None:
        raise NotFound("Cronjob")
    if not is_admin and job.owner_id != owner_id:
        raise Forbidden("You don't have access to this cronjob")
    return job


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

async def create_cronjob(owner_id: str, data: CronjobCreate, db: AsyncSession = None) -> Cronjob:
    _require_valid_schedule(data.schedule)
    async with get_or_use_session(db) as _db:
        max_jobs = config.get_max_jobs_per_user()
        if max_jobs:
            _, total = await cron_store.list_cronjobs_by_owner(_db, owner_id, limit=1)
            if total >= max_jobs:
                raise ValidationError(f"Cronjob limit reached ({max_jobs})")

        next_run_at = _first_run(data.schedule, utcnow()) if data.enabled else None
        job = await cron_store.create_cronjob(
            _db,
            owner_id=owner_id,
            name=data.name.strip(),
            description=data.description,
            agent_id=data.agent_id,
            session_target=data.session_target,
            enabled=data.enabled,
            delete_after_run=data.delete_after_run,
            next_run_at=next_run_at,
            job_metadata=data.metadata,
            **_schedule_columns(data.schedule),
            **_payload_columns(data.payload),
        )
        await safe_commit(_db)
        logger.info(f"Created cronjob {job.id} ({job.schedule_type}) for user {owner_id}; next run {next_run_at}")
        return Cronjob.from_model(job)


async def get_cronjob(owner_id: Optional[str], job_id: str, is_admin: bool = False, db: AsyncSession = None) -> Cronjob:
    async with get_or_use_session(db) as _db:
        job = await _owned_job(_db, owner_id, job_id, is_admin)
        return Cronjob.from_model(job)


async def update_cronjob(owner_id: str, job_id: str, data: CronjobUpdate, db: AsyncSession = None) -> Cronjob:
    changes = data.model_dump(exclude_unset=True)
    async with get_or_use_session(db) as _db:
        job = await _owned_job(_db, owner_id, job_id)

        values: Dict[str, Any] = {}
        for field in ("name", "agent_id", "session_target", "delete_after_run"):
            if field in changes and changes[field] is not None:
                values[field] = changes[field]
        if "description" in changes:
            values["description"] = changes["description"]
        if changes.get("metadata") is not None:
            values["job_metadata"] = changes["metadata"]
        if data.payload is not None:
            values.update(_payload_columns(data.payload))

        enabled = job.enabled if data.enabled is None else data.enabled
        values["enabled"] = enabled
        if data.schedule is not None:
            _require_valid_schedule(data.schedule)
            values.update(_schedule_columns(data.schedule))
            values["next_run_at"] = _first_run(data.schedule, utcnow()) if enabled else None
        elif not enabled:
            values["next_run_at"] = None
        elif not job.enabled:
            # Re-enabled without a schedule change; a one-shot that already ran stays spent
            values["next_run_at"] = next_fire_time(
                job.schedule_type,
                schedule_value(job),
                utcnow(),
                tz=job.schedule_tz,
                anchor_ms=job.schedule_anchor_ms,
                fired=job.schedule_type == SCHEDULE_AT and job.last_run_at is not None,
            )

        updated = await cron_store.update_cronjob(_db, job_id, values)
        if updated is None:
            raise NotFound("Cronjob")
        await safe_commit(_db)
        return Cronjob.from_model(updated)


async def toggle_cronjob(owner_id: str, job_id: str, enabled: bool, db: AsyncSession = None) -> Cronjob:
    return await update_cronjob(owner_id, job_id, CronjobUpdate(enabled=enabled), db=db)


async def delete_cronjob(owner_id: Optional[str], job_id: str, is_admin: bool = False, db: AsyncSession = None) -> None:
    async with get_or_use_session(db) as _db:
        await _owned_job(_db, owner_id, job_id, is_admin)
        if not await cron_store.delete_cronjob(_db, job_id):
            raise NotFound("Cronjob")
        await safe_commit(_db)
        logger.info(f"Deleted cronjob {job_id}")


async def list_cronjobs(
    owner_id: str,
    enabled: Optional[bool] = None,
    limit: int = 100,
    offset: int = 0,
    db: AsyncSession = None,
) -> CronjobList:
    async with get_or_use_session(db) as _db:
        jobs, total = await cron_store.list_cronjobs_by_owner(_db, owner_id, enabled, limit, offset)
        return CronjobList(cronjobs=[Cronjob.from_model(j) for j in jobs], total=total, limit=limit, offset=offset)


async def list_all_cronjobs(
    user_id: Optional[str] = None,
    enabled: Optional[bool] = None,
    limit: int = 50,
    offset: int = 0,
    db: AsyncSession = None,
) -> CronjobList:
    async with get_or_use_session(db) as _db:
        rows, total = await cron_store.list_all_cronjobs(_db, user_id, enabled, limit, offset)
        items = [Cronjob.from_model(job, owner_email=email, owner_name=name) for job, email, name in rows]
        return CronjobList(cronjobs=items, total=total, limit=limit, offset=offset)


async def get_executions(
    owner_id: Optional[str],
    job_id: str,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    is_admin: bool = False,
    db: AsyncSession = None,
) -> CronjobExecutionList:
    async with get_or_use_session(db) as _db:
        await _owned_job(_db, owner_id, job_id, is_admin)
        rows, total = await cron_store.list_executions(_db, job_id, status, limit, offset)
        return CronjobExecutionList(
            executions=[CronjobExecution.model_validate(r) for r in rows],
            total=total,
            limit=limit,
            offset=offset,
        )


def validate_schedule(schedule, count: Optional[int] = None, now: Optional[datetime] = None) -> ScheduleValidationResult:
    """Check a schedule and preview its next fire times."""
    count = count or config.get_preview_runs()
    tz = schedule.tz if isinstance(schedule, CronSchedule) else None
    value = _schedule_value(schedule)
    if not is_valid_schedule(schedule.kind, value, tz):
        return ScheduleValidationResult(valid=False, error="Invalid schedule")
    anchor = schedule.anchor_ms if isinstance(schedule, EverySchedule) else None
    runs = preview_fire_times(schedule.kind, value, now or utcnow(), count, tz=tz, anchor_ms=anchor)
    return ScheduleValidationResult(valid=True, next_runs=runs)


# ---------------------------------------------------------------------------
# Scheduler / runner
# ---------------------------------------------------------------------------

class CronScheduler:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = None,
        gateway=None,
        clock: Callable[[], datetime] = None,
        interval_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        execution_timeout: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        stale_grace_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.gateway = gateway or GatewayClient()
        self.clock = clock or utcnow
        self.interval_seconds = float(interval_seconds or settings.CRON_POLL_INTERVAL_SECONDS)
        self.batch_size = int(batch_size or settings.CRON_BATCH_SIZE)
        self.execution_timeout = float(execution_timeout or settings.CRON_EXECUTION_TIMEOUT_SECONDS)
        self.max_concurrency = int(max_concurrency or settings.CRON_MAX_CONCURRENCY)
        self.stale_grace_seconds = float(
            settings.CRON_STALE_CLAIM_GRACE_SECONDS if stale_grace_seconds is None else stale_grace_seconds
        )

        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None
        self._active_runs = 0
        self._last_tick_at: Optional[datetime] = None
        self._last_tick_claimed = 0
        self._last_maintenance_at: Optional[datetime] = None

    # -- lifecycle ---------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        if self.running:
            logger.info("Cron scheduler already running")
            return
        logger.info(
            f"Starting cron scheduler: interval={self.interval_seconds}s batch={self.batch_size} "
            f"timeout={self.execution_timeout}s concurrency={self.max_concurrency}"
        )
        self._stopping = asyncio.Event()
        self._loop_task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        if not self.running:
            return
        self._stopping.set()
        await self._loop_task
        self._loop_task = None
        if self._tick_task is not None and not self._tick_task.done():
            done, _ = await asyncio.wait({self._tick_task}, timeout=self.execution_timeout)
            if not done:
                logger.warning("Cron tick still running at shutdown; cancelling it")
                self._tick_task.cancel()
        logger.info("Cron scheduler stopped")

    async def _run_loop(self) -> None:
        while not self._stopping.is_set():
            self._fire_tick()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def _fire_tick(self) -> None:
        if self._tick_task is not None and not self._tick_task.done():
            logger.info("Previous cron tick still in flight; skipping this one")
            return
        self._tick_task = asyncio.create_task(self._guarded_tick())

    async def _guarded_tick(self) -> None:
        try:
            await self.tick()
        except Exception as e:
            logger.exception(f"Cron tick failed: {e}")

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            running=self.running,
            interval_seconds=self.interval_seconds,
            tick_in_progress=self._tick_task is not None and not self._tick_task.done(),
            last_tick_at=self._last_tick_at,
            last_tick_claimed=self._last_tick_claimed,
            active_runs=self._active_runs,
        )

    # -- tick --------------------------------------------------------------

    @timeit("cron.tick", slow_ms=30000)
    async def tick(self) -> int:
        """Recover stale claims, claim due jobs and run them. Returns the number claimed."""
        now = self.clock()
        stale_before = now - timedelta(seconds=self.execution_timeout + self.stale_grace_seconds)
        async with self.session_factory() as db:
            released = await cron_store.release_stale_claims(db, stale_before, now)
            jobs = await cron_store.claim_due_jobs(db, now, self.batch_size)
            await db.commit()
        if released:
            logger.warning(f"Released {len(released)} stale cronjob claims: {released}")

        self._last_tick_at = now
        self._last_tick_claimed = len(jobs)
        if jobs:
            logger.info(f"Claimed {len(jobs)} due cronjobs")
            await asyncio.gather(*(self._run_claimed(job, TRIGGER_SCHEDULE) for job in jobs))

        await self._maybe_run_maintenance(now)
        return len(jobs)

    async def _run_claimed(self, job, trigger: str) -> Optional[Any]:
        async with self._semaphore:
            try:
                return await self._execute(job, trigger)
            except Exception as e:
                logger.exception(f"Cronjob {job.id} run crashed: {e}")
                await self._release_after_crash(job, e)
                return None

    async def _release_after_crash(self, job, error: Exception) -> None:
        try:
            now = self.clock()
            async with self.session_factory() as db:
                await cron_store.fail_running_executions(db, job.id, now, f"Internal error: {error}")
                current = await cron_store.get_cronjob(db, job.id)
                if current is not None:
                    await cron_store.finish_run(
                        db,
                        job.id,
                        next_run_at=compute_next_run(current, now, fired=True),
                        last_status="error",
                        last_error=f"Internal error: {error}",
                        last_duration_ms=None,
                    )
                await db.commit()
        except Exception as e:
            # Stale-claim recovery frees the job on a later tick
            logger.exception(f"Could not release claim on cronjob {job.id}: {e}")

    def _timeout_for(self, job) -> float:
        if job.timeout_seconds:
            return float(min(job.timeout_seconds, self.execution_timeout))
        return self.execution_timeout

    async def _execute(self, job, trigger: str):
        """Run one claimed job to completion and return its finished execution record."""
        started_at = self.clock()
        self._active_runs += 1
        try:
            async with self.session_factory() as db:
                execution = await cron_store.start_execution(db, job.id, started_at, trigger)
                owner = await user_store.get_user_by_id(db, job.owner_id)
                await db.commit()

            target = GatewayTarget(owner.gateway_url, owner.gateway_token) if owner else GatewayTarget(None, None)
            kind, body = build_hook_request(job)
            output = None
            error = None
            usage = None
            try:
                result = await self.gateway.dispatch(target, kind, body, self._timeout_for(job))
                output = result.output
                usage = result.usage
            except GatewayError as e:
                error = str(e)
                logger.warning(f"Cronjob {job.id} ({job.name}) failed: {error}")
            finished_at = self.clock()
            succeeded = error is None

            async with self.session_factory() as db:
                done = await cron_store.complete_execution(
                    db,
                    execution.id,
                    cron_store.EXECUTION_SUCCESS if succeeded else cron_store.EXECUTION_FAILURE,
                    finished_at,
                    output=output,
                    error=error,
                    usage=usage,
                )
                current = await cron_store.get_cronjob(db, job.id)
                if current is not None:
                    await self._finish(db, current, trigger, started_at, finished_at, done, error)
                await db.commit()

            logger.info(
                f"Cronjob {job.id} ({job.name}) {'succeeded' if succeeded else 'failed'} "
                f"in {done.duration_ms if done else '?'} ms [{trigger}]"
                + (f", {usage['total_tokens']} tokens" if usage else "")
            )
            return done
        finally:
            self._active_runs -= 1

    async def _finish(self, db: AsyncSession, job, trigger: str, started_at: datetime, finished_at: datetime, execution, error: Optional[str]) -> None:
        if trigger == TRIGGER_MANUAL:
            # Manual runs leave the schedule and its phase alone
            next_run_at = job.next_run_at if job.enabled else None
        elif job.schedule_type == SCHEDULE_EVERY:
            next_run_at = compute_next_run(job, started_at, fired=True)
        else:
            next_run_at = compute_next_run(job, finished_at, fired=True)

        await cron_store.finish_run(
            db,
            job.id,
            next_run_at=next_run_at,
            last_status="ok" if error is None else "error",
            last_error=error,
            last_duration_ms=execution.duration_ms if execution else None,
        )
        if job.delete_after_run and trigger == TRIGGER_SCHEDULE:
            await cron_store.delete_cronjob(db, job.id)
            logger.info(f"Deleted one-shot cronjob {job.id} after run")

    async def _maybe_run_maintenance(self, now: datetime) -> None:
        if self._last_maintenance_at is not None and now - self._last_maintenance_at < MAINTENANCE_INTERVAL:
            return
        self._last_maintenance_at = now
        cutoff = now - timedelta(days=settings.CRON_EXECUTION_RETENTION_DAYS)
        async with self.session_factory() as db:
            removed = await cron_store.delete_old_executions(db, cutoff)
            await db.commit()
        if removed:
            logger.info(f"Removed {removed} cronjob executions older than {cutoff}")

    # -- manual control ----------------------------------------------------

    async def run_now(self, owner_id: Optional[str], job_id: str, is_admin: bool = False):
        """Run a job immediately through the same claim guard as the poller."""
        async with self.session_factory() as db:
            await _owned_job(db, owner_id, job_id, is_admin)
            claimed = await cron_store.claim_job(db, job_id, self.clock())
            await db.commit()
        if claimed is None:
            raise Conflict("Cronjob is already running")
        try:
            execution = await self._execute(claimed, TRIGGER_MANUAL)
        except Exception as e:
            logger.exception(f"Manual run of cronjob {job_id} crashed: {e}")
            await self._release_after_crash(claimed, e)
            raise
        return CronjobExecution.model_validate(execution)

    async def stop_run(self, owner_id: Optional[str], job_id: str, is_admin: bool = False) -> bool:
        """Ask the gateway to abort the job's current turn. Local state is left to the run itself."""
        async with self.session_factory() as db:
            job = await _owned_job(db, owner_id, job_id, is_admin)
            owner = await user_store.get_user_by_id(db, job.owner_id)
        if job.running_at is None:
            return False
        target = GatewayTarget(owner.gateway_url, owner.gateway_token) if owner else GatewayTarget(None, None)
        stopped = await self.gateway.stop(target, session_key_for(job.id))
        logger.info(f"Stop requested for cronjob {job_id}: {'accepted' if stopped else 'not accepted'}")
        return stopped


_scheduler: Optional[CronScheduler] = None


def get_scheduler() -> CronScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = CronScheduler()
    return _scheduler
