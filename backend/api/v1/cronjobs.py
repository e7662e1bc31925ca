from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_current_user
from db.session import get_db_session
from schemas.cronjob_schema import (
    Cronjob,
    CronjobCreate,
    CronjobExecution,
    CronjobExecutionList,
    CronjobList,
    CronjobToggle,
    CronjobUpdate,
    ScheduleValidationRequest,
    ScheduleValidationResult,
    StopResult,
)
from schemas.user_schema import User as UserSchema
from services import cron_service
from services.cron_service import CronScheduler, get_scheduler

router = APIRouter()

@router.get("", response_model=CronjobList)
async def list_cronjobs(
    enabled: Optional[bool] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: UserSchema = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return await cron_service.list_cronjobs(current_user.id, enabled, limit, offset, db=db)

@router.post("", response_model=Cronjob, status_code=201)
async def create_cronjob(data: CronjobCreate, current_user: UserSchema = Depends(get_current_user), db: AsyncSession = Depends(get_db_session)):
    return await cron_service.create_cronjob(current_user.id, data, db=db)

@router.post("/validate", response_model=ScheduleValidationResult)
async def validate_schedule(data: ScheduleValidationRequest, current_user: UserSchema = Depends(get_current_user)):
    return cron_service.validate_schedule(data.schedule, data.count)

@router.get("/{job_id}", response_model=Cronjob)
async def get_cronjob(job_id: str, current_user: UserSchema = Depends(get_current_user), db: AsyncSession = Depends(get_db_session)):
    return await cron_service.get_cronjob(current_user.id, job_id, db=db)

@router.patch("/{job_id}", response_model=Cronjob)
async def update_cronjob(
    job_id: str,
    data: CronjobUpdate,
    current_user: UserSchema = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return await cron_service.update_cronjob(current_user.id, job_id, data, db=db)

@router.delete("/{job_id}")
async def delete_cronjob(job_id: str, current_user: UserSchema = Depends(get_current_user), db: AsyncSession = Depends(get_db_session)):
    await cron_service.delete_cronjob(current_user.id, job_id, db=db)
    return {"success": True}

@router.post("/{job_id}/toggle", response_model=Cronjob)
async def toggle_cronjob(
    job_id: str,
    data: CronjobToggle,
    current_user: UserSchema = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return await cron_service.toggle_cronjob(current_user.id, job_id, data.enabled, db=db)

@router.post("/{job_id}/run", response_model=CronjobExecution)
async def run_cronjob(
    job_id: str,
    current_user: UserSchema = Depends(get_current_user),
    scheduler: CronScheduler = Depends(get_scheduler),
):
    return await scheduler.run_now(current_user.id, job_id)

@router.post("/{job_id}/stop", response_model=StopResult)
async def stop_cronjob(
    job_id: str,
    current_user: UserSchema = Depends(get_current_user),
    scheduler: CronScheduler = Depends(get_scheduler),
):
    return StopResult(stopped=await scheduler.stop_run(current_user.id, job_id))

@router.get("/{job_id}/executions", response_model=CronjobExecutionList)
async def list_executions(
    job_id: str,
    status: Optional[str] = Query(None, pattern="^(running|success|failure)$"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: UserSchema = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return await cron_service.get_executions(current_user.id, job_id, status, limit, offset, db=db)
