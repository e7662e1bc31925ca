from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import admin_required
from db.session import get_db_session
from schemas.cronjob_schema import CronjobExecution, CronjobExecutionList, CronjobList, SchedulerStatus
from schemas.deposit_schema import AdminDepositList, AdminResolveRequest, AdminTokenAdjustmentResult, DepositOrder
from schemas.user_schema import AdminTokenAdjustment, User
from services import cron_service, deposit_service, user_service
from services.cron_service import CronScheduler, get_scheduler

router = APIRouter()

class UserStatusUpdate(BaseModel):
    is_active: bool

# -- users ------------------------------------------------------------------

@router.get("/admin/users")
async def all_users(
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db_session),
):
    return await user_service.list_users(search, limit, offset, db=db)

@router.patch("/admin/users/{user_id}/status", response_model=User)
async def update_user_status(user_id: str, data: UserStatusUpdate, current_user: User = Depends(admin_required), db: AsyncSession = Depends(get_db_session)):
    return await user_service.set_user_active(user_id, data.is_active, db=db)

@router.post("/admin/tokens/adjust", response_model=AdminTokenAdjustmentResult)
async def adjust_tokens(data: AdminTokenAdjustment, current_user: User = Depends(admin_required), db: AsyncSession = Depends(get_db_session)):
    return await deposit_service.admin_adjust_tokens(current_user.id, data.user_id, data.amount, data.reason, db=db)

# -- deposits ---------------------------------------------------------------

@router.get("/admin/deposits", response_model=AdminDepositList)
async def all_deposits(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db_session),
):
    return await deposit_service.list_all_deposits(page, limit, status, user_id, db=db)

@router.post("/admin/deposits/{order_id}/resolve", response_model=DepositOrder)
async def resolve_deposit(order_id: str, data: AdminResolveRequest, current_user: User = Depends(admin_required), db: AsyncSession = Depends(get_db_session)):
    return await deposit_service.admin_resolve_order(current_user.id, order_id, data.action, db=db)

# -- cronjobs ---------------------------------------------------------------

@router.get("/admin/cronjobs", response_model=CronjobList)
async def all_cronjobs(
    user_id: Optional[str] = None,
    enabled: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db_session),
):
    return await cron_service.list_all_cronjobs(user_id, enabled, limit, offset, db=db)

@router.get("/admin/cronjobs/{job_id}/executions", response_model=CronjobExecutionList)
async def cronjob_executions(
    job_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db_session),
):
    return await cron_service.get_executions(None, job_id, None, limit, offset, is_admin=True, db=db)

@router.post("/admin/cronjobs/{job_id}/run", response_model=CronjobExecution)
async def run_cronjob(job_id: str, current_user: User = Depends(admin_required), scheduler: CronScheduler = Depends(get_scheduler)):
    return await scheduler.run_now(None, job_id, is_admin=True)

@router.delete("/admin/cronjobs/{job_id}")
async def delete_cronjob(job_id: str, current_user: User = Depends(admin_required), db: AsyncSession = Depends(get_db_session)):
    await cron_service.delete_cronjob(None, job_id, is_admin=True, db=db)
    return {"success": True}

@router.get("/admin/scheduler/status", response_model=SchedulerStatus)
async def scheduler_status(current_user: User = Depends(admin_required), scheduler: CronScheduler = Depends(get_scheduler)):
    return scheduler.status()
