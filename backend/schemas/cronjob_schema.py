from pydantic import BaseModel, Field, field_validator
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from datetime import datetime

from utils.clock import to_ms

# Last millisecond of year 9999
MAX_TIMESTAMP_MS = 253402300799999

WakeMode = Literal["now", "next-heartbeat"]
SessionTarget = Literal["main", "isolated"]

# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------

def _datetime_to_ms(value: datetime) -> int:
    # Naive datetimes are taken as UTC
    if value.tzinfo is not None:
        return int(value.timestamp() * 1000)
    return to_ms(value)

class CronSchedule(BaseModel):
    kind: Literal["cron"] = "cron"
    expr: str = Field(..., min_length=1, max_length=255)
    tz: Optional[str] = Field(None, max_length=64)

class EverySchedule(BaseModel):
    kind: Literal["every"] = "every"
    every_ms: int = Field(..., gt=0, le=MAX_TIMESTAMP_MS)
    anchor_ms: Optional[int] = Field(None, ge=0, le=MAX_TIMESTAMP_MS)

class AtSchedule(BaseModel):
    kind: Literal["at"] = "at"
    at_ms: int = Field(..., ge=0, le=MAX_TIMESTAMP_MS)

    @field_validator("at_ms", mode="before")
    @classmethod
    def _accept_datetime(cls, value):
        # Accept ISO timestamps as well as epoch milliseconds
        if isinstance(value, datetime):
            return _datetime_to_ms(value)
        if isinstance(value, str) and not value.isdigit():
            return _datetime_to_ms(datetime.fromisoformat(value.replace("Z", "+00:00")))
        return value

Schedule = Annotated[Union[CronSchedule, EverySchedule, AtSchedule], Field(discriminator="kind")]

# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

class SystemEventPayload(BaseModel):
    kind: Literal["systemEvent"] = "systemEvent"
    text: str = Field(..., min_length=1)
    wake_mode: WakeMode = "next-heartbeat"

class AgentTurnPayload(BaseModel):
    kind: Literal["agentTurn"] = "agentTurn"
    message: str = Field(..., min_length=1)
    wake_mode: WakeMode = "next-heartbeat"
    model: Optional[str] = Field(None, max_length=255)
    thinking: Optional[str] = Field(None, max_length=32)
    timeout_seconds: Optional[int] = Field(None, gt=0, le=3600)
    deliver: bool = True
    channel: Optional[str] = Field(None, max_length=64)
    to: Optional[str] = Field(None, max_length=255)
    best_effort_deliver: bool = False

Payload = Annotated[Union[SystemEventPayload, AgentTurnPayload], Field(discriminator="kind")]

# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class CronjobCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    agent_id: str = Field("main", max_length=100)
    schedule: Schedule
    payload: Payload
    session_target: SessionTarget = "main"
    enabled: bool = True
    delete_after_run: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

class CronjobUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    agent_id: Optional[str] = Field(None, max_length=100)
    schedule: Optional[Schedule] = None
    payload: Optional[Payload] = None
    session_target: Optional[SessionTarget] = None
    enabled: Optional[bool] = None
    delete_after_run: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None

class CronjobToggle(BaseModel):
    enabled: bool

class ScheduleValidationRequest(BaseModel):
    schedule: Schedule
    count: int = Field(5, ge=1, le=20)

# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class Cronjob(BaseModel):
    id: str
    owner_id: str
    name: str
    description: Optional[str] = None
    agent_id: str
    schedule: Schedule
    payload: Payload
    session_target: str
    enabled: bool
    delete_after_run: bool
    running: bool
    running_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    last_duration_ms: Optional[int] = None
    next_run_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    owner_email: Optional[str] = None
    owner_name: Optional[str] = None

    @classmethod
    def from_model(cls, job, owner_email: Optional[str] = None, owner_name: Optional[str] = None) -> "Cronjob":
        if job.schedule_type == "every":
            schedule = EverySchedule(every_ms=job.schedule_interval_ms, anchor_ms=job.schedule_anchor_ms)
        elif job.schedule_type == "at":
            schedule = AtSchedule(at_ms=job.schedule_at_ms)
        else:
            schedule = CronSchedule(expr=job.schedule_expr, tz=job.schedule_tz)

        if job.payload_kind == "systemEvent":
            payload = SystemEventPayload(text=job.message, wake_mode=job.wake_mode)
        else:
            payload = AgentTurnPayload(
                message=job.message,
                wake_mode=job.wake_mode,
                model=job.model,
                thinking=job.thinking,
                timeout_seconds=job.timeout_seconds,
                deliver=job.deliver,
                channel=job.channel,
                to=job.to_recipient,
                best_effort_deliver=job.best_effort_deliver,
            )

        return cls(
            id=job.id,
            owner_id=job.owner_id,
            name=job.name,
            description=job.description,
            agent_id=job.agent_id,
            schedule=schedule,
            payload=payload,
            session_target=job.session_target,
            enabled=job.enabled,
            delete_after_run=job.delete_after_run,
            running=job.running_at is not None,
            running_at=job.running_at,
            last_run_at=job.last_run_at,
            last_status=job.last_status,
            last_error=job.last_error,
            last_duration_ms=job.last_duration_ms,
            next_run_at=job.next_run_at,
            metadata=job.job_metadata or {},
            created_at=job.created_at,
            updated_at=job.updated_at,
            owner_email=owner_email,
            owner_name=owner_name,
        )

class CronjobList(BaseModel):
    cronjobs: List[Cronjob]
    total: int
    limit: int
    offset: int

class CronjobExecution(BaseModel):
    id: str
    cronjob_id: str
    status: str
    trigger: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    output: Optional[str] = None
    error: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None

    class Config:
        from_attributes = True

class CronjobExecutionList(BaseModel):
    executions: List[CronjobExecution]
    total: int
    limit: int
    offset: int

class ScheduleValidationResult(BaseModel):
    valid: bool
    next_runs: List[datetime] = Field(default_factory=list)
    error: Optional[str] = None

class StopResult(BaseModel):
    stopped: bool

class SchedulerStatus(BaseModel):
    running: bool
    interval_seconds: float
    tick_in_progress: bool
    last_tick_at: Optional[datetime] = None
    last_tick_claimed: int = 0
    active_runs: int = 0
