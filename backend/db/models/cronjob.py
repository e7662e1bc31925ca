from sqlalchemy import Column, String, Integer, BigInteger, Boolean, DateTime, Text, ForeignKey, Index
from sqlalchemy.types import JSON
from db.session import Base
from utils.clock import utcnow
import uuid


def _uuid() -> str:
    return str(uuid.uuid4())


class Cronjob(Base):
    __tablename__ = "cronjobs"

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    agent_id = Column(String(100), default="main", nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Schedule: cron | every | at
    schedule_type = Column(String(16), default="cron", nullable=False)
    schedule_expr = Column(String(255), nullable=True)
    schedule_tz = Column(String(64), nullable=True)
    schedule_interval_ms = Column(BigInteger, nullable=True)
    schedule_anchor_ms = Column(BigInteger, nullable=True)
    schedule_at_ms = Column(BigInteger, nullable=True)

    # Payload handed to the gateway, keyed by payload_kind
    payload_kind = Column(String(32), default="agentTurn", nullable=False)
    message = Column(Text, nullable=False)
    session_target = Column(String(16), default="main", nullable=False)
    wake_mode = Column(String(32), default="next-heartbeat", nullable=False)
    model = Column(String(255), nullable=True)
    thinking = Column(String(32), nullable=True)
    timeout_seconds = Column(Integer, nullable=True)
    deliver = Column(Boolean, default=True, nullable=False)
    channel = Column(String(64), nullable=True)
    to_recipient = Column(String(255), nullable=True)
    best_effort_deliver = Column(Boolean, default=False, nullable=False)

    # State
    enabled = Column(Boolean, default=True, nullable=False)
    delete_after_run = Column(Boolean, default=False, nullable=False)
    running_at = Column(DateTime, nullable=True)
    last_run_at = Column(DateTime, nullable=True)
    last_status = Column(String(16), nullable=True)
    last_error = Column(Text, nullable=True)
    last_duration_ms = Column(Integer, nullable=True)
    next_run_at = Column(DateTime, nullable=True)
    job_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_cronjobs_due", "enabled", "next_run_at", "running_at"),
    )


class CronjobExecution(Base):
    __tablename__ = "cronjob_executions"

    id = Column(String(36), primary_key=True, default=_uuid)
    # No foreign key: history outlives jobs removed by delete_after_run
    cronjob_id = Column(String(36), index=True, nullable=False)
    status = Column(String(16), default="running", nullable=False)
    trigger = Column(String(16), default="schedule", nullable=False)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    output = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    # Reported by the gateway, when it reports usage at all
    input_tokens = Column(Integer, nullable=True)
    output_tokens = Column(Integer, nullable=True)
    total_tokens = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_cronjob_executions_job_started", "cronjob_id", "started_at"),
    )
