from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from dispatch_core.domain.state_machine import DeliveryStatus, RepairStatus, TaskType


def now_utc() -> datetime:
    return datetime.now(UTC)


class DispatchTaskBase(SQLModel):
    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str | None = Field(default=None, index=True)
    restaurant_id: str | None = Field(default=None, index=True)
    status: str = Field(default="pending", index=True)
    assigned_worker_id: str | None = Field(default=None, index=True)
    context_data: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class DeliveryOrder(DispatchTaskBase, table=True):
    __tablename__ = "delivery_orders"

    product_type: str | None = Field(default=None, index=True)


class RepairOrder(DispatchTaskBase, table=True):
    __tablename__ = "repair_orders"

    service_type: str | None = Field(default=None, index=True)


TASK_TABLES: dict[TaskType, type[DeliveryOrder] | type[RepairOrder]] = {
    TaskType.DELIVERY: DeliveryOrder,
    TaskType.REPAIR: RepairOrder,
}


class Worker(SQLModel, table=True):
    __tablename__ = "workers"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str | None = Field(default=None, index=True)
    name: str
    status: str = Field(default="active", index=True)
    skills: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    product_types: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    location: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str | None = Field(default=None, index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str = Field(index=True)
    target_type: str | None = None
    target_id: str | None = Field(default=None, index=True)
    task_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON, nullable=False),
    )


@dataclass(frozen=True)
class CallerScope:
    """Resolved caller identity; tenant_scope is None for platform-wide callers."""

    actor_id: str | None
    role: str | None
    tenant_scope: str | None


class ReasonCode(StrEnum):
    SKILL_MATCH = "SKILL_MATCH"
    DISTANCE = "DISTANCE"
    AVAILABILITY = "AVAILABILITY"
    LOAD_BALANCE = "LOAD_BALANCE"
    EXPERIENCE = "EXPERIENCE"
    NO_CANDIDATES = "NO_CANDIDATES"


class RejectReasonCategory(StrEnum):
    CUSTOMER_SPECIFIED = "CUSTOMER_SPECIFIED"
    URGENT_OVERRIDE = "URGENT_OVERRIDE"
    EXPERIENCE_PREFERENCE = "EXPERIENCE_PREFERENCE"
    PLATFORM_MISMATCH = "PLATFORM_MISMATCH"
    OTHER = "OTHER"


class Task(BaseModel):
    id: str
    type: TaskType
    table: str
    tenant_id: str | None = None
    restaurant_id: str | None = None
    status: DeliveryStatus | RepairStatus
    assigned_worker_id: str | None = None
    context: dict[str, Any] = PydanticField(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class Candidate(BaseModel):
    worker_id: str
    task_id: str
    reason: str
    primary_reason: ReasonCode = ReasonCode.SKILL_MATCH
    secondary_factors: list[ReasonCode] = PydanticField(default_factory=list)


class ScoreFactors(BaseModel):
    primary_reason: ReasonCode
    secondary_factors: list[ReasonCode] = PydanticField(default_factory=list)
    confidence_score: float = PydanticField(ge=0, le=1)
    model_version: str
    breakdown: dict[str, float] = PydanticField(default_factory=dict)


class Score(BaseModel):
    worker_id: str
    score: float
    factors: ScoreFactors


class PlatformRecommendation(BaseModel):
    primary_reason: ReasonCode
    secondary_factors: list[ReasonCode] = PydanticField(default_factory=list)
    confidence_score: float = PydanticField(ge=0, le=1)


class DispatchMatchRequest(BaseModel):
    task_id: str = PydanticField(min_length=1)
    task_type: TaskType | None = None


class DispatchMatchRead(BaseModel):
    candidates: list[Candidate]


class RecommendedCandidateRead(BaseModel):
    worker_id: str
    score: float
    reason: str


class DispatchRecommendRead(BaseModel):
    task_id: str
    recommended_worker_id: str | None
    reason: str
    platform_recommendation: PlatformRecommendation | None
    candidates: list[RecommendedCandidateRead]


class DispatchAllocateRequest(BaseModel):
    task_id: str = PydanticField(min_length=1)
    worker_id: str = PydanticField(min_length=1)
    task_type: TaskType | None = None
    decision_trace: dict[str, Any] | None = None


class DispatchAllocateRead(BaseModel):
    allocated: bool
    table: str


class AuditEntryRead(BaseModel):
    id: str
    action: str
    target_type: str | None
    target_id: str | None
    created_at: datetime
    metadata: dict[str, Any]


class DispatchReplayRead(BaseModel):
    task_id: str
    decision_trace: dict[str, Any] | None
    learning_record: dict[str, Any] | None
    all_related: list[AuditEntryRead]


class OrchestrationDispatchRequest(BaseModel):
    task_id: str = PydanticField(min_length=1)
    worker_id: str | None = None
    task_type: TaskType | None = None
    model_version: str | None = None
    rejected_category: RejectReasonCategory | None = None
    rejected_reason: str | None = None


class OrchestrationDispatchRead(BaseModel):
    decision_id: str
    event_id: str
    step: str
    data: dict[str, Any]


class StrategyEvaluateRequest(BaseModel):
    task_context: dict[str, Any] = PydanticField(default_factory=dict)
    workers_context: list[dict[str, Any]] = PydanticField(default_factory=list)
    model_version: str | None = None


class StrategyEvaluateRead(BaseModel):
    model_version: str
    scores: list[Score]


class LearningRecordRequest(BaseModel):
    task_id: str = PydanticField(min_length=1)
    worker_id: str = PydanticField(min_length=1)
    outcome: str = PydanticField(min_length=1)
    metrics: dict[str, Any] | None = None
    rejected_category: RejectReasonCategory | None = None
    rejected_text: str | None = None


class LearningRecordRead(BaseModel):
    success: bool


class TaskTransitionRequest(BaseModel):
    status: str = PydanticField(min_length=1)
    task_type: TaskType | None = None
    reason: str | None = None


class DispatchMetricsRead(BaseModel):
    tenant_scope: str | None
    tasks_by_status: dict[str, dict[str, int]]
    assigned_tasks: int
    allocations_total: int
    decision_traces_total: int
    decision_outcomes: dict[str, int]
    no_candidate_decisions: int
    business_overrides: int
    override_rate: float
    learning_outcomes: dict[str, int]
