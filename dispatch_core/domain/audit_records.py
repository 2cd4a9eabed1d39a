"""Typed audit payloads.

Every dispatch fact lands in the single ``audit_logs`` table; the ``action``
column tells which payload shape the JSON ``metadata`` column carries.
Writers build one of the models below and store ``model_dump(mode="json")``;
readers decode through :func:`decode_audit_payload`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic import Field as PydanticField

from dispatch_core.domain.models import now_utc
from dispatch_core.domain.state_machine import ALL_STATUS_CHANGE_ACTIONS

ACTION_DECISION_TRACE = "PLATFORM_DECISION_TRACE"
ACTION_LEARNING_RECORD = "PLATFORM_LEARNING_RECORD"
ACTION_DISPATCH_ALLOCATE = "PLATFORM_DISPATCH_ALLOCATE"

REPLAY_ACTIONS: frozenset[str] = frozenset(
    {ACTION_DECISION_TRACE, ACTION_LEARNING_RECORD, ACTION_DISPATCH_ALLOCATE}
) | ALL_STATUS_CHANGE_ACTIONS


class AuditPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    platform: str = "dispatch-core"


class AllocationPayload(AuditPayload):
    task_id: str
    task_type: str
    worker_id: str
    tenant_scope: str | None = None
    from_status: str
    to_status: str
    committed: bool = True
    decision_trace: dict[str, Any] = PydanticField(default_factory=dict)


class StatusChangePayload(AuditPayload):
    task_id: str
    task_type: str
    previous_status: str
    next_status: str
    worker_id: str | None = None
    reason: str | None = None


class DecisionTracePayload(AuditPayload):
    decision_id: str
    decision_type: str = "dispatch"
    task_id: str | None = None
    task_type: str | None = None
    strategy_version: str | None = None
    outcome: str
    candidates: list[dict[str, Any]] = PydanticField(default_factory=list)
    scores: list[dict[str, Any]] = PydanticField(default_factory=list)
    platform_recommendation: dict[str, Any] | None = None
    platform_selected_worker: str | None = None
    selected_worker_id: str | None = None
    business_override: bool = False
    allocation: dict[str, Any] = PydanticField(default_factory=dict)
    error: str | None = None
    error_code: str | None = None
    failed_step: str | None = None
    created_at: datetime = PydanticField(default_factory=now_utc)


class DecisionSample(BaseModel):
    sample_id: str
    task_snapshot: dict[str, Any] = PydanticField(default_factory=dict)
    worker_snapshot: dict[str, Any] = PydanticField(default_factory=dict)
    strategy_version: str
    decision: dict[str, Any] = PydanticField(default_factory=dict)
    outcome: str
    metrics: dict[str, Any] = PydanticField(default_factory=dict)
    created_at: datetime = PydanticField(default_factory=now_utc)


class LearningRecordPayload(AuditPayload):
    task_id: str
    worker_id: str
    sample: DecisionSample
    rejected_category: str | None = None
    rejected_text: str | None = None


def payload_model_for(action: str) -> type[AuditPayload] | None:
    if action == ACTION_DECISION_TRACE:
        return DecisionTracePayload
    if action == ACTION_LEARNING_RECORD:
        return LearningRecordPayload
    if action == ACTION_DISPATCH_ALLOCATE:
        return AllocationPayload
    if action in ALL_STATUS_CHANGE_ACTIONS:
        return StatusChangePayload
    return None


def decode_audit_payload(action: str, raw: dict[str, Any]) -> AuditPayload | dict[str, Any]:
    """Decode a stored metadata blob into its typed variant.

    Rows written before a payload gained a field, or by another writer, are
    returned untouched rather than rejected.
    """
    model = payload_model_for(action)
    if model is None:
        return dict(raw)
    try:
        return model.model_validate(raw)
    except ValidationError:
        return dict(raw)
