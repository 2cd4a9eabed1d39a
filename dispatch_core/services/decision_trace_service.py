from __future__ import annotations

import os
from typing import Any
from uuid import uuid4

from dispatch_core.domain.audit_records import (
    ACTION_DECISION_TRACE,
    ACTION_LEARNING_RECORD,
    REPLAY_ACTIONS,
    DecisionSample,
    DecisionTracePayload,
    LearningRecordPayload,
)
from dispatch_core.domain.models import AuditEntryRead, AuditLog, DispatchReplayRead
from dispatch_core.infra.audit import AuditLogStore, audit_log_store
from dispatch_core.infra.log import get_logger
from dispatch_core.services.strategy_service import STRATEGY_DEFAULT_MODEL_VERSION

REPLAY_SCAN_LIMIT = int(os.getenv("REPLAY_SCAN_LIMIT", "500"))

DECISION_TARGET_TYPE = "decision"
LEARNING_TARGET_TYPE = "decision_sample"
ALLOCATED_OUTCOME = "allocated"
FAILED_OUTCOME = "failed"

logger = get_logger(__name__, component="decision_trace")


def new_decision_id() -> str:
    return f"dec-{uuid4().hex}"


class DecisionTraceService:
    def __init__(self, audit: AuditLogStore | None = None) -> None:
        self._audit = audit or audit_log_store

    def record_trace(
        self,
        trace: DecisionTracePayload,
        actor_id: str | None,
        tenant_id: str | None,
    ) -> AuditLog | None:
        row = self._audit.try_append(
            action=ACTION_DECISION_TRACE,
            actor_id=actor_id,
            tenant_id=tenant_id,
            target_type=DECISION_TARGET_TYPE,
            target_id=trace.decision_id,
            task_id=trace.task_id,
            metadata=trace,
        )
        if row is not None:
            logger.info(
                "decision_trace_recorded",
                decision_id=trace.decision_id,
                task_id=trace.task_id,
                outcome=trace.outcome,
            )
        return row

    def record_learning(
        self,
        task_id: str,
        worker_id: str,
        outcome: str,
        metrics: dict[str, Any] | None = None,
        actor_id: str | None = None,
        tenant_id: str | None = None,
        *,
        task_snapshot: dict[str, Any] | None = None,
        worker_snapshot: dict[str, Any] | None = None,
        strategy_version: str | None = None,
        decision: dict[str, Any] | None = None,
        rejected_category: str | None = None,
        rejected_text: str | None = None,
    ) -> bool:
        sample = DecisionSample(
            sample_id=f"smp-{uuid4().hex}",
            task_snapshot=task_snapshot or {"task_id": task_id},
            worker_snapshot=worker_snapshot or {"worker_id": worker_id},
            strategy_version=strategy_version or STRATEGY_DEFAULT_MODEL_VERSION,
            decision=decision or {},
            outcome=outcome,
            metrics=metrics or {},
        )
        row = self._audit.try_append(
            action=ACTION_LEARNING_RECORD,
            actor_id=actor_id,
            tenant_id=tenant_id,
            target_type=LEARNING_TARGET_TYPE,
            target_id=task_id,
            task_id=task_id,
            metadata=LearningRecordPayload(
                task_id=task_id,
                worker_id=worker_id,
                sample=sample,
                rejected_category=rejected_category,
                rejected_text=rejected_text,
            ),
        )
        return row is not None

    def replay_task(self, task_id: str, tenant_scope: str | None = None) -> DispatchReplayRead:
        rows = self._audit.list_related(
            task_id,
            actions=REPLAY_ACTIONS,
            tenant_id=tenant_scope,
            limit=REPLAY_SCAN_LIMIT,
        )
        traces = [row.detail for row in rows if row.action == ACTION_DECISION_TRACE]
        # a failed retry must not hide the trace that allocated the task
        decision_trace = next(
            (trace for trace in traces if trace.get("outcome") == ALLOCATED_OUTCOME),
            traces[0] if traces else None,
        )
        learning_record = next((row.detail for row in rows if row.action == ACTION_LEARNING_RECORD), None)
        return DispatchReplayRead(
            task_id=task_id,
            decision_trace=decision_trace,
            learning_record=learning_record,
            all_related=[
                AuditEntryRead(
                    id=row.id,
                    action=row.action,
                    target_type=row.target_type,
                    target_id=row.target_id,
                    created_at=row.created_at,
                    metadata=row.detail,
                )
                for row in rows
            ],
        )
