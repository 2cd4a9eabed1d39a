from __future__ import annotations

from collections import Counter

from dispatch_core.domain.audit_records import (
    ACTION_DECISION_TRACE,
    ACTION_DISPATCH_ALLOCATE,
    ACTION_LEARNING_RECORD,
    DecisionTracePayload,
    LearningRecordPayload,
    decode_audit_payload,
)
from dispatch_core.domain.errors import NoCandidatesError
from dispatch_core.domain.models import DispatchMetricsRead
from dispatch_core.infra.audit import AuditLogStore, audit_log_store
from dispatch_core.services.task_store import TaskStore


class DispatchMetricsService:
    def __init__(
        self,
        store: TaskStore | None = None,
        audit: AuditLogStore | None = None,
    ) -> None:
        self._store = store or TaskStore()
        self._audit = audit or audit_log_store

    def overview(self, tenant_scope: str | None) -> DispatchMetricsRead:
        tasks = self._store.list_tasks(tenant_scope)
        tasks_by_status: dict[str, dict[str, int]] = {}
        for task in tasks:
            bucket = tasks_by_status.setdefault(str(task.type), {})
            bucket[str(task.status)] = bucket.get(str(task.status), 0) + 1
        assigned_tasks = sum(1 for task in tasks if task.assigned_worker_id is not None)

        rows = self._audit.list_by_actions(
            [ACTION_DECISION_TRACE, ACTION_LEARNING_RECORD, ACTION_DISPATCH_ALLOCATE],
            tenant_id=tenant_scope,
        )
        allocations_total = 0
        decision_outcomes: Counter[str] = Counter()
        learning_outcomes: Counter[str] = Counter()
        no_candidate_decisions = 0
        business_overrides = 0
        for row in rows:
            if row.action == ACTION_DISPATCH_ALLOCATE:
                allocations_total += 1
                continue
            payload = decode_audit_payload(row.action, row.detail)
            if isinstance(payload, DecisionTracePayload):
                decision_outcomes[payload.outcome] += 1
                if payload.error_code == NoCandidatesError.code:
                    no_candidate_decisions += 1
                if payload.business_override:
                    business_overrides += 1
            elif isinstance(payload, LearningRecordPayload):
                learning_outcomes[payload.sample.outcome] += 1

        decision_traces_total = sum(decision_outcomes.values())
        override_rate = round(business_overrides / decision_traces_total, 4) if decision_traces_total else 0.0
        return DispatchMetricsRead(
            tenant_scope=tenant_scope,
            tasks_by_status=tasks_by_status,
            assigned_tasks=assigned_tasks,
            allocations_total=allocations_total,
            decision_traces_total=decision_traces_total,
            decision_outcomes=dict(decision_outcomes),
            no_candidate_decisions=no_candidate_decisions,
            business_overrides=business_overrides,
            override_rate=override_rate,
            learning_outcomes=dict(learning_outcomes),
        )
