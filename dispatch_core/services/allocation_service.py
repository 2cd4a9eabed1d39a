from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from dispatch_core.domain.audit_records import (
    ACTION_DISPATCH_ALLOCATE,
    AllocationPayload,
    StatusChangePayload,
)
from dispatch_core.domain.errors import (
    AlreadyAllocatedError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
)
from dispatch_core.domain.models import Task, Worker
from dispatch_core.domain.state_machine import (
    TaskStatus,
    TaskType,
    allocation_target_status,
    can_transition,
    initial_status,
    normalize_status,
    status_change_action,
)
from dispatch_core.infra.audit import AuditLogStore, audit_log_store
from dispatch_core.infra.log import get_logger
from dispatch_core.services.task_store import TaskStore

logger = get_logger(__name__, component="allocation")


@dataclass(frozen=True)
class AllocationResult:
    table: str
    committed: bool
    task: Task


class AllocationService:
    """Sole writer of task ``status`` and ``assigned_worker_id``.

    Every write goes through :meth:`TaskStore.update_status`, so two callers
    racing on the same snapshot cannot both commit.
    """

    def __init__(
        self,
        store: TaskStore | None = None,
        audit: AuditLogStore | None = None,
    ) -> None:
        self._store = store or TaskStore()
        self._audit = audit or audit_log_store

    @staticmethod
    def _ensure_worker_scope(worker: Worker, tenant_scope: str | None) -> None:
        if tenant_scope is not None and worker.tenant_id != tenant_scope:
            raise ForbiddenError("worker belongs to another tenant")

    def allocate(
        self,
        task_id: str,
        worker_id: str,
        tenant_scope: str | None,
        actor_id: str | None,
        task_type: TaskType | None = None,
        decision_trace: dict[str, Any] | None = None,
    ) -> AllocationResult:
        task = self._store.get_scoped_task(task_id, tenant_scope, task_type)
        worker = self._store.get_worker(worker_id)
        self._ensure_worker_scope(worker, tenant_scope)

        target = allocation_target_status(task.type)
        if task.assigned_worker_id is not None or task.status == target:
            raise AlreadyAllocatedError(f"task {task.id} is already allocated")
        if not can_transition(task.type, task.status, target):
            raise InvalidTransitionError(f"cannot allocate task in status {task.status}")

        try:
            updated = self._store.update_status(
                task.id,
                task.status,
                target,
                {"assigned_worker_id": worker.id},
                task_type=task.type,
            )
        except ConflictError as exc:
            logger.info("allocation_conflict", task_id=task.id, worker_id=worker.id)
            raise AlreadyAllocatedError(f"task {task.id} is already allocated") from exc

        logger.info(
            "allocation_committed",
            task_id=updated.id,
            task_type=str(updated.type),
            worker_id=worker.id,
            from_status=str(task.status),
            to_status=str(target),
        )
        self._audit.try_append(
            action=ACTION_DISPATCH_ALLOCATE,
            actor_id=actor_id,
            tenant_id=updated.tenant_id,
            target_type=updated.table,
            target_id=updated.id,
            task_id=updated.id,
            metadata=AllocationPayload(
                task_id=updated.id,
                task_type=str(updated.type),
                worker_id=worker.id,
                tenant_scope=tenant_scope,
                from_status=str(task.status),
                to_status=str(target),
                committed=True,
                decision_trace=dict(decision_trace or {}),
            ),
        )
        return AllocationResult(table=updated.table, committed=True, task=updated)

    def transition(
        self,
        task_id: str,
        target_status: TaskStatus | str,
        tenant_scope: str | None,
        actor_id: str | None,
        task_type: TaskType | None = None,
        reason: str | None = None,
    ) -> Task:
        task = self._store.get_scoped_task(task_id, tenant_scope, task_type)

        target = normalize_status(task.type, target_status)
        if target is None:
            raise InvalidTransitionError(f"unknown {task.type} status: {target_status}")
        if target == allocation_target_status(task.type):
            raise InvalidTransitionError(f"use allocation to move a task into {target}")
        if not can_transition(task.type, task.status, target):
            raise InvalidTransitionError(f"cannot move task from {task.status} to {target}")

        extra: dict[str, Any] = {}
        if target == initial_status(task.type):
            extra["assigned_worker_id"] = None

        updated = self._store.update_status(task.id, task.status, target, extra, task_type=task.type)
        logger.info(
            "task_transitioned",
            task_id=updated.id,
            task_type=str(updated.type),
            from_status=str(task.status),
            to_status=str(target),
        )
        self._audit.try_append(
            action=status_change_action(task.type, target),
            actor_id=actor_id,
            tenant_id=updated.tenant_id,
            target_type=updated.table,
            target_id=updated.id,
            task_id=updated.id,
            metadata=StatusChangePayload(
                task_id=updated.id,
                task_type=str(updated.type),
                previous_status=str(task.status),
                next_status=str(target),
                worker_id=task.assigned_worker_id,
                reason=reason,
            ),
        )
        return updated
