from __future__ import annotations

from typing import Any, ClassVar

import sqlalchemy as sa
from sqlmodel import Session, col, select

from dispatch_core.domain.errors import ConflictError, ForbiddenError, NotFoundError
from dispatch_core.domain.models import TASK_TABLES, DeliveryOrder, RepairOrder, Task, Worker, now_utc
from dispatch_core.domain.state_machine import TaskStatus, TaskType, normalize_status
from dispatch_core.infra.db import datastore_guard, open_session
from dispatch_core.infra.log import get_logger

logger = get_logger(__name__)

TaskRow = DeliveryOrder | RepairOrder


class TaskStore:
    """Repository over the task tables.

    ``update_status`` is the only write path for ``status`` and
    ``assigned_worker_id``: a compare-and-swap on the row's last known status.
    """

    _LOOKUP_ORDER: ClassVar[tuple[TaskType, ...]] = (TaskType.DELIVERY, TaskType.REPAIR)
    _UPDATABLE_FIELDS: ClassVar[frozenset[str]] = frozenset({"assigned_worker_id"})

    def _session(self) -> Session:
        return open_session()

    @staticmethod
    def _to_task(row: TaskRow, task_type: TaskType) -> Task:
        status = normalize_status(task_type, row.status)
        if status is None:
            raise ConflictError(f"task {row.id} has unknown status {row.status!r}")
        context = dict(row.context_data or {})
        if isinstance(row, DeliveryOrder) and row.product_type is not None:
            context.setdefault("product_type", row.product_type)
        if isinstance(row, RepairOrder) and row.service_type is not None:
            context.setdefault("service_type", row.service_type)
        return Task(
            id=row.id,
            type=task_type,
            table=TASK_TABLES[task_type].__tablename__,
            tenant_id=row.tenant_id,
            restaurant_id=row.restaurant_id,
            status=status,
            assigned_worker_id=row.assigned_worker_id,
            context=context,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def get_task(self, task_id: str, task_type: TaskType | None = None) -> Task:
        lookup = (task_type,) if task_type is not None else self._LOOKUP_ORDER
        with datastore_guard("task_get"), self._session() as session:
            for candidate_type in lookup:
                row = session.get(TASK_TABLES[candidate_type], task_id)
                if row is not None:
                    return self._to_task(row, candidate_type)
        raise NotFoundError("task not found")

    def get_scoped_task(
        self,
        task_id: str,
        tenant_scope: str | None,
        task_type: TaskType | None = None,
    ) -> Task:
        task = self.get_task(task_id, task_type)
        if tenant_scope is not None and task.tenant_id != tenant_scope:
            raise ForbiddenError("task belongs to another tenant")
        return task

    def update_status(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        extra_fields: dict[str, Any] | None = None,
        *,
        task_type: TaskType,
    ) -> Task:
        extra = dict(extra_fields or {})
        unknown = set(extra) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable through status change: {sorted(unknown)}")

        table = TASK_TABLES[task_type]
        values: dict[str, Any] = {"status": str(to_status), "updated_at": now_utc(), **extra}
        statement = (
            sa.update(table)
            .where(col(table.id) == task_id)
            .where(col(table.status) == str(from_status))
            .values(**values)
        )
        with datastore_guard("task_update_status"), self._session() as session:
            result = session.execute(statement)
            rowcount = int(getattr(result, "rowcount", 0) or 0)
            if rowcount == 0:
                session.rollback()
                logger.info(
                    "task_status_conflict",
                    task_id=task_id,
                    task_type=str(task_type),
                    expected_status=str(from_status),
                    target_status=str(to_status),
                )
                raise ConflictError(
                    f"task {task_id} is no longer in status {from_status}"
                )
            session.commit()
            row = session.get(table, task_id, populate_existing=True)
            if row is None:
                raise NotFoundError("task not found")
            return self._to_task(row, task_type)

    def get_worker(self, worker_id: str) -> Worker:
        with datastore_guard("worker_get"), self._session() as session:
            row = session.get(Worker, worker_id)
        if row is None:
            raise NotFoundError("worker not found")
        return row

    def list_workers(self, tenant_scope: str | None) -> list[Worker]:
        with datastore_guard("worker_list"), self._session() as session:
            statement = select(Worker)
            if tenant_scope is not None:
                statement = statement.where(Worker.tenant_id == tenant_scope)
            statement = statement.order_by(col(Worker.created_at), col(Worker.id))
            return list(session.exec(statement).all())

    def list_assigned_tasks(self, worker_ids: list[str]) -> list[Task]:
        if not worker_ids:
            return []
        tasks: list[Task] = []
        with datastore_guard("task_list_assigned"), self._session() as session:
            for task_type in self._LOOKUP_ORDER:
                table = TASK_TABLES[task_type]
                rows = session.exec(
                    select(table).where(col(table.assigned_worker_id).in_(worker_ids))
                ).all()
                tasks.extend(self._to_task(row, task_type) for row in rows)
        return tasks

    def list_tasks(self, tenant_scope: str | None) -> list[Task]:
        tasks: list[Task] = []
        with datastore_guard("task_list"), self._session() as session:
            for task_type in self._LOOKUP_ORDER:
                table = TASK_TABLES[task_type]
                statement = select(table)
                if tenant_scope is not None:
                    statement = statement.where(table.tenant_id == tenant_scope)
                tasks.extend(self._to_task(row, task_type) for row in session.exec(statement).all())
        return tasks
