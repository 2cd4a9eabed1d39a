from __future__ import annotations

from typing import Any, ClassVar

from dispatch_core.domain.errors import NotFoundError
from dispatch_core.domain.models import Candidate, ReasonCode, Task, Worker
from dispatch_core.domain.state_machine import TaskType, is_terminal
from dispatch_core.infra.log import get_logger
from dispatch_core.services.task_store import TaskStore

logger = get_logger(__name__, component="candidate_matcher")


class CandidateMatcher:
    _AVAILABLE_STATUSES: ClassVar[frozenset[str]] = frozenset({"active", "online", "available"})
    _TASK_SKILLS: ClassVar[dict[TaskType, str]] = {
        TaskType.DELIVERY: "delivery",
        TaskType.REPAIR: "repair",
    }

    def __init__(self, store: TaskStore | None = None) -> None:
        self._store = store or TaskStore()

    @staticmethod
    def _normalized(values: Any) -> set[str]:
        if not isinstance(values, list):
            return set()
        return {item.strip().lower() for item in values if isinstance(item, str)}

    def required_skill(self, task_type: TaskType) -> str:
        return self._TASK_SKILLS[task_type]

    def is_eligible(self, worker: Worker, task: Task, tenant_scope: str | None) -> bool:
        if tenant_scope is not None and worker.tenant_id != tenant_scope:
            return False
        if (worker.status or "").strip().lower() not in self._AVAILABLE_STATUSES:
            return False
        return self.required_skill(task.type) in self._normalized(worker.skills)

    def match(
        self,
        task_id: str,
        tenant_scope: str | None,
        task_type: TaskType | None = None,
    ) -> list[Candidate]:
        try:
            task = self._store.get_task(task_id, task_type)
        except NotFoundError:
            logger.info("match_task_missing", task_id=task_id)
            return []
        if tenant_scope is not None and task.tenant_id != tenant_scope:
            logger.info("match_task_out_of_scope", task_id=task_id, tenant_scope=tenant_scope)
            return []
        return self.match_task(task, tenant_scope)

    def match_task(self, task: Task, tenant_scope: str | None) -> list[Candidate]:
        skill = self.required_skill(task.type)
        candidates = [
            Candidate(
                worker_id=worker.id,
                task_id=task.id,
                reason=f"skill match: {skill}",
                primary_reason=ReasonCode.SKILL_MATCH,
                secondary_factors=[ReasonCode.AVAILABILITY],
            )
            for worker in self._store.list_workers(tenant_scope)
            if self.is_eligible(worker, task, tenant_scope)
        ]
        logger.info("match_completed", task_id=task.id, candidate_count=len(candidates))
        return candidates

    @staticmethod
    def task_context(task: Task) -> dict[str, Any]:
        context: dict[str, Any] = {
            "task_id": task.id,
            "task_type": str(task.type),
            "tenant_id": task.tenant_id,
            "status": str(task.status),
            "required_skill": CandidateMatcher._TASK_SKILLS[task.type],
        }
        for key in ("priority", "product_type", "service_type", "location"):
            if key in task.context:
                context[key] = task.context[key]
        return context

    def worker_contexts(self, task: Task, candidates: list[Candidate]) -> list[dict[str, Any]]:
        """Build evaluator inputs for the candidates, preserving candidate order."""
        if not candidates:
            return []
        worker_ids = [item.worker_id for item in candidates]
        workers: dict[str, Worker] = {}
        for worker_id in dict.fromkeys(worker_ids):
            try:
                workers[worker_id] = self._store.get_worker(worker_id)
            except NotFoundError:
                continue

        active_load: dict[str, int] = {}
        completed: dict[str, int] = {}
        for assigned in self._store.list_assigned_tasks(list(workers)):
            worker_id = assigned.assigned_worker_id
            if worker_id is None:
                continue
            if str(assigned.status) == "completed":
                completed[worker_id] = completed.get(worker_id, 0) + 1
            elif not is_terminal(assigned.type, assigned.status):
                active_load[worker_id] = active_load.get(worker_id, 0) + 1

        contexts: list[dict[str, Any]] = []
        for worker_id in worker_ids:
            worker = workers.get(worker_id)
            if worker is None:
                continue
            contexts.append(
                {
                    "id": worker.id,
                    "tenant_id": worker.tenant_id,
                    "status": worker.status,
                    "skills": list(worker.skills or []),
                    "product_types": list(worker.product_types or []),
                    "location": dict(worker.location or {}),
                    "active_load": active_load.get(worker.id, 0),
                    "completed_count": completed.get(worker.id, 0),
                }
            )
        return contexts
