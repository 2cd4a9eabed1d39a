from __future__ import annotations

import threading
from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from dispatch_core.domain.errors import (
    AlreadyAllocatedError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
)
from dispatch_core.domain.models import AuditLog, DeliveryOrder, RepairOrder, Task, Worker
from dispatch_core.domain.state_machine import DeliveryStatus, RepairStatus, TaskType
from dispatch_core.infra import audit, db
from dispatch_core.services.allocation_service import AllocationService
from dispatch_core.services.candidate_matcher import CandidateMatcher
from dispatch_core.services.strategy_service import StrategyEvaluator
from dispatch_core.services.task_store import TaskStore

BASE_TS = datetime(2026, 1, 1, tzinfo=UTC)


@pytest.fixture()
def test_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "allocation_test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SQLModel.metadata.create_all(engine)
    monkeypatch.setattr(db, "engine", engine)
    yield engine
    engine.dispose()


def _seed_worker(
    engine: Engine,
    worker_id: str,
    tenant_id: str,
    *,
    skills: list[str] | None = None,
    status: str = "active",
    offset: int = 0,
) -> None:
    with Session(engine) as session:
        session.add(
            Worker(
                id=worker_id,
                tenant_id=tenant_id,
                name=f"worker {worker_id}",
                status=status,
                skills=skills if skills is not None else ["delivery"],
                created_at=BASE_TS + timedelta(seconds=offset),
            )
        )
        session.commit()


def _seed_delivery(engine: Engine, task_id: str, tenant_id: str, status: str = "pending") -> None:
    with Session(engine) as session:
        session.add(DeliveryOrder(id=task_id, tenant_id=tenant_id, status=status, product_type="diesel"))
        session.commit()


def _seed_repair(engine: Engine, task_id: str, tenant_id: str) -> None:
    with Session(engine) as session:
        session.add(RepairOrder(id=task_id, tenant_id=tenant_id, service_type="fryer"))
        session.commit()


def _audit_rows(engine: Engine, action: str) -> list[AuditLog]:
    with Session(engine) as session:
        return list(session.exec(select(AuditLog).where(AuditLog.action == action)).all())


def _seed_scenario(engine: Engine) -> None:
    _seed_delivery(engine, "T1", "A")
    _seed_delivery(engine, "T2", "B")
    _seed_worker(engine, "W1", "A", offset=1)
    _seed_worker(engine, "W2", "A", offset=2)
    _seed_worker(engine, "W3", "A", skills=["repair"], offset=3)
    _seed_worker(engine, "W4", "A", status="offline", offset=4)
    _seed_worker(engine, "WB", "B", offset=5)


def test_match_filters_by_tenant_status_and_skill(test_engine: Engine) -> None:
    _seed_scenario(test_engine)
    matcher = CandidateMatcher()

    candidates = matcher.match("T1", "A")

    assert [item.worker_id for item in candidates] == ["W1", "W2"]
    assert candidates[0].reason == "skill match: delivery"
    assert matcher.match("T2", "A") == []
    assert matcher.match("missing", "A") == []
    assert matcher.match("T1", "A", TaskType.REPAIR) == []
    assert [item.worker_id for item in matcher.match("T1", None)] == ["W1", "W2", "WB"]


def test_allocate_scenarios(test_engine: Engine) -> None:
    _seed_scenario(test_engine)
    store = TaskStore()
    matcher = CandidateMatcher(store)
    evaluator = StrategyEvaluator()
    service = AllocationService(store)

    task = store.get_task("T1")
    candidates = matcher.match("T1", "A")
    scores = evaluator.evaluate(matcher.task_context(task), matcher.worker_contexts(task, candidates))
    assert {item.worker_id for item in scores} == {"W1", "W2"}

    result = service.allocate("T1", "W1", "A", "user-1", decision_trace={"decision_id": "dec-1"})
    assert result.committed is True
    assert result.table == "delivery_orders"
    assert result.task.status == DeliveryStatus.ACCEPTED
    assert result.task.assigned_worker_id == "W1"

    with pytest.raises(AlreadyAllocatedError):
        service.allocate("T1", "W2", "A", "user-1")
    after_repeat = store.get_task("T1")
    assert after_repeat.status == DeliveryStatus.ACCEPTED
    assert after_repeat.assigned_worker_id == "W1"

    with pytest.raises(ForbiddenError):
        service.allocate("T2", "W1", "A", "user-1")
    untouched = store.get_task("T2")
    assert untouched.status == DeliveryStatus.PENDING
    assert untouched.assigned_worker_id is None

    rows = _audit_rows(test_engine, "PLATFORM_DISPATCH_ALLOCATE")
    assert len(rows) == 1
    assert rows[0].task_id == "T1"
    assert rows[0].tenant_id == "A"
    assert rows[0].detail["committed"] is True
    assert rows[0].detail["worker_id"] == "W1"
    assert rows[0].detail["from_status"] == "pending"
    assert rows[0].detail["to_status"] == "accepted"
    assert rows[0].detail["decision_trace"] == {"decision_id": "dec-1"}


def test_allocate_checks_worker_and_task(test_engine: Engine) -> None:
    _seed_scenario(test_engine)
    service = AllocationService()

    with pytest.raises(NotFoundError):
        service.allocate("missing", "W1", "A", "user-1")
    with pytest.raises(NotFoundError):
        service.allocate("T1", "missing", "A", "user-1")
    with pytest.raises(ForbiddenError):
        service.allocate("T1", "WB", "A", "user-1")

    _seed_delivery(test_engine, "T-done", "A", status="completed")
    with pytest.raises(InvalidTransitionError):
        service.allocate("T-done", "W1", "A", "user-1")


def test_platform_scope_allocates_across_tenants(test_engine: Engine) -> None:
    _seed_scenario(test_engine)
    result = AllocationService().allocate("T2", "W1", None, "root")
    assert result.task.assigned_worker_id == "W1"
    assert result.task.tenant_id == "B"


def test_repair_allocation_moves_to_assigned(test_engine: Engine) -> None:
    _seed_repair(test_engine, "R1", "A")
    _seed_worker(test_engine, "W3", "A", skills=["repair", "install"])

    result = AllocationService().allocate("R1", "W3", "A", "user-1")

    assert result.table == "repair_orders"
    assert result.task.type == TaskType.REPAIR
    assert result.task.status == RepairStatus.ASSIGNED


class _StaleStore(TaskStore):
    def __init__(self, snapshot: Task) -> None:
        self._snapshot = snapshot

    def get_scoped_task(self, task_id: str, tenant_scope: str | None, task_type: TaskType | None = None) -> Task:
        return self._snapshot


def test_stale_snapshot_loses_the_race(test_engine: Engine) -> None:
    _seed_scenario(test_engine)
    snapshot = TaskStore().get_task("T1")
    AllocationService().allocate("T1", "W1", "A", "user-1")

    with pytest.raises(AlreadyAllocatedError):
        AllocationService(_StaleStore(snapshot)).allocate("T1", "W2", "A", "user-2")

    task = TaskStore().get_task("T1")
    assert task.assigned_worker_id == "W1"
    assert len(_audit_rows(test_engine, "PLATFORM_DISPATCH_ALLOCATE")) == 1


def test_concurrent_allocations_commit_once(test_engine: Engine) -> None:
    _seed_scenario(test_engine)
    barrier = threading.Barrier(2)
    outcomes: dict[str, str] = {}

    def _run(worker_id: str) -> None:
        barrier.wait()
        try:
            AllocationService().allocate("T1", worker_id, "A", f"actor-{worker_id}")
            outcomes[worker_id] = "committed"
        except AlreadyAllocatedError:
            outcomes[worker_id] = "already_allocated"

    threads = [threading.Thread(target=_run, args=(worker_id,)) for worker_id in ("W1", "W2")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes.values()) == ["already_allocated", "committed"]
    winner = next(worker_id for worker_id, outcome in outcomes.items() if outcome == "committed")
    assert TaskStore().get_task("T1").assigned_worker_id == winner


def test_update_status_requires_expected_status(test_engine: Engine) -> None:
    _seed_delivery(test_engine, "T1", "A")
    store = TaskStore()

    with pytest.raises(ConflictError):
        store.update_status("T1", DeliveryStatus.ACCEPTED, DeliveryStatus.DELIVERING, task_type=TaskType.DELIVERY)
    with pytest.raises(ValueError):
        store.update_status(
            "T1",
            DeliveryStatus.PENDING,
            DeliveryStatus.CANCELLED,
            {"tenant_id": "B"},
            task_type=TaskType.DELIVERY,
        )
    assert store.get_task("T1").status == DeliveryStatus.PENDING


def test_transition_lifecycle(test_engine: Engine) -> None:
    _seed_scenario(test_engine)
    service = AllocationService()
    service.allocate("T1", "W1", "A", "user-1")

    delivering = service.transition("T1", "delivering", "A", "user-1")
    assert delivering.status == DeliveryStatus.DELIVERING

    failed = service.transition("T1", "exception", "A", "user-1", reason="truck broke down")
    assert failed.status == DeliveryStatus.EXCEPTION
    assert failed.assigned_worker_id == "W1"

    requeued = service.transition("T1", "pending", "A", "user-1")
    assert requeued.status == DeliveryStatus.PENDING
    assert requeued.assigned_worker_id is None

    dispatched = _audit_rows(test_engine, "ORDER_DISPATCHED")
    assert len(dispatched) == 1
    assert dispatched[0].detail["previous_status"] == "accepted"
    assert dispatched[0].detail["next_status"] == "delivering"
    exception_rows = _audit_rows(test_engine, "ORDER_EXCEPTION")
    assert exception_rows[0].detail["reason"] == "truck broke down"
    assert len(_audit_rows(test_engine, "ORDER_REQUEUED")) == 1

    reallocated = service.allocate("T1", "W2", "A", "user-1")
    assert reallocated.task.assigned_worker_id == "W2"


def test_transition_rejections(test_engine: Engine) -> None:
    _seed_scenario(test_engine)
    service = AllocationService()

    with pytest.raises(InvalidTransitionError):
        service.transition("T1", "completed", "A", "user-1")
    with pytest.raises(InvalidTransitionError):
        service.transition("T1", "accepted", "A", "user-1")
    with pytest.raises(InvalidTransitionError):
        service.transition("T1", "teleported", "A", "user-1")
    with pytest.raises(ForbiddenError):
        service.transition("T2", "cancelled", "A", "user-1")

    cancelled = service.transition("T1", "cancelled", "A", "user-1")
    assert cancelled.status == DeliveryStatus.CANCELLED
    with pytest.raises(InvalidTransitionError):
        service.transition("T1", "pending", "A", "user-1")


def test_audit_failure_does_not_fail_allocation(
    test_engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _seed_scenario(test_engine)

    def _broken_append(**kwargs: object) -> AuditLog:
        raise RuntimeError("audit sink down")

    monkeypatch.setattr(audit.audit_log_store, "append", _broken_append)

    result = AllocationService().allocate("T1", "W1", "A", "user-1")

    assert result.committed is True
    assert TaskStore().get_task("T1").assigned_worker_id == "W1"
