from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from dispatch_core import main as app_main
from dispatch_core.domain.models import AuditLog, DeliveryOrder, RepairOrder, Worker
from dispatch_core.infra import db
from dispatch_core.infra.auth import create_access_token

BASE_TS = datetime(2026, 1, 1, tzinfo=UTC)


@pytest.fixture()
def dispatch_env(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[tuple[TestClient, Engine], None, None]:
    db_path = tmp_path / "dispatch_api_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    _seed(test_engine)
    client = TestClient(app_main.app)
    yield client, test_engine
    client.close()
    test_engine.dispose()


def _seed(engine: Engine) -> None:
    with Session(engine) as session:
        session.add(DeliveryOrder(id="T1", tenant_id="A", product_type="diesel"))
        session.add(DeliveryOrder(id="T2", tenant_id="B", product_type="diesel"))
        session.add(RepairOrder(id="R1", tenant_id="A", service_type="fryer"))
        for offset, (worker_id, tenant_id) in enumerate([("W1", "A"), ("W2", "A"), ("WB", "B")]):
            session.add(
                Worker(
                    id=worker_id,
                    tenant_id=tenant_id,
                    name=f"worker {worker_id}",
                    skills=["delivery"],
                    product_types=["diesel"],
                    created_at=BASE_TS + timedelta(seconds=offset),
                )
            )
        session.commit()


def _auth_header(role: str = "staff", tenant_id: str | None = "A", user_id: str = "user-a") -> dict[str, str]:
    token = create_access_token(user_id=user_id, role=role, tenant_id=tenant_id)
    return {"Authorization": f"Bearer {token}"}


def test_requests_require_valid_token(dispatch_env: tuple[TestClient, Engine]) -> None:
    client, _ = dispatch_env
    assert client.post("/dispatch/match", json={"task_id": "T1"}).status_code == 401
    response = client.post(
        "/dispatch/match",
        json={"task_id": "T1"},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert response.status_code == 401


def test_scope_and_permission_checks(dispatch_env: tuple[TestClient, Engine]) -> None:
    client, _ = dispatch_env
    no_tenant = client.post("/dispatch/match", json={"task_id": "T1"}, headers=_auth_header(tenant_id=None))
    assert no_tenant.status_code == 403

    worker_allocate = client.post(
        "/dispatch/allocate",
        json={"task_id": "T1", "worker_id": "W1"},
        headers=_auth_header(role="worker"),
    )
    assert worker_allocate.status_code == 403

    unknown_role = client.get("/dispatch/replay", params={"task_id": "T1"}, headers=_auth_header(role="guest"))
    assert unknown_role.status_code == 403


def test_missing_fields_are_bad_requests(dispatch_env: tuple[TestClient, Engine]) -> None:
    client, _ = dispatch_env
    response = client.post("/dispatch/match", json={}, headers=_auth_header())
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_REQUEST"

    assert client.get("/dispatch/replay", headers=_auth_header()).status_code == 400
    assert client.get("/dispatch/recommend", headers=_auth_header()).status_code == 400
    allocate = client.post("/dispatch/allocate", json={"task_id": "T1"}, headers=_auth_header())
    assert allocate.status_code == 400


def test_match_and_recommend(dispatch_env: tuple[TestClient, Engine]) -> None:
    client, _ = dispatch_env
    match = client.post("/dispatch/match", json={"task_id": "T1"}, headers=_auth_header())
    assert match.status_code == 200
    candidates = match.json()["candidates"]
    assert [item["worker_id"] for item in candidates] == ["W1", "W2"]
    assert candidates[0]["primary_reason"] == "SKILL_MATCH"
    assert candidates[0]["secondary_factors"] == ["AVAILABILITY"]

    cross_tenant = client.post("/dispatch/match", json={"task_id": "T2"}, headers=_auth_header())
    assert cross_tenant.status_code == 200
    assert cross_tenant.json() == {"candidates": []}

    recommend = client.get("/dispatch/recommend", params={"task_id": "T1"}, headers=_auth_header())
    assert recommend.status_code == 200
    body = recommend.json()
    assert body["recommended_worker_id"] == "W1"
    assert body["platform_recommendation"]["primary_reason"] == "SKILL_MATCH"
    assert [item["worker_id"] for item in body["candidates"]] == ["W1", "W2"]
    assert body["reason"].startswith("Skill match")

    nobody = client.get("/dispatch/recommend", params={"task_id": "R1"}, headers=_auth_header())
    assert nobody.status_code == 200
    assert nobody.json()["recommended_worker_id"] is None
    assert nobody.json()["candidates"] == []


def test_allocate_endpoint_scenarios(dispatch_env: tuple[TestClient, Engine]) -> None:
    client, engine = dispatch_env
    first = client.post("/dispatch/allocate", json={"task_id": "T1", "worker_id": "W1"}, headers=_auth_header())
    assert first.status_code == 200
    assert first.json() == {"allocated": True, "table": "delivery_orders"}

    repeat = client.post("/dispatch/allocate", json={"task_id": "T1", "worker_id": "W2"}, headers=_auth_header())
    assert repeat.status_code == 400
    assert repeat.json()["detail"]["code"] == "ALREADY_ALLOCATED"

    foreign = client.post("/dispatch/allocate", json={"task_id": "T2", "worker_id": "W1"}, headers=_auth_header())
    assert foreign.status_code == 403

    missing = client.post("/dispatch/allocate", json={"task_id": "nope", "worker_id": "W1"}, headers=_auth_header())
    assert missing.status_code == 404

    task = client.get("/tasks/T1", headers=_auth_header())
    assert task.status_code == 200
    assert task.json()["status"] == "accepted"
    assert task.json()["assigned_worker_id"] == "W1"

    with Session(engine) as session:
        allocations = session.exec(
            select(AuditLog).where(AuditLog.action == "PLATFORM_DISPATCH_ALLOCATE")
        ).all()
        request_rows = session.exec(select(AuditLog).where(AuditLog.action == "dispatch.allocate")).all()
    assert [row.task_id for row in allocations] == ["T1"]
    assert len(request_rows) == 4
    assert {row.detail["result"]["status_code"] for row in request_rows} == {200, 400, 403, 404}


def test_orchestrated_dispatch_and_replay(dispatch_env: tuple[TestClient, Engine]) -> None:
    client, _ = dispatch_env
    response = client.post("/orchestration/dispatch", json={"task_id": "T1"}, headers=_auth_header())
    assert response.status_code == 200
    body = response.json()
    assert body["step"] == "completed"
    assert body["decision_id"].startswith("dec-")
    assert body["data"]["selected_worker_id"] == "W1"
    assert body["data"]["platform_selected_worker"] == "W1"
    assert body["data"]["business_override"] is False
    assert body["data"]["allocated"] is True

    replay = client.get("/dispatch/replay", params={"task_id": "T1"}, headers=_auth_header())
    assert replay.status_code == 200
    payload = replay.json()
    assert payload["task_id"] == "T1"
    assert payload["decision_trace"]["selected_worker_id"] == "W1"
    assert payload["decision_trace"]["outcome"] == "allocated"
    assert payload["decision_trace"]["decision_id"] == body["decision_id"]
    assert payload["learning_record"]["sample"]["outcome"] == "platform_accepted"
    actions = {item["action"] for item in payload["all_related"]}
    assert actions == {"PLATFORM_DECISION_TRACE", "PLATFORM_LEARNING_RECORD", "PLATFORM_DISPATCH_ALLOCATE"}

    other_tenant = client.get(
        "/dispatch/replay",
        params={"task_id": "T1"},
        headers=_auth_header(tenant_id="B", user_id="user-b"),
    )
    assert other_tenant.status_code == 200
    assert other_tenant.json() == {
        "task_id": "T1",
        "decision_trace": None,
        "learning_record": None,
        "all_related": [],
    }


def test_business_override_is_recorded(dispatch_env: tuple[TestClient, Engine]) -> None:
    client, _ = dispatch_env
    response = client.post(
        "/orchestration/dispatch",
        json={
            "task_id": "T1",
            "worker_id": "W2",
            "rejected_category": "CUSTOMER_SPECIFIED",
            "rejected_reason": "customer asked for W2",
        },
        headers=_auth_header(),
    )
    assert response.status_code == 200
    assert response.json()["data"]["business_override"] is True

    replay = client.get("/dispatch/replay", params={"task_id": "T1"}, headers=_auth_header()).json()
    assert replay["decision_trace"]["platform_selected_worker"] == "W1"
    assert replay["decision_trace"]["selected_worker_id"] == "W2"
    assert replay["learning_record"]["sample"]["outcome"] == "business_override"
    assert replay["learning_record"]["rejected_category"] == "CUSTOMER_SPECIFIED"


def test_replay_prefers_the_allocating_trace(dispatch_env: tuple[TestClient, Engine]) -> None:
    client, _ = dispatch_env
    first = client.post("/orchestration/dispatch", json={"task_id": "T1"}, headers=_auth_header())
    assert first.status_code == 200
    retry = client.post("/orchestration/dispatch", json={"task_id": "T1", "worker_id": "W2"}, headers=_auth_header())
    assert retry.status_code == 400
    assert retry.json()["detail"]["code"] == "ALREADY_ALLOCATED"

    replay = client.get("/dispatch/replay", params={"task_id": "T1"}, headers=_auth_header()).json()
    assert replay["decision_trace"]["decision_id"] == first.json()["decision_id"]
    assert replay["decision_trace"]["outcome"] == "allocated"
    assert replay["decision_trace"]["selected_worker_id"] == "W1"
    traces = [item for item in replay["all_related"] if item["action"] == "PLATFORM_DECISION_TRACE"]
    assert sorted(item["metadata"]["outcome"] for item in traces) == ["allocated", "failed"]

    task = client.get("/tasks/T1", headers=_auth_header()).json()
    assert task["assigned_worker_id"] == replay["decision_trace"]["selected_worker_id"]


def test_explicit_worker_without_platform_pick_is_not_an_override(
    dispatch_env: tuple[TestClient, Engine],
) -> None:
    client, _ = dispatch_env
    response = client.post("/orchestration/dispatch", json={"task_id": "R1", "worker_id": "W1"}, headers=_auth_header())
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["platform_selected_worker"] is None
    assert data["selected_worker_id"] == "W1"
    assert data["business_override"] is False

    metrics = client.get("/dispatch/metrics", headers=_auth_header()).json()
    assert metrics["business_overrides"] == 0


def test_recommend_rejects_unknown_model_version_without_candidates(
    dispatch_env: tuple[TestClient, Engine],
) -> None:
    client, _ = dispatch_env
    response = client.get(
        "/dispatch/recommend",
        params={"task_id": "R1", "model_version": "0.0.1"},
        headers=_auth_header(),
    )
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "UNKNOWN_MODEL_VERSION"


def test_dispatch_without_candidates_reports_flow_error(dispatch_env: tuple[TestClient, Engine]) -> None:
    client, _ = dispatch_env
    response = client.post("/orchestration/dispatch", json={"task_id": "R1"}, headers=_auth_header())
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["code"] == "NO_CANDIDATES"
    assert detail["step"] == "match"

    replay = client.get("/dispatch/replay", params={"task_id": "R1"}, headers=_auth_header()).json()
    assert replay["decision_trace"]["outcome"] == "failed"
    assert replay["decision_trace"]["error_code"] == "NO_CANDIDATES"
    assert replay["learning_record"] is None


def test_metrics_overview(dispatch_env: tuple[TestClient, Engine]) -> None:
    client, _ = dispatch_env
    assert client.post("/orchestration/dispatch", json={"task_id": "T1"}, headers=_auth_header()).status_code == 200
    assert client.post("/orchestration/dispatch", json={"task_id": "R1"}, headers=_auth_header()).status_code == 400

    response = client.get("/dispatch/metrics", headers=_auth_header())
    assert response.status_code == 200
    metrics = response.json()
    assert metrics["tenant_scope"] == "A"
    assert metrics["tasks_by_status"] == {"delivery": {"accepted": 1}, "repair": {"pending": 1}}
    assert metrics["assigned_tasks"] == 1
    assert metrics["allocations_total"] == 1
    assert metrics["decision_traces_total"] == 2
    assert metrics["decision_outcomes"] == {"allocated": 1, "failed": 1}
    assert metrics["no_candidate_decisions"] == 1
    assert metrics["business_overrides"] == 0
    assert metrics["override_rate"] == 0.0
    assert metrics["learning_outcomes"] == {"platform_accepted": 1}

    platform = client.get("/dispatch/metrics", headers=_auth_header(role="super_admin", tenant_id=None)).json()
    assert platform["tenant_scope"] is None
    assert platform["tasks_by_status"]["delivery"] == {"accepted": 1, "pending": 1}


def test_strategy_evaluate_endpoint(dispatch_env: tuple[TestClient, Engine]) -> None:
    client, _ = dispatch_env
    response = client.post(
        "/strategy/evaluate",
        json={
            "task_context": {"task_id": "T1", "task_type": "delivery"},
            "workers_context": [{"id": "W1"}, {"worker_id": "W2"}],
            "model_version": "1.0.0",
        },
        headers=_auth_header(),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["model_version"] == "1.0.0"
    assert [item["score"] for item in body["scores"]] == [1.0, 1.0]
    assert body["scores"][0]["factors"]["confidence_score"] == 0.8

    unknown = client.post(
        "/strategy/evaluate",
        json={"workers_context": [{"id": "W1"}], "model_version": "0.0.1"},
        headers=_auth_header(),
    )
    assert unknown.status_code == 400
    assert unknown.json()["detail"]["code"] == "UNKNOWN_MODEL_VERSION"


def test_learning_record_endpoint(dispatch_env: tuple[TestClient, Engine]) -> None:
    client, engine = dispatch_env
    response = client.post(
        "/learning/record",
        json={"task_id": "T1", "worker_id": "W1", "outcome": "completed_on_time", "metrics": {"minutes": 42}},
        headers=_auth_header(),
    )
    assert response.status_code == 200
    assert response.json() == {"success": True}

    with Session(engine) as session:
        row = session.exec(select(AuditLog).where(AuditLog.action == "PLATFORM_LEARNING_RECORD")).one()
    assert row.target_type == "decision_sample"
    assert row.target_id == "T1"
    assert row.tenant_id == "A"
    assert row.detail["sample"]["outcome"] == "completed_on_time"
    assert row.detail["sample"]["metrics"] == {"minutes": 42}

    missing = client.post("/learning/record", json={"task_id": "T1"}, headers=_auth_header())
    assert missing.status_code == 400


def test_learning_record_follows_the_task_tenant(dispatch_env: tuple[TestClient, Engine]) -> None:
    client, engine = dispatch_env
    body = {"task_id": "T2", "worker_id": "W1", "outcome": "completed_late"}

    foreign = client.post("/learning/record", json=body, headers=_auth_header())
    assert foreign.status_code == 403
    assert foreign.json()["detail"]["code"] == "FORBIDDEN"

    unknown = client.post("/learning/record", json={**body, "task_id": "nope"}, headers=_auth_header())
    assert unknown.status_code == 404

    with Session(engine) as session:
        rows = session.exec(select(AuditLog).where(AuditLog.action == "PLATFORM_LEARNING_RECORD")).all()
    assert rows == []

    platform = client.post(
        "/learning/record",
        json={"task_id": "T1", "worker_id": "W1", "outcome": "completed_on_time"},
        headers=_auth_header(role="super_admin", tenant_id=None, user_id="root"),
    )
    assert platform.status_code == 200

    replay = client.get("/dispatch/replay", params={"task_id": "T1"}, headers=_auth_header()).json()
    assert replay["learning_record"]["worker_id"] == "W1"
    assert replay["learning_record"]["sample"]["outcome"] == "completed_on_time"
    with Session(engine) as session:
        row = session.exec(select(AuditLog).where(AuditLog.action == "PLATFORM_LEARNING_RECORD")).one()
    assert row.tenant_id == "A"
    assert row.actor_id == "root"


def test_task_endpoints(dispatch_env: tuple[TestClient, Engine]) -> None:
    client, _ = dispatch_env
    task = client.get("/tasks/R1", headers=_auth_header(role="worker"))
    assert task.status_code == 200
    assert task.json()["type"] == "repair"
    assert task.json()["table"] == "repair_orders"

    assert client.get("/tasks/T2", headers=_auth_header()).status_code == 403
    assert client.get("/tasks/missing", headers=_auth_header()).status_code == 404

    processing = client.post(
        "/tasks/R1/transition",
        json={"status": "processing", "reason": "technician on site"},
        headers=_auth_header(role="worker"),
    )
    assert processing.status_code == 200
    assert processing.json()["status"] == "processing"

    invalid = client.post("/tasks/R1/transition", json={"status": "pending"}, headers=_auth_header())
    assert invalid.status_code == 400
    assert invalid.json()["detail"]["code"] == "INVALID_TRANSITION"

    replay = client.get("/dispatch/replay", params={"task_id": "R1"}, headers=_auth_header()).json()
    assert [item["action"] for item in replay["all_related"]] == ["REPAIR_PROCESSING"]
    assert replay["all_related"][0]["metadata"]["reason"] == "technician on site"
