"""Sequential step runner and the dispatch flow built on it.

A flow is an ordered list of named steps. Each step receives the state
accumulated so far plus the triggering event and returns the next state. A
step fails by raising a :class:`DispatchError` or by returning a state with
``error`` set; the engine then stops and hands back what was gathered, with
no compensation for earlier steps. The whole-flow timeout is checked between
steps only, so a slow step always runs to completion.
"""

from __future__ import annotations

import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from dispatch_core.domain.audit_records import DecisionTracePayload
from dispatch_core.domain.errors import (
    DispatchError,
    FlowNotFoundError,
    FlowTimeoutError,
    InvalidRequestError,
    NoCandidatesError,
)
from dispatch_core.domain.models import (
    CallerScope,
    Candidate,
    DispatchRecommendRead,
    RecommendedCandidateRead,
    Task,
    now_utc,
)
from dispatch_core.domain.state_machine import TaskType, normalize_task_type
from dispatch_core.infra.log import get_logger
from dispatch_core.services.allocation_service import AllocationService
from dispatch_core.services.candidate_matcher import CandidateMatcher
from dispatch_core.services.decision_trace_service import (
    ALLOCATED_OUTCOME,
    FAILED_OUTCOME,
    DecisionTraceService,
    new_decision_id,
)
from dispatch_core.services.strategy_service import StrategyEvaluator, format_recommendation
from dispatch_core.services.task_store import TaskStore

ORCHESTRATION_TIMEOUT_SECONDS = float(os.getenv("ORCHESTRATION_TIMEOUT_SECONDS", "15"))

DISPATCH_FLOW = "dispatch"
DISPATCH_REQUESTED = "dispatch.requested"
UNSUPPORTED_EVENT = "UNSUPPORTED_EVENT"
STEP_FAILED = "STEP_FAILED"

logger = get_logger(__name__, component="orchestration")


@dataclass
class FlowEvent:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    scope: CallerScope | None = None
    event_id: str = field(default_factory=lambda: f"evt-{uuid4().hex}")
    timestamp: datetime = field(default_factory=now_utc)


@dataclass
class FlowState:
    event_id: str
    step: str = "start"
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None
    failed_step: str | None = None
    completed_steps: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def fail(self, step_name: str, message: str, code: str) -> FlowState:
        self.error = message
        self.error_code = code
        self.failed_step = step_name
        self.step = f"{step_name}_failed"
        return self


StepFn = Callable[[FlowState, FlowEvent], FlowState]


@dataclass(frozen=True)
class FlowStep:
    name: str
    run: StepFn


@dataclass(frozen=True)
class Flow:
    steps: tuple[FlowStep, ...]
    event_types: frozenset[str]


class OrchestrationEngine:
    def __init__(
        self,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout = ORCHESTRATION_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self._clock = clock
        self._flows: dict[str, Flow] = {}

    def register_flow(self, name: str, flow: Flow) -> None:
        self._flows[name] = flow

    def on_event(self, flow_name: str, event: FlowEvent) -> FlowState:
        flow = self._flows.get(flow_name)
        if flow is None or not flow.steps:
            raise FlowNotFoundError(f"flow {flow_name} not registered")

        state = FlowState(event_id=event.event_id, data=dict(event.payload))
        if event.type not in flow.event_types:
            logger.warning("flow_unsupported_event", flow=flow_name, event_type=event.type)
            return state.fail("start", f"event type {event.type} not handled by {flow_name}", UNSUPPORTED_EVENT)

        started = self._clock()
        for step in flow.steps:
            if self._clock() - started > self._timeout:
                logger.warning("flow_timeout", flow=flow_name, step=step.name, event_id=event.event_id)
                return state.fail(step.name, "orchestration timeout", FlowTimeoutError.code)
            try:
                state = step.run(state, event)
            except DispatchError as exc:
                logger.info(
                    "flow_step_failed",
                    flow=flow_name,
                    step=step.name,
                    event_id=event.event_id,
                    error_code=exc.code,
                )
                return state.fail(step.name, str(exc) or exc.code, exc.code)
            if state.error is not None:
                logger.info("flow_step_failed", flow=flow_name, step=step.name, event_id=event.event_id)
                return state.fail(step.name, state.error, state.error_code or STEP_FAILED)
            state.step = step.name
            state.completed_steps.append(step.name)

        state.step = "completed"
        logger.info("flow_completed", flow=flow_name, event_id=event.event_id)
        return state


def _scope_of(event: FlowEvent) -> CallerScope:
    return event.scope or CallerScope(actor_id=None, role=None, tenant_scope=None)


def build_dispatch_flow(
    store: TaskStore,
    matcher: CandidateMatcher,
    evaluator: StrategyEvaluator,
    allocator: AllocationService,
) -> Flow:
    def match(state: FlowState, event: FlowEvent) -> FlowState:
        scope = _scope_of(event)
        task_id = state.data.get("task_id")
        if not isinstance(task_id, str) or not task_id:
            raise InvalidRequestError("missing task_id")
        task = store.get_scoped_task(task_id, scope.tenant_scope, normalize_task_type(state.data.get("task_type")))

        supplied = state.data.get("candidates")
        if isinstance(supplied, list) and supplied:
            candidates = [Candidate.model_validate(item) for item in supplied]
        else:
            candidates = matcher.match_task(task, scope.tenant_scope)

        state.data.update(
            task_id=task.id,
            task_type=str(task.type),
            task=task.model_dump(mode="json"),
            candidates=[item.model_dump(mode="json") for item in candidates],
        )
        if not candidates and not state.data.get("worker_id"):
            raise NoCandidatesError("no available candidates")
        return state

    def evaluate(state: FlowState, event: FlowEvent) -> FlowState:
        task = Task.model_validate(state.data["task"])
        candidates = [Candidate.model_validate(item) for item in state.data.get("candidates", [])]
        version = evaluator.resolve_version(state.data.get("model_version"))
        scores = evaluator.evaluate(
            matcher.task_context(task),
            matcher.worker_contexts(task, candidates),
            version,
        )
        selected = evaluator.select(scores)
        recommendation = evaluator.recommendation(selected)
        state.data.update(
            strategy_version=version,
            scores=[item.model_dump(mode="json") for item in scores],
            platform_selected_worker=selected.worker_id if selected is not None else None,
            platform_recommendation=recommendation.model_dump(mode="json"),
            platform_recommendation_reason=format_recommendation(recommendation),
        )
        return state

    def allocate(state: FlowState, event: FlowEvent) -> FlowState:
        scope = _scope_of(event)
        explicit = state.data.get("worker_id") or None
        platform_pick = state.data.get("platform_selected_worker")
        worker_id = explicit or platform_pick
        if not worker_id:
            raise NoCandidatesError("no worker to allocate")
        # an override needs a platform pick to override
        business_override = explicit is not None and platform_pick is not None and explicit != platform_pick
        state.data.update(selected_worker_id=worker_id, business_override=business_override)

        result = allocator.allocate(
            state.data["task_id"],
            worker_id,
            scope.tenant_scope,
            scope.actor_id,
            TaskType(state.data["task_type"]),
            decision_trace={
                "decision_id": state.data.get("decision_id"),
                "strategy_version": state.data.get("strategy_version"),
                "platform_selected_worker": platform_pick,
                "business_override": business_override,
            },
        )
        state.data.update(
            allocated=result.committed,
            table=result.table,
            task=result.task.model_dump(mode="json"),
        )
        return state

    return Flow(
        steps=(
            FlowStep("match", match),
            FlowStep("evaluate", evaluate),
            FlowStep("allocate", allocate),
        ),
        event_types=frozenset({DISPATCH_REQUESTED}),
    )


class DispatchOrchestrator:
    """Runs the dispatch flow and records its decision trace and learning sample."""

    def __init__(
        self,
        engine: OrchestrationEngine | None = None,
        store: TaskStore | None = None,
        matcher: CandidateMatcher | None = None,
        evaluator: StrategyEvaluator | None = None,
        allocator: AllocationService | None = None,
        recorder: DecisionTraceService | None = None,
    ) -> None:
        self._store = store or TaskStore()
        self._matcher = matcher or CandidateMatcher(self._store)
        self._evaluator = evaluator or StrategyEvaluator()
        self._allocator = allocator or AllocationService(self._store)
        self._recorder = recorder or DecisionTraceService()
        self._engine = engine or OrchestrationEngine()
        self._engine.register_flow(
            DISPATCH_FLOW,
            build_dispatch_flow(self._store, self._matcher, self._evaluator, self._allocator),
        )

    def recommend(
        self,
        task_id: str,
        tenant_scope: str | None,
        task_type: TaskType | None = None,
        model_version: str | None = None,
    ) -> DispatchRecommendRead:
        """Score the current candidates without allocating or recording anything."""
        version = self._evaluator.resolve_version(model_version)
        candidates = self._matcher.match(task_id, tenant_scope, task_type)
        if not candidates:
            return DispatchRecommendRead(
                task_id=task_id,
                recommended_worker_id=None,
                reason=format_recommendation(self._evaluator.recommendation(None)),
                platform_recommendation=None,
                candidates=[],
            )
        task = self._store.get_task(task_id, task_type)
        scores = self._evaluator.evaluate(
            self._matcher.task_context(task),
            self._matcher.worker_contexts(task, candidates),
            version,
        )
        selected = self._evaluator.select(scores)
        recommendation = self._evaluator.recommendation(selected)
        score_by_worker = {item.worker_id: item.score for item in scores}
        return DispatchRecommendRead(
            task_id=task_id,
            recommended_worker_id=selected.worker_id if selected is not None else candidates[0].worker_id,
            reason=format_recommendation(recommendation),
            platform_recommendation=recommendation,
            candidates=[
                RecommendedCandidateRead(
                    worker_id=item.worker_id,
                    score=score_by_worker.get(item.worker_id, 0.0),
                    reason=item.reason,
                )
                for item in candidates
            ],
        )

    def dispatch(
        self,
        task_id: str,
        scope: CallerScope,
        worker_id: str | None = None,
        task_type: TaskType | None = None,
        *,
        model_version: str | None = None,
        rejected_category: str | None = None,
        rejected_reason: str | None = None,
    ) -> tuple[str, FlowState]:
        decision_id = new_decision_id()
        payload: dict[str, Any] = {
            "decision_id": decision_id,
            "task_id": task_id,
            "task_type": str(task_type) if task_type is not None else None,
            "worker_id": worker_id,
            "model_version": model_version,
        }
        state = self._engine.on_event(
            DISPATCH_FLOW,
            FlowEvent(type=DISPATCH_REQUESTED, payload=payload, scope=scope),
        )

        trace = self._build_trace(decision_id, state)
        task_snapshot = state.data.get("task") or {}
        tenant_id = task_snapshot.get("tenant_id") if isinstance(task_snapshot, dict) else None
        tenant_id = tenant_id or scope.tenant_scope
        self._recorder.record_trace(trace, scope.actor_id, tenant_id)

        if state.ok and trace.selected_worker_id is not None:
            override = trace.business_override
            self._recorder.record_learning(
                trace.task_id or task_id,
                trace.selected_worker_id,
                "business_override" if override else "platform_accepted",
                {
                    "business_override": override,
                    "candidates_count": len(trace.candidates),
                    "confidence_score": (trace.platform_recommendation or {}).get("confidence_score"),
                },
                scope.actor_id,
                tenant_id,
                task_snapshot={"task_id": trace.task_id, "task_type": trace.task_type},
                worker_snapshot={"worker_id": trace.selected_worker_id},
                strategy_version=trace.strategy_version,
                decision={
                    "decision_id": decision_id,
                    "platform_selected_worker": trace.platform_selected_worker,
                    "platform_recommendation": trace.platform_recommendation,
                    "business_override": override,
                },
                rejected_category=rejected_category if override else None,
                rejected_text=rejected_reason if override else None,
            )
        return decision_id, state

    @staticmethod
    def _build_trace(decision_id: str, state: FlowState) -> DecisionTracePayload:
        data = state.data
        return DecisionTracePayload(
            decision_id=decision_id,
            task_id=data.get("task_id"),
            task_type=data.get("task_type"),
            strategy_version=data.get("strategy_version"),
            outcome=ALLOCATED_OUTCOME if state.ok else FAILED_OUTCOME,
            candidates=list(data.get("candidates") or []),
            scores=list(data.get("scores") or []),
            platform_recommendation=data.get("platform_recommendation"),
            platform_selected_worker=data.get("platform_selected_worker"),
            selected_worker_id=data.get("selected_worker_id"),
            business_override=bool(data.get("business_override", False)),
            allocation={"committed": bool(data.get("allocated", False)), "table": data.get("table")},
            error=state.error,
            error_code=state.error_code,
            failed_step=state.failed_step,
        )
