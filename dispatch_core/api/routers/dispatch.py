from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from dispatch_core.api.deps import get_caller_scope, require_perm
from dispatch_core.domain.errors import (
    AlreadyAllocatedError,
    ConflictError,
    DispatchError,
    ForbiddenError,
    InvalidRequestError,
    InvalidTransitionError,
    NotFoundError,
    UpstreamUnavailableError,
)
from dispatch_core.domain.models import (
    CallerScope,
    DispatchAllocateRead,
    DispatchAllocateRequest,
    DispatchMatchRead,
    DispatchMatchRequest,
    DispatchMetricsRead,
    DispatchRecommendRead,
    DispatchReplayRead,
)
from dispatch_core.domain.permissions import PERM_DISPATCH_READ, PERM_DISPATCH_WRITE
from dispatch_core.domain.state_machine import TaskType
from dispatch_core.infra.audit import set_audit_context
from dispatch_core.services.allocation_service import AllocationService
from dispatch_core.services.candidate_matcher import CandidateMatcher
from dispatch_core.services.decision_trace_service import DecisionTraceService
from dispatch_core.services.dispatch_metrics_service import DispatchMetricsService
from dispatch_core.services.orchestration_service import DispatchOrchestrator

router = APIRouter()


def get_candidate_matcher() -> CandidateMatcher:
    return CandidateMatcher()


def get_allocation_service() -> AllocationService:
    return AllocationService()


def get_decision_trace_service() -> DecisionTraceService:
    return DecisionTraceService()


def get_metrics_service() -> DispatchMetricsService:
    return DispatchMetricsService()


def get_dispatch_orchestrator() -> DispatchOrchestrator:
    return DispatchOrchestrator()


Scope = Annotated[CallerScope, Depends(get_caller_scope)]


def _error_detail(exc: DispatchError) -> dict[str, str]:
    return {"code": exc.code, "message": str(exc)}


def _handle_error(exc: DispatchError) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_error_detail(exc)) from exc
    if isinstance(exc, ForbiddenError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=_error_detail(exc)) from exc
    if isinstance(exc, AlreadyAllocatedError | InvalidTransitionError | InvalidRequestError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=_error_detail(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=_error_detail(exc)) from exc
    if isinstance(exc, UpstreamUnavailableError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_error_detail(exc)) from exc
    raise exc


@router.post(
    "/match",
    response_model=DispatchMatchRead,
    dependencies=[Depends(require_perm(PERM_DISPATCH_READ))],
)
def match_candidates(
    payload: DispatchMatchRequest,
    scope: Scope,
    matcher: Annotated[CandidateMatcher, Depends(get_candidate_matcher)],
) -> DispatchMatchRead:
    try:
        candidates = matcher.match(payload.task_id, scope.tenant_scope, payload.task_type)
    except DispatchError as exc:
        _handle_error(exc)
        raise
    return DispatchMatchRead(candidates=candidates)


@router.get(
    "/recommend",
    response_model=DispatchRecommendRead,
    dependencies=[Depends(require_perm(PERM_DISPATCH_READ))],
)
def recommend_worker(
    scope: Scope,
    orchestrator: Annotated[DispatchOrchestrator, Depends(get_dispatch_orchestrator)],
    task_id: Annotated[str, Query(min_length=1)],
    task_type: TaskType | None = None,
    model_version: str | None = None,
) -> DispatchRecommendRead:
    try:
        return orchestrator.recommend(task_id, scope.tenant_scope, task_type, model_version)
    except DispatchError as exc:
        _handle_error(exc)
        raise


@router.post(
    "/allocate",
    response_model=DispatchAllocateRead,
    dependencies=[Depends(require_perm(PERM_DISPATCH_WRITE))],
)
def allocate_task(
    payload: DispatchAllocateRequest,
    request: Request,
    scope: Scope,
    service: Annotated[AllocationService, Depends(get_allocation_service)],
) -> DispatchAllocateRead:
    set_audit_context(
        request,
        action="dispatch.allocate",
        detail={"what": {"task_id": payload.task_id, "worker_id": payload.worker_id}},
    )
    try:
        result = service.allocate(
            payload.task_id,
            payload.worker_id,
            scope.tenant_scope,
            scope.actor_id,
            payload.task_type,
            payload.decision_trace,
        )
    except DispatchError as exc:
        set_audit_context(request, detail={"result": {"error_code": exc.code}})
        _handle_error(exc)
        raise
    return DispatchAllocateRead(allocated=result.committed, table=result.table)


@router.get(
    "/replay",
    response_model=DispatchReplayRead,
    dependencies=[Depends(require_perm(PERM_DISPATCH_READ))],
)
def replay_task(
    scope: Scope,
    service: Annotated[DecisionTraceService, Depends(get_decision_trace_service)],
    task_id: Annotated[str, Query(min_length=1)],
) -> DispatchReplayRead:
    try:
        return service.replay_task(task_id, scope.tenant_scope)
    except DispatchError as exc:
        _handle_error(exc)
        raise


@router.get(
    "/metrics",
    response_model=DispatchMetricsRead,
    dependencies=[Depends(require_perm(PERM_DISPATCH_READ))],
)
def dispatch_metrics(
    scope: Scope,
    service: Annotated[DispatchMetricsService, Depends(get_metrics_service)],
) -> DispatchMetricsRead:
    try:
        return service.overview(scope.tenant_scope)
    except DispatchError as exc:
        _handle_error(exc)
        raise
