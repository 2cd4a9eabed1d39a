from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from dispatch_core.api.deps import get_caller_scope, require_perm
from dispatch_core.domain.errors import UpstreamUnavailableError
from dispatch_core.domain.models import (
    CallerScope,
    OrchestrationDispatchRead,
    OrchestrationDispatchRequest,
)
from dispatch_core.domain.permissions import PERM_DISPATCH_WRITE
from dispatch_core.infra.audit import set_audit_context
from dispatch_core.services.orchestration_service import DispatchOrchestrator

router = APIRouter()


def get_dispatch_orchestrator() -> DispatchOrchestrator:
    return DispatchOrchestrator()


def _handle_error(exc: UpstreamUnavailableError) -> None:
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": exc.code, "message": str(exc)},
    ) from exc


@router.post(
    "/dispatch",
    response_model=OrchestrationDispatchRead,
    dependencies=[Depends(require_perm(PERM_DISPATCH_WRITE))],
)
def orchestrate_dispatch(
    payload: OrchestrationDispatchRequest,
    request: Request,
    scope: Annotated[CallerScope, Depends(get_caller_scope)],
    orchestrator: Annotated[DispatchOrchestrator, Depends(get_dispatch_orchestrator)],
) -> OrchestrationDispatchRead:
    set_audit_context(
        request,
        action="orchestration.dispatch",
        detail={"what": {"task_id": payload.task_id, "worker_id": payload.worker_id}},
    )
    try:
        decision_id, state = orchestrator.dispatch(
            payload.task_id,
            scope,
            payload.worker_id,
            payload.task_type,
            model_version=payload.model_version,
            rejected_category=str(payload.rejected_category) if payload.rejected_category is not None else None,
            rejected_reason=payload.rejected_reason,
        )
    except UpstreamUnavailableError as exc:
        _handle_error(exc)
        raise

    if not state.ok:
        set_audit_context(request, detail={"result": {"error_code": state.error_code, "decision_id": decision_id}})
        failure_status = (
            status.HTTP_503_SERVICE_UNAVAILABLE
            if state.error_code == UpstreamUnavailableError.code
            else status.HTTP_400_BAD_REQUEST
        )
        raise HTTPException(
            status_code=failure_status,
            detail={
                "code": state.error_code,
                "message": state.error,
                "step": state.failed_step,
                "decision_id": decision_id,
                "data": state.data,
            },
        )
    return OrchestrationDispatchRead(
        decision_id=decision_id,
        event_id=state.event_id,
        step=state.step,
        data=state.data,
    )
