from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from dispatch_core.api.deps import get_caller_scope, require_perm
from dispatch_core.domain.errors import UnknownModelVersionError
from dispatch_core.domain.models import CallerScope, StrategyEvaluateRead, StrategyEvaluateRequest
from dispatch_core.domain.permissions import PERM_STRATEGY_EVALUATE
from dispatch_core.services.strategy_service import StrategyEvaluator

router = APIRouter()


def get_strategy_evaluator() -> StrategyEvaluator:
    return StrategyEvaluator()


def _handle_error(exc: UnknownModelVersionError) -> None:
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": exc.code, "message": str(exc)},
    ) from exc


@router.post(
    "/evaluate",
    response_model=StrategyEvaluateRead,
    dependencies=[Depends(require_perm(PERM_STRATEGY_EVALUATE))],
)
def evaluate_workers(
    payload: StrategyEvaluateRequest,
    scope: Annotated[CallerScope, Depends(get_caller_scope)],
    evaluator: Annotated[StrategyEvaluator, Depends(get_strategy_evaluator)],
) -> StrategyEvaluateRead:
    try:
        version = evaluator.resolve_version(payload.model_version)
        scores = evaluator.evaluate(payload.task_context, payload.workers_context, version)
    except UnknownModelVersionError as exc:
        _handle_error(exc)
        raise
    return StrategyEvaluateRead(model_version=version, scores=scores)
