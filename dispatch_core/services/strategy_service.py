from __future__ import annotations

import math
import os
from collections.abc import Callable
from typing import Any, ClassVar

from dispatch_core.domain.errors import UnknownModelVersionError
from dispatch_core.domain.models import PlatformRecommendation, ReasonCode, Score, ScoreFactors
from dispatch_core.infra.log import get_logger

STRATEGY_DEFAULT_MODEL_VERSION = os.getenv("STRATEGY_DEFAULT_MODEL_VERSION", "2.0.0")

logger = get_logger(__name__, component="strategy")

PRIMARY_REASON_LABELS: dict[ReasonCode, str] = {
    ReasonCode.SKILL_MATCH: "Skill match",
    ReasonCode.DISTANCE: "Nearest",
    ReasonCode.AVAILABILITY: "Available now",
    ReasonCode.LOAD_BALANCE: "Load balance",
    ReasonCode.EXPERIENCE: "Experience first",
    ReasonCode.NO_CANDIDATES: "No available candidates",
}

SECONDARY_FACTOR_LABELS: dict[ReasonCode, str] = {
    ReasonCode.SKILL_MATCH: "skill",
    ReasonCode.DISTANCE: "distance",
    ReasonCode.AVAILABILITY: "availability",
    ReasonCode.LOAD_BALANCE: "load",
    ReasonCode.EXPERIENCE: "experience",
}

EARTH_RADIUS_KM = 6371.0


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float | str):
        return None
    try:
        number = float(value)
    except (ValueError, OverflowError):
        return None
    # non-finite input counts as missing
    return number if math.isfinite(number) else None


def _coords(raw: Any) -> tuple[float, float] | None:
    if not isinstance(raw, dict):
        return None
    lat = _as_float(raw.get("lat"))
    lng = _as_float(raw.get("lng", raw.get("lon")))
    if lat is None or lng is None:
        return None
    if abs(lat) > 90 or abs(lng) > 180:
        return None
    return lat, lng


def haversine_km(origin: tuple[float, float], target: tuple[float, float]) -> float:
    lat1, lng1 = (math.radians(item) for item in origin)
    lat2, lng2 = (math.radians(item) for item in target)
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def _lowered(values: Any) -> set[str]:
    if not isinstance(values, list):
        return set()
    return {item.strip().lower() for item in values if isinstance(item, str)}


def format_recommendation(recommendation: PlatformRecommendation) -> str:
    primary = PRIMARY_REASON_LABELS.get(recommendation.primary_reason, str(recommendation.primary_reason))
    if not recommendation.secondary_factors:
        return primary
    secondaries = ", ".join(
        SECONDARY_FACTOR_LABELS.get(item, str(item)) for item in recommendation.secondary_factors
    )
    return f"{primary} ({secondaries})"


class StrategyEvaluator:
    """Deterministic worker scoring, one scorer per model version."""

    BASELINE_VERSION: ClassVar[str] = "1.0.0"
    WEIGHTED_VERSION: ClassVar[str] = "2.0.0"
    WEIGHTS: ClassVar[dict[str, float]] = {
        "skill": 0.35,
        "load": 0.25,
        "experience": 0.20,
        "distance": 0.20,
    }
    FACTOR_REASONS: ClassVar[dict[str, ReasonCode]] = {
        "skill": ReasonCode.SKILL_MATCH,
        "load": ReasonCode.LOAD_BALANCE,
        "experience": ReasonCode.EXPERIENCE,
        "distance": ReasonCode.DISTANCE,
    }
    NEUTRAL_VALUE: ClassVar[float] = 0.5
    EXPERIENCE_CAP: ClassVar[int] = 20
    DISTANCE_SCALE_KM: ClassVar[float] = 5.0

    def __init__(self, default_version: str | None = None) -> None:
        self._default_version = default_version or STRATEGY_DEFAULT_MODEL_VERSION
        self._scorers: dict[str, Callable[[dict[str, Any], dict[str, Any], str, str], Score]] = {
            self.BASELINE_VERSION: self._score_baseline,
            self.WEIGHTED_VERSION: self._score_weighted,
        }

    def supported_versions(self) -> list[str]:
        return sorted(self._scorers)

    def resolve_version(self, model_version: str | None) -> str:
        version = (model_version or self._default_version).strip()
        if version not in self._scorers:
            logger.info("strategy_version_rejected", model_version=version)
            raise UnknownModelVersionError(
                f"unknown model version: {version} (supported: {', '.join(self.supported_versions())})"
            )
        return version

    def evaluate(
        self,
        task_context: dict[str, Any],
        workers_context: list[dict[str, Any]],
        model_version: str | None = None,
    ) -> list[Score]:
        version = self.resolve_version(model_version)
        scorer = self._scorers[version]
        scores: list[Score] = []
        for worker in workers_context:
            if not isinstance(worker, dict):
                continue
            worker_id = worker.get("id") or worker.get("worker_id")
            if not isinstance(worker_id, str) or not worker_id:
                continue
            scores.append(scorer(task_context, worker, worker_id, version))
        # sorted() is stable: ties keep matcher order
        return sorted(scores, key=lambda item: -item.score)

    @staticmethod
    def select(scores: list[Score]) -> Score | None:
        if not scores:
            return None
        best = scores[0]
        for item in scores[1:]:
            if item.score > best.score:
                best = item
        return best

    @staticmethod
    def recommendation(score: Score | None) -> PlatformRecommendation:
        if score is None:
            return PlatformRecommendation(
                primary_reason=ReasonCode.NO_CANDIDATES,
                secondary_factors=[],
                confidence_score=0,
            )
        return PlatformRecommendation(
            primary_reason=score.factors.primary_reason,
            secondary_factors=list(score.factors.secondary_factors),
            confidence_score=score.factors.confidence_score,
        )

    def _score_baseline(
        self,
        task_context: dict[str, Any],
        worker: dict[str, Any],
        worker_id: str,
        version: str,
    ) -> Score:
        return Score(
            worker_id=worker_id,
            score=1.0,
            factors=ScoreFactors(
                primary_reason=ReasonCode.SKILL_MATCH,
                secondary_factors=[ReasonCode.AVAILABILITY],
                confidence_score=0.8,
                model_version=version,
            ),
        )

    def _skill_factor(self, task_context: dict[str, Any], worker: dict[str, Any]) -> float | None:
        required = task_context.get("required_skill") or task_context.get("task_type")
        product_type = task_context.get("product_type")
        if not isinstance(required, str) and not isinstance(product_type, str):
            return None
        skills = _lowered(worker.get("skills"))
        has_skill = 1.0 if isinstance(required, str) and required.strip().lower() in skills else 0.0
        if not isinstance(product_type, str):
            return has_skill
        product_types = _lowered(worker.get("product_types"))
        product_match = 1.0 if product_type.strip().lower() in product_types else 0.0
        if not isinstance(required, str):
            return product_match
        return (has_skill + product_match) / 2

    @staticmethod
    def _load_factor(worker: dict[str, Any]) -> float | None:
        load = _as_float(worker.get("active_load"))
        if load is None:
            return None
        return 1 / (1 + max(load, 0.0))

    def _experience_factor(self, worker: dict[str, Any]) -> float | None:
        completed = _as_float(worker.get("completed_count"))
        if completed is None:
            return None
        return min(max(completed, 0.0), self.EXPERIENCE_CAP) / self.EXPERIENCE_CAP

    def _distance_factor(self, task_context: dict[str, Any], worker: dict[str, Any]) -> float | None:
        origin = _coords(task_context.get("location"))
        target = _coords(worker.get("location"))
        if origin is None or target is None:
            return None
        return 1 / (1 + haversine_km(origin, target) / self.DISTANCE_SCALE_KM)

    def _score_weighted(
        self,
        task_context: dict[str, Any],
        worker: dict[str, Any],
        worker_id: str,
        version: str,
    ) -> Score:
        raw: dict[str, float | None] = {
            "skill": self._skill_factor(task_context, worker),
            "load": self._load_factor(worker),
            "experience": self._experience_factor(worker),
            "distance": self._distance_factor(task_context, worker),
        }
        values = {name: self.NEUTRAL_VALUE if value is None else value for name, value in raw.items()}
        contributions = {name: self.WEIGHTS[name] * values[name] for name in self.WEIGHTS}
        total = round(sum(contributions.values()), 4)

        # max() keeps the first of equal contributions, in WEIGHTS order
        primary = max(self.WEIGHTS, key=lambda name: contributions[name])
        secondary = [
            self.FACTOR_REASONS[name]
            for name in self.WEIGHTS
            if name != primary and values[name] >= self.NEUTRAL_VALUE
        ]
        known = sum(1 for value in raw.values() if value is not None)
        confidence = round(0.5 + 0.5 * known / len(raw), 4)

        return Score(
            worker_id=worker_id,
            score=total,
            factors=ScoreFactors(
                primary_reason=self.FACTOR_REASONS[primary],
                secondary_factors=secondary,
                confidence_score=confidence,
                model_version=version,
                breakdown={name: round(value, 4) for name, value in values.items()},
            ),
        )
