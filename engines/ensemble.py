"""Ensemble success prediction over five independent estimators.

Each estimator returns the probability that the learner solves a candidate
task. The ensemble combines them with per-learner weights that are
renormalized after every outcome: estimators with low squared error gain
weight, poorly calibrated ones lose it, and no weight drops below a floor.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from statistics import pstdev
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from engine_settings import EngineSettings, EnsembleSettings, get_settings
from engines.arithmetic import PLACEHOLDER_POSITIONS, Task, estimate_difficulty
from engines.base import BasePredictor
from engines.learner_model import SCAFFOLDING, LearnerModel, Weights
from engines.observer import ROLLING_ACCURACY
from engines.validation import ValidationError, normalize_with_floor, validate_probability_weights, validate_vector
from schemas import INPUT_SIZE, PREDICTOR_COUNT, CompetencyMastery, LearnerProgressionRecord, MemoryTrace, TaskAttempt

_LOGGER = logging.getLogger(__name__)

MIN_PROBABILITY = 0.02
MAX_PROBABILITY = 0.98


class PredictorKind(str, Enum):
    BAYESIAN = "bayesian"
    PATTERN_BASED = "pattern_based"
    RULE_BASED = "rule_based"
    CASE_BASED = "case_based"
    HYBRID = "hybrid"


PREDICTOR_ORDER: Tuple[PredictorKind, ...] = (
    PredictorKind.BAYESIAN,
    PredictorKind.PATTERN_BASED,
    PredictorKind.RULE_BASED,
    PredictorKind.CASE_BASED,
    PredictorKind.HYBRID,
)


def _bounded(value: float) -> float:
    return max(MIN_PROBABILITY, min(MAX_PROBABILITY, float(value)))


class BayesianPredictor(BasePredictor):
    """Beta-style prior from competency mastery, updated with similar recent outcomes."""

    kind = PredictorKind.BAYESIAN

    def __init__(self, mastery: Mapping[str, CompetencyMastery], prior_strength: float = 4.0) -> None:
        self.mastery = mastery
        self.prior_strength = prior_strength

    def prior(self, task: Task) -> float:
        entry = self.mastery.get(task.competency_id)
        if entry is None:
            return 0.6
        if entry.mastered:
            return 0.85
        return 0.5 + 0.1 * min(entry.score, 3)

    def predict(self, state: Sequence[float], task: Task, history: Sequence[TaskAttempt]) -> float:
        similar = [
            attempt
            for attempt in history
            if attempt.operation == task.operation
            and attempt.placeholder_position == task.placeholder_position
            and attempt.number_range == task.number_range
        ]
        successes = sum(1 for attempt in similar if attempt.correct)
        failures = len(similar) - successes
        strength = self.prior_strength
        posterior = (self.prior(task) * strength + successes) / (strength + successes + failures)
        posterior *= 1.0 - 0.2 * (estimate_difficulty(task) - 0.5)
        return _bounded(posterior)


class PatternBasedPredictor(BasePredictor):
    """Reads the learner model's scaffolding output as a difficulty signal."""

    kind = PredictorKind.PATTERN_BASED

    def __init__(self, model: LearnerModel, weights: Weights) -> None:
        self.model = model
        self.weights = weights

    def predict(self, state: Sequence[float], task: Task, history: Sequence[TaskAttempt]) -> float:
        actions = self.model.forward(state, self.weights)
        scaffolding = float(actions[SCAFFOLDING])
        return _bounded(1.2 - scaffolding * (0.6 + estimate_difficulty(task)))


# Base success rates keyed by (crosses ten, placeholder position).
RULE_TABLE: Dict[Tuple[bool, str], float] = {
    (False, "end"): 0.9,
    (False, "middle"): 0.8,
    (False, "start"): 0.75,
    (True, "end"): 0.75,
    (True, "middle"): 0.65,
    (True, "start"): 0.6,
}
MAGNITUDE_ADJUSTMENT = {"small": 0.05, "medium": 0.0, "large": -0.08}


class RuleBasedPredictor(BasePredictor):
    kind = PredictorKind.RULE_BASED

    @staticmethod
    def magnitude_bucket(task: Task) -> str:
        ratio = max(task.operand1, task.operand2) / task.number_range
        if ratio <= 0.3:
            return "small"
        if ratio <= 0.6:
            return "medium"
        return "large"

    def predict(self, state: Sequence[float], task: Task, history: Sequence[TaskAttempt]) -> float:
        base = RULE_TABLE[(task.requires_carry, task.placeholder_position)]
        base += MAGNITUDE_ADJUSTMENT[self.magnitude_bucket(task)]
        if task.operation == "-":
            base -= 0.05
        accuracy = float(state[ROLLING_ACCURACY])
        return _bounded(base + (accuracy - 0.5) * 0.4)


class CaseBasedPredictor(BasePredictor):
    """k-nearest memory traces, weighted by similarity and consolidation."""

    kind = PredictorKind.CASE_BASED

    def __init__(self, traces: Sequence[MemoryTrace], neighbors: int = 5, default: float = 0.6) -> None:
        self.traces = list(traces)
        self.neighbors = neighbors
        self.default = default

    @staticmethod
    def _features(operand1: int, operand2: int, operation: str, number_range: int, placeholder: str) -> np.ndarray:
        return np.array(
            [
                operand1 / number_range,
                operand2 / number_range,
                1.0 if operation == "-" else 0.0,
                PLACEHOLDER_POSITIONS.index(placeholder) / 2,
            ]
        )

    def predict(self, state: Sequence[float], task: Task, history: Sequence[TaskAttempt]) -> float:
        if not self.traces:
            return self.default
        target = self._features(
            task.operand1, task.operand2, task.operation, task.number_range, task.placeholder_position
        )
        scored = []
        for trace in self.traces:
            features = self._features(
                trace.operand1, trace.operand2, trace.operation, trace.number_range, trace.placeholder_position
            )
            similarity = 1.0 / (1.0 + 5.0 * float(np.linalg.norm(features - target)))
            scored.append((similarity, trace))
        scored.sort(key=lambda item: item[0], reverse=True)

        numerator = 0.0
        denominator = 0.0
        for similarity, trace in scored[: self.neighbors]:
            weight = similarity * max(trace.consolidation_strength, 0.05)
            numerator += weight * (1.0 if trace.correct else 0.0)
            denominator += weight
        if denominator <= 0:
            return self.default
        return _bounded(numerator / denominator)


class HybridPredictor(BasePredictor):
    kind = PredictorKind.HYBRID
    BLEND = (0.3, 0.25, 0.25, 0.2)

    def __init__(self, components: Sequence[BasePredictor]) -> None:
        if len(components) != len(self.BLEND):
            raise ValidationError(f"Hybrid predictor needs {len(self.BLEND)} components")
        self.components = list(components)

    def blend(self, values: Sequence[float]) -> float:
        return _bounded(sum(w * v for w, v in zip(self.BLEND, values)))

    def predict(self, state: Sequence[float], task: Task, history: Sequence[TaskAttempt]) -> float:
        return self.blend([component.predict(state, task, history) for component in self.components])


@dataclass
class EnsembleBreakdown:
    probability: float
    individual: Dict[str, float]
    weights: Dict[str, float]
    consensus: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "probability": self.probability,
            "individual": dict(self.individual),
            "weights": dict(self.weights),
            "consensus": self.consensus,
        }


@dataclass
class RankedCandidate:
    task: Task
    fitness: float
    breakdown: EnsembleBreakdown
    band_distance: float = field(default=0.0)


class EnsemblePredictor:
    """Weighted combination of the five estimators for one learner."""

    def __init__(
        self,
        predictors: Sequence[BasePredictor],
        weights: Sequence[float],
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self.settings: EnsembleSettings = (settings or get_settings()).ensemble
        kinds = tuple(predictor.kind for predictor in predictors)
        if kinds != PREDICTOR_ORDER:
            raise ValidationError(f"Predictors must be {[k.value for k in PREDICTOR_ORDER]}, got {kinds}")
        validate_probability_weights(list(weights), PREDICTOR_COUNT)
        self.predictors = tuple(predictors)
        self.weights = list(weights)

    @classmethod
    def from_record(
        cls,
        record: LearnerProgressionRecord,
        settings: Optional[EngineSettings] = None,
        model: Optional[LearnerModel] = None,
    ) -> "EnsemblePredictor":
        settings = settings or get_settings()
        model = model or LearnerModel(settings)
        cfg = settings.ensemble
        bayesian = BayesianPredictor(record.competency_mastery, cfg.bayesian_prior_strength)
        pattern = PatternBasedPredictor(model, Weights.from_schema(record.weights))
        rule = RuleBasedPredictor()
        case = CaseBasedPredictor(record.memory_traces, cfg.case_neighbors, cfg.case_default)
        hybrid = HybridPredictor([bayesian, pattern, rule, case])
        return cls([bayesian, pattern, rule, case, hybrid], record.ensemble_weights, settings)

    # ----- public API --------------------------------------------------
    def predict(self, state: Sequence[float], task: Task, history: Sequence[TaskAttempt]) -> EnsembleBreakdown:
        vector = validate_vector(state, INPUT_SIZE, "state vector")
        values: List[float] = []
        for predictor in self.predictors:
            if isinstance(predictor, HybridPredictor) and len(values) == len(HybridPredictor.BLEND):
                values.append(predictor.blend(values))
            else:
                values.append(_bounded(predictor.predict(vector, task, history)))

        probability = sum(w * v for w, v in zip(self.weights, values))
        spread = pstdev(values) if len(values) > 1 else 0.0
        return EnsembleBreakdown(
            probability=_bounded(probability),
            individual={kind.value: value for kind, value in zip(PREDICTOR_ORDER, values)},
            weights={kind.value: weight for kind, weight in zip(PREDICTOR_ORDER, self.weights)},
            consensus=max(0.0, 1.0 - 2.0 * spread),
        )

    def rank(
        self,
        candidates: Sequence[Tuple[Task, float]],
        state: Sequence[float],
        history: Sequence[TaskAttempt],
    ) -> List[RankedCandidate]:
        """Score ``(task, fitness)`` pairs, closest to the target band centre first."""
        low, high = self.settings.target_min, self.settings.target_max
        centre = (low + high) / 2
        ranked = []
        for task, fitness in candidates:
            breakdown = self.predict(state, task, history)
            ranked.append(
                RankedCandidate(
                    task=task,
                    fitness=fitness,
                    breakdown=breakdown,
                    band_distance=abs(breakdown.probability - centre),
                )
            )
        ranked.sort(
            key=lambda item: (
                not (low <= item.breakdown.probability <= high),
                item.band_distance,
                -item.fitness,
            )
        )
        return ranked

    def update_weights(self, breakdown: EnsembleBreakdown, outcome: bool) -> List[float]:
        """Return new weights after observing ``outcome`` for ``breakdown``."""
        target = 1.0 if outcome else 0.0
        cfg = self.settings
        adjusted = []
        for kind, weight in zip(PREDICTOR_ORDER, self.weights):
            error = (breakdown.individual[kind.value] - target) ** 2
            adjusted.append(weight * math.exp(-cfg.learning_rate * error))
        total = sum(adjusted) or 1.0
        uniform = 1.0 / PREDICTOR_COUNT
        decayed = [(1.0 - cfg.weight_decay) * (w / total) + cfg.weight_decay * uniform for w in adjusted]
        return normalize_with_floor(decayed, cfg.weight_floor)


__all__ = [
    "PredictorKind",
    "PREDICTOR_ORDER",
    "BayesianPredictor",
    "PatternBasedPredictor",
    "RuleBasedPredictor",
    "CaseBasedPredictor",
    "HybridPredictor",
    "EnsembleBreakdown",
    "EnsemblePredictor",
    "RankedCandidate",
    "RULE_TABLE",
    "normalize_with_floor",
]
