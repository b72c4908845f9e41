"""Didactic analyzers: zone of proximal development, cognitive load and
desirable difficulties for arithmetic practice."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from statistics import mean
from typing import Any, Dict, List, Mapping, Optional, Sequence

from engine_settings import EngineSettings, get_settings
from engines.arithmetic import Task, estimate_difficulty, magnitude
from engines.observer import (
    CONSISTENCY,
    RETRIEVAL_SHARE,
    ROLLING_ACCURACY,
)
from engines.validation import validate_vector
from schemas import INPUT_SIZE, TaskAttempt

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ZPDBand:
    min_difficulty: float
    max_difficulty: float
    center: float
    confidence: float

    @property
    def width(self) -> float:
        return self.max_difficulty - self.min_difficulty

    def contains(self, difficulty: float) -> bool:
        return self.min_difficulty <= difficulty <= self.max_difficulty

    def to_dict(self) -> Dict[str, float]:
        return dataclasses.asdict(self)


NEUTRAL_ZPD = ZPDBand(min_difficulty=0.2, max_difficulty=0.5, center=0.35, confidence=0.0)


@dataclass(frozen=True)
class CognitiveLoad:
    intrinsic: float
    extraneous: float
    germane: float
    total: float
    is_optimal: bool


NEUTRAL_LOAD = CognitiveLoad(intrinsic=0.5, extraneous=0.0, germane=0.0, total=0.5, is_optimal=False)


@dataclass
class DesirableDifficulty:
    kind: str  # 'spacing', 'interleaving', 'variability', 'generation'
    strength: float
    rationale: str
    context: Dict[str, Any] = field(default_factory=dict)


# Self-explanation prompts keyed by moment in the task cycle.
METACOGNITIVE_PROMPTS: Dict[str, List[Dict[str, str]]] = {
    "before": [
        {
            "question": "Before you start: which strategy do you want to use?",
            "purpose": "strategy_planning",
        },
        {
            "question": "Look at the numbers. Is there a task you already know that helps here?",
            "purpose": "activate_prior_knowledge",
        },
        {
            "question": "Do you have to cross a ten? How will you do it?",
            "purpose": "anticipate_difficulty",
        },
    ],
    "after_success": [
        {
            "question": "Great! How did you work it out?",
            "purpose": "self_explanation",
        },
        {
            "question": "Could you have solved it another way?",
            "purpose": "strategy_flexibility",
        },
    ],
    "after_error": [
        {
            "question": "Let's look again together. Where did it go wrong?",
            "purpose": "error_analysis",
        },
        {
            "question": "Which picture or tool could help you with this task?",
            "purpose": "representation_support",
        },
    ],
}

_PLACEHOLDER_PROMPT = {
    "question": "Which number is missing? Check it by calculating the whole task again.",
    "purpose": "placeholder_reasoning",
}

# Follow-up questions after a wrong answer, keyed by error family.
ERROR_PROMPTS: Dict[str, Dict[str, str]] = {
    "counting": {
        "question": "You were very close. Can you find a faster way than counting?",
        "purpose": "counting_reflection",
    },
    "operation": {
        "question": "Read the sign again. Should the result get bigger or smaller?",
        "purpose": "operation_check",
    },
    "decade": {
        "question": "You reached the ten. How much do you still have to take away?",
        "purpose": "decade_reasoning",
    },
    "place_value": {
        "question": "Which digit stands for the tens and which for the ones?",
        "purpose": "place_value_check",
    },
    "doubling": {
        "question": "Which double do you know that is close to this task?",
        "purpose": "core_task_link",
    },
    "input": {
        "question": "Look at the number you typed. Is it the one you meant?",
        "purpose": "input_check",
    },
}


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class DidacticAnalyzer:
    """Derive pedagogical targets from the learner state and recent history."""

    def __init__(self, settings: Optional[EngineSettings] = None) -> None:
        self.settings = settings or get_settings()

    # ----- zone of proximal development --------------------------------
    def compute_zpd(self, state: Sequence[float], history: Sequence[TaskAttempt]) -> ZPDBand:
        """Return the difficulty band the learner should currently work in.

        The center follows the difficulty of recently practised tasks and is
        pushed up after very accurate work and down after poor accuracy. The
        band narrows as accuracy becomes consistent.
        """
        cfg = self.settings.zpd
        vector = validate_vector(state, INPUT_SIZE, "state vector")
        accuracy = float(vector[ROLLING_ACCURACY])
        consistency = float(vector[CONSISTENCY])

        recent = list(history)[-cfg.history_window:]
        if recent:
            base = mean(estimate_difficulty(attempt.to_task()) for attempt in recent)
        else:
            base = cfg.cold_start_center

        if accuracy > cfg.high_accuracy:
            shift = cfg.push_step
        elif accuracy < cfg.low_accuracy:
            shift = -cfg.push_step
        else:
            shift = (accuracy - cfg.target_accuracy) * cfg.drift
        center = _clamp(base + shift, 0.05, 0.95)

        confidence = min(1.0, len(history) / cfg.confidence_horizon)
        width = cfg.max_width - (cfg.max_width - cfg.min_width) * consistency * confidence
        band = ZPDBand(
            min_difficulty=_clamp(center - width / 2),
            max_difficulty=_clamp(center + width / 2),
            center=center,
            confidence=confidence,
        )
        _LOGGER.debug("ZPD center=%.3f width=%.3f accuracy=%.2f", band.center, band.width, accuracy)
        return band

    def load_target(self, zpd: ZPDBand) -> float:
        cfg = self.settings.cognitive_load
        return cfg.target_min + (cfg.target_max - cfg.target_min) * zpd.center

    # ----- cognitive load ----------------------------------------------
    def analyze_cognitive_load(
        self,
        task: Task,
        history: Sequence[TaskAttempt] = (),
        representation_count: Optional[int] = None,
        *,
        error_rates: Optional[Mapping[str, float]] = None,
    ) -> CognitiveLoad:
        """Split the expected load into intrinsic, extraneous and germane parts.

        ``error_rates`` may carry precomputed per-competency error rates so
        repeated calls over the same history stay cheap.
        """
        cfg = self.settings.cognitive_load

        intrinsic = magnitude(task) * cfg.magnitude_weight
        if task.operation == "-":
            intrinsic += cfg.subtraction_cost
        if task.requires_carry:
            intrinsic += cfg.carry_cost
        if task.placeholder_position == "start":
            intrinsic += cfg.placeholder_start_cost
        elif task.placeholder_position == "middle":
            intrinsic += cfg.placeholder_middle_cost

        reps = 1 if representation_count is None else max(0, int(representation_count))
        # Each representation beyond the first splits attention.
        extraneous = cfg.base_extraneous + cfg.representation_cost * max(0, reps - 1)

        germane = cfg.germane_placeholder if task.placeholder_position != "end" else 0.0
        if error_rates is None:
            error_rates = competency_error_rates(history)
        germane += error_rates.get(task.competency_id, 0.0) * cfg.error_history_weight

        total = _clamp(intrinsic + extraneous + germane)
        return CognitiveLoad(
            intrinsic=round(intrinsic, 4),
            extraneous=round(extraneous, 4),
            germane=round(germane, 4),
            total=total,
            is_optimal=cfg.optimal_min <= total <= cfg.optimal_max,
        )

    def estimate_cognitive_load(
        self,
        task: Task,
        history: Sequence[TaskAttempt] = (),
        representation_count: Optional[int] = None,
    ) -> float:
        return self.analyze_cognitive_load(task, history, representation_count).total

    # ----- desirable difficulties --------------------------------------
    def inject_desirable_difficulty(self, task: Task, mastery_level: float) -> Task:
        """Move the placeholder towards the front once a competency is secure.

        Operands and operation are kept, so the arithmetic content of the
        task does not change.
        """
        if mastery_level <= self.settings.representation.desirable_difficulty_threshold:
            return task
        if task.placeholder_position == "end":
            return dataclasses.replace(task, placeholder_position="middle")
        if task.placeholder_position == "middle":
            return dataclasses.replace(task, placeholder_position="start")
        return task

    def identify_desirable_difficulties(
        self,
        state: Sequence[float],
        history: Sequence[TaskAttempt],
    ) -> List[DesirableDifficulty]:
        vector = validate_vector(state, INPUT_SIZE, "state vector")
        accuracy = float(vector[ROLLING_ACCURACY])
        recent = list(history)[-5:]
        # Difficulties only help learners who currently cope well.
        if accuracy < 0.6 or len(recent) < 3:
            return []

        found: List[DesirableDifficulty] = []
        competencies = [a.to_task().competency_id for a in recent]
        if len(set(competencies[-3:])) == 1:
            found.append(
                DesirableDifficulty(
                    kind="spacing",
                    strength=0.6,
                    rationale="The same competency was practised three times in a row.",
                    context={"competency_id": competencies[-1]},
                )
            )
        if len({a.operation for a in recent}) == 1:
            found.append(
                DesirableDifficulty(
                    kind="interleaving",
                    strength=0.5,
                    rationale="Only one operation appeared in the recent tasks.",
                    context={"operation": recent[-1].operation},
                )
            )
        if accuracy > 0.7 and all(a.placeholder_position == "end" for a in recent):
            found.append(
                DesirableDifficulty(
                    kind="variability",
                    strength=0.7,
                    rationale="Only standard tasks so far; vary the missing position.",
                )
            )
        if accuracy > 0.8 and vector[RETRIEVAL_SHARE] > 0.5:
            found.append(
                DesirableDifficulty(
                    kind="generation",
                    strength=0.4,
                    rationale="Facts are retrieved fluently; ask for self-made tasks.",
                )
            )
        return found

    # ----- metacognition -----------------------------------------------
    @staticmethod
    def metacognitive_prompt(
        context: str,
        task: Optional[Task] = None,
        error_family: Optional[str] = None,
    ) -> Dict[str, str]:
        """Pick a self-explanation question for ``context``.

        After an error, a classified ``error_family`` selects a targeted
        follow-up; unknown families fall back to the generic questions.
        """
        if context not in METACOGNITIVE_PROMPTS:
            raise ValueError(f"Unknown prompt context: {context}")
        if context == "after_error" and error_family in ERROR_PROMPTS:
            return dict(ERROR_PROMPTS[error_family], context=context)
        if context == "before" and task is not None and task.placeholder_position != "end":
            return dict(_PLACEHOLDER_PROMPT, context=context)
        options = METACOGNITIVE_PROMPTS[context]
        index = 0
        if task is not None:
            index = (task.operand1 + task.operand2) % len(options)
        return dict(options[index], context=context)


def competency_error_rates(history: Sequence[TaskAttempt]) -> Dict[str, float]:
    """Share of incorrect attempts per competency in ``history``."""
    totals: Dict[str, int] = {}
    errors: Dict[str, int] = {}
    for attempt in history:
        competency_id = attempt.to_task().competency_id
        totals[competency_id] = totals.get(competency_id, 0) + 1
        if not attempt.correct:
            errors[competency_id] = errors.get(competency_id, 0) + 1
    return {cid: errors.get(cid, 0) / count for cid, count in totals.items()}


def placeholder_complexity(position: str) -> float:
    """Relative cognitive demand of a placeholder position."""
    return {"start": 0.7, "middle": 0.6}.get(position, 0.0)


def distance_to_band(value: float, low: float, high: float) -> float:
    if value < low:
        return low - value
    if value > high:
        return value - high
    return 0.0


__all__ = [
    "ZPDBand",
    "NEUTRAL_ZPD",
    "NEUTRAL_LOAD",
    "CognitiveLoad",
    "DesirableDifficulty",
    "DidacticAnalyzer",
    "METACOGNITIVE_PROMPTS",
    "ERROR_PROMPTS",
    "competency_error_rates",
    "placeholder_complexity",
    "distance_to_band",
]
