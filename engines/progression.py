"""Progression controller for adaptive arithmetic practice.

The controller runs two cycles for a learner. The generation cycle observes
recent attempts, derives didactic targets, evolves candidate tasks, ranks
them with the success-prediction ensemble and emits the next task. The
completion cycle feeds an outcome back into the learner model, mastery
counters, representation profile, placeholder statistics, memory traces
and ensemble weights, and returns a new record version for the store.

Failures inside the observer, analyzers, learner model, evolution or
predictors never prevent a task from being emitted: they are logged,
reported as degraded-mode diagnostics and replaced with neutral defaults.
"""

from __future__ import annotations

import logging
import random
import zlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

import numpy as np

import db

from engine_settings import EngineSettings, get_settings
from engines.arithmetic import Task, is_identical, validate_task
from engines.competency import apply_mastery_outcome, mastery_level, ready_for_number_range
from engines.didactics import (
    METACOGNITIVE_PROMPTS,
    NEUTRAL_LOAD,
    NEUTRAL_ZPD,
    CognitiveLoad,
    DesirableDifficulty,
    DidacticAnalyzer,
    ZPDBand,
)
from engines.ensemble import EnsembleBreakdown, EnsemblePredictor
from engines.errors import ERROR_FAMILIES, ERROR_HINTS, ErrorAnalysis, classify_error, infer_strategy
from engines.learner_model import (
    FEEDBACK_STYLE,
    PACING,
    PLACEHOLDER_READINESS,
    SCAFFOLDING,
    STRATEGIC_SCAFFOLD,
    VISUAL_SCAFFOLD,
    LearnerModel,
    Weights,
)
from engines.memory import MemoryConsolidator
from engines.observer import InputObserver
from engines.representations import RepresentationChange, RepresentationPlanner, representations_for_level
from engines.task_evolution import TaskEvolutionEngine
from engines.validation import ConflictError, DegradedModeFallback, EngineError
from schemas import (
    INPUT_SIZE,
    OUTPUT_SIZE,
    PREDICTOR_COUNT,
    CompetencyMastery,
    LearnerProgressionRecord,
    PlaceholderStats,
    TaskAttempt,
    parse_attempt,
)

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

NEUTRAL_PROBABILITY = 0.5


class ControllerState(str, Enum):
    IDLE = "idle"
    OBSERVING = "observing"
    ANALYZING = "analyzing"
    EVOLVING = "evolving"
    RANKING = "ranking"
    EMITTED = "emitted"
    AWAITING_OUTCOME = "awaiting_outcome"
    UPDATING = "updating"
    PERSISTED = "persisted"


_TRANSITIONS: Dict[ControllerState, frozenset] = {
    ControllerState.IDLE: frozenset({ControllerState.OBSERVING, ControllerState.AWAITING_OUTCOME}),
    ControllerState.OBSERVING: frozenset({ControllerState.ANALYZING}),
    ControllerState.ANALYZING: frozenset({ControllerState.EVOLVING}),
    ControllerState.EVOLVING: frozenset({ControllerState.RANKING}),
    ControllerState.RANKING: frozenset({ControllerState.EMITTED}),
    ControllerState.EMITTED: frozenset({ControllerState.AWAITING_OUTCOME, ControllerState.IDLE}),
    ControllerState.AWAITING_OUTCOME: frozenset({ControllerState.UPDATING}),
    ControllerState.UPDATING: frozenset({ControllerState.PERSISTED, ControllerState.IDLE}),
    ControllerState.PERSISTED: frozenset({ControllerState.IDLE}),
}


class ControllerStateError(EngineError):
    """Raised on a transition the controller state machine does not allow."""


@dataclass
class GeneratedTask:
    """Everything the caller needs to present the next task."""

    task: Task
    cognitive_load: float
    representations: tuple
    scaffolding: Dict[str, Any]
    metacognitive_prompt: Dict[str, str]
    predicted_success_probability: float
    zpd: ZPDBand
    load_breakdown: Optional[CognitiveLoad] = None
    ensemble: Optional[EnsembleBreakdown] = None
    desirable_difficulties: List[DesirableDifficulty] = field(default_factory=list)
    diagnostics: List[DegradedModeFallback] = field(default_factory=list)
    fitness: float = 0.0
    origin: str = "evolution"

    @property
    def degraded(self) -> bool:
        return bool(self.diagnostics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": self.task.to_dict(),
            "rendered": self.task.render(),
            "cognitive_load": self.cognitive_load,
            "representations": list(self.representations),
            "scaffolding": dict(self.scaffolding),
            "metacognitive_prompt": dict(self.metacognitive_prompt),
            "predicted_success_probability": self.predicted_success_probability,
            "zpd": self.zpd.to_dict(),
            "ensemble": self.ensemble.to_dict() if self.ensemble else None,
            "desirable_difficulties": [d.kind for d in self.desirable_difficulties],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "origin": self.origin,
        }


@dataclass
class CompletionResult:
    updated_record: LearnerProgressionRecord
    zpd: ZPDBand
    ensemble_breakdown: Optional[EnsembleBreakdown]
    representation_change: RepresentationChange
    mastery: CompetencyMastery
    metacognitive_prompt: Dict[str, str]
    attempt: TaskAttempt
    error_analysis: Optional[ErrorAnalysis] = None
    number_range_changed: bool = False
    diagnostics: List[DegradedModeFallback] = field(default_factory=list)


def new_progression_record(
    learner_id: str,
    number_range: int = 20,
    settings: Optional[EngineSettings] = None,
) -> LearnerProgressionRecord:
    """Neutral starting state for a newly enrolled learner."""
    settings = settings or get_settings()
    weights = LearnerModel(settings).initial_weights()
    return LearnerProgressionRecord(
        learner_id=learner_id,
        number_range=number_range,
        representation_level=settings.representation.max_level,
        weights=weights.to_schema(),
        ensemble_weights=[1.0 / PREDICTOR_COUNT] * PREDICTOR_COUNT,
    )


class ProgressionController:
    """Per-call orchestrator; carries no state across learners.

    Parameters
    ----------
    settings:
        Engine settings shared by all components built by the controller.
    rng:
        Optional random source for the task evolution. When omitted and
        ``evolution.seed`` is configured, a reproducible generator is
        derived from the seed, the learner id and the record version.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.observer = InputObserver(self.settings)
        self.analyzer = DidacticAnalyzer(self.settings)
        self.planner = RepresentationPlanner(self.settings)
        self.model = LearnerModel(self.settings)
        self.memory = MemoryConsolidator(self.settings)
        self._rng = rng
        self.state = ControllerState.IDLE
        self.transitions: List[ControllerState] = [ControllerState.IDLE]

    # ----- public API --------------------------------------------------
    def generate_next_task(
        self,
        record: LearnerProgressionRecord,
        recent_attempts: Sequence[TaskAttempt],
        previous_task: Optional[Task] = None,
    ) -> GeneratedTask:
        """Emit the next task for ``record``.

        ``previous_task`` defaults to the task of the most recent attempt;
        the emitted task is never identical to it.
        """
        history = list(recent_attempts)
        if previous_task is None and history:
            previous_task = history[-1].to_task()
        diagnostics: List[DegradedModeFallback] = []
        self._restart()

        self._transition(ControllerState.OBSERVING)
        state = self._guard(
            "observer",
            lambda: self.observer.observe(record, history),
            lambda: np.full(INPUT_SIZE, 0.5),
            diagnostics,
        )

        self._transition(ControllerState.ANALYZING)
        zpd = self._guard("zpd", lambda: self.analyzer.compute_zpd(state, history), lambda: NEUTRAL_ZPD, diagnostics)
        load_target = self._guard(
            "cognitive_load",
            lambda: self.analyzer.load_target(zpd),
            self._neutral_load_target,
            diagnostics,
        )
        representations = self._guard(
            "representations",
            lambda: self.planner.plan_representations(record),
            lambda: representations_for_level(self.settings.representation.max_level, record.number_range),
            diagnostics,
        )
        actions = self._guard(
            "learner_model",
            lambda: self.model.forward(state, Weights.from_schema(record.weights)),
            lambda: np.full(OUTPUT_SIZE, 0.5),
            diagnostics,
        )
        difficulties = self._guard(
            "desirable_difficulties",
            lambda: self.analyzer.identify_desirable_difficulties(state, history),
            list,
            diagnostics,
        )

        self._transition(ControllerState.EVOLVING)
        evolver = TaskEvolutionEngine(self.settings, rng=self._rng_for(record), analyzer=self.analyzer)
        evolution = self._guard(
            "evolution",
            lambda: evolver.evolve(
                zpd,
                load_target,
                history,
                representations,
                record=record,
                previous_task=previous_task,
                placeholder_readiness=float(actions[PLACEHOLDER_READINESS]),
            ),
            lambda: None,
            diagnostics,
        )
        if evolution is not None:
            candidates = evolution.candidates[: self.settings.ensemble.candidate_count]
        else:
            candidates = [evolver.safe_template(record.number_range, previous_task, tuple(representations))]

        self._transition(ControllerState.RANKING)
        ensemble = self._guard(
            "ensemble",
            lambda: EnsemblePredictor.from_record(record, self.settings, self.model),
            lambda: None,
            diagnostics,
        )
        ranked = None
        if ensemble is not None:
            ranked = self._guard(
                "ensemble",
                lambda: ensemble.rank([(c.task, c.fitness) for c in candidates], state, history),
                lambda: None,
                diagnostics,
            )

        breakdown: Optional[EnsembleBreakdown] = None
        ordered = candidates
        if ranked:
            by_signature = {c.signature: c for c in candidates}
            ordered = [by_signature[item.task.signature] for item in ranked]
        chosen = self._guard(
            "selection",
            lambda: evolver.select_novel(ordered, previous_task, representations),
            lambda: evolver.safe_template(record.number_range, previous_task, tuple(representations)),
            diagnostics,
        )
        if ranked:
            breakdown = next((item.breakdown for item in ranked if item.task.signature == chosen.signature), None)

        task = self._guard(
            "desirable_difficulties",
            lambda: self._apply_desirable_difficulty(record, chosen.task, previous_task),
            lambda: chosen.task,
            diagnostics,
        )
        if task is not chosen.task and ensemble is not None:
            breakdown = self._guard(
                "ensemble",
                lambda: ensemble.predict(state, task, history),
                lambda: breakdown,
                diagnostics,
            )
        probability = breakdown.probability if breakdown is not None else NEUTRAL_PROBABILITY

        load = self._guard(
            "cognitive_load",
            lambda: self.analyzer.analyze_cognitive_load(task, history, len(representations)),
            lambda: NEUTRAL_LOAD,
            diagnostics,
        )
        error_family = self._guard("error_analysis", lambda: last_error_family(history), lambda: None, diagnostics)
        prompt = self._guard(
            "metacognition",
            lambda: self.analyzer.metacognitive_prompt("before", task),
            lambda: dict(METACOGNITIVE_PROMPTS["before"][0], context="before"),
            diagnostics,
        )
        generated = GeneratedTask(
            task=task,
            cognitive_load=load.total,
            representations=tuple(representations),
            scaffolding=self._scaffolding(actions, task, error_family),
            metacognitive_prompt=prompt,
            predicted_success_probability=probability,
            zpd=zpd,
            load_breakdown=load,
            ensemble=breakdown,
            desirable_difficulties=difficulties,
            diagnostics=diagnostics,
            fitness=chosen.fitness,
            origin=chosen.origin,
        )
        self._transition(ControllerState.EMITTED)
        _LOGGER.debug(
            "Emitted %s for %s (p=%.2f, load=%.2f, degraded=%s)",
            task.render(),
            record.learner_id,
            probability,
            load.total,
            generated.degraded,
        )
        return generated

    def complete_task(
        self,
        record: LearnerProgressionRecord,
        attempt: TaskAttempt | Mapping[str, Any],
        recent_attempts: Sequence[TaskAttempt],
    ) -> CompletionResult:
        """Fold one outcome into a new version of ``record``.

        ``recent_attempts`` are the attempts before this one. The input
        record is not modified; a malformed attempt raises ValidationError
        before anything is computed. A wrong ``given_answer`` is classified
        and an ``unknown`` strategy is inferred from the response time; the
        enriched attempt is returned on the result for storage.
        """
        attempt = parse_attempt(attempt)
        task = validate_task(attempt.to_task(), min_operand=0)
        weights = Weights.from_schema(record.weights)
        history = list(recent_attempts)
        diagnostics: List[DegradedModeFallback] = []

        analysis = self._guard(
            "error_analysis",
            lambda: None if attempt.correct else classify_error(task, attempt.given_answer),
            lambda: None,
            diagnostics,
        )
        attempt = self._enrich_attempt(attempt, task, analysis)

        if self.state is not ControllerState.IDLE and self.state is not ControllerState.EMITTED:
            self._restart()
        self._transition(ControllerState.AWAITING_OUTCOME)
        self._transition(ControllerState.UPDATING)

        state = self._guard(
            "observer",
            lambda: self.observer.observe(record, history),
            lambda: np.full(INPUT_SIZE, 0.5),
            diagnostics,
        )
        activations = self._guard(
            "learner_model",
            lambda: self.model.activations(state, weights),
            lambda: None,
            diagnostics,
        )
        new_weights = weights
        activation_state = record.activation_state
        if activations is not None:
            new_weights = self._guard(
                "learner_model",
                lambda: self.model.update(state, activations.output, attempt.correct, weights),
                lambda: weights,
                diagnostics,
            )
            activation_state = activations.to_schema()

        breakdown: Optional[EnsembleBreakdown] = None
        ensemble_weights = list(record.ensemble_weights)
        try:
            ensemble = EnsemblePredictor.from_record(record, self.settings, self.model)
            breakdown = ensemble.predict(state, task, history)
            ensemble_weights = ensemble.update_weights(breakdown, attempt.correct)
        except Exception as exc:  # keep the record's weights when the ensemble fails
            self._record_fallback("ensemble", exc, diagnostics)

        competency_id = task.competency_id
        mastery = apply_mastery_outcome(record.competency_mastery.get(competency_id), attempt.correct)
        competency_mastery = {cid: entry.model_copy() for cid, entry in record.competency_mastery.items()}
        competency_mastery[competency_id] = mastery

        change = self.planner.update_representation_profile(record, attempt)

        placeholder_stats = {pos: stats.model_copy() for pos, stats in record.placeholder_stats.items()}
        stats = placeholder_stats.get(attempt.placeholder_position) or PlaceholderStats()
        attempted = stats.attempted + 1
        placeholder_stats[attempt.placeholder_position] = PlaceholderStats(
            attempted=attempted,
            correct=stats.correct + (1 if attempt.correct else 0),
            avg_time=stats.avg_time + (attempt.time_taken - stats.avg_time) / attempted,
        )

        traces = self.memory.add_trace(record.memory_traces, attempt)

        payload = record.model_dump()
        payload.update(
            version=record.version + 1,
            representation_level=change.new_level,
            activation_state=activation_state.model_dump(),
            weights=new_weights.to_schema().model_dump(),
            competency_mastery={cid: entry.model_dump() for cid, entry in competency_mastery.items()},
            representation_profile={rid: s.model_dump() for rid, s in change.profile.items()},
            placeholder_stats={pos: s.model_dump() for pos, s in placeholder_stats.items()},
            memory_traces=[trace.model_dump() for trace in traces],
            ensemble_weights=ensemble_weights,
            total_attempts=record.total_attempts + 1,
            total_correct=record.total_correct + (1 if attempt.correct else 0),
        )
        updated = LearnerProgressionRecord.model_validate(payload)

        range_changed = False
        if updated.number_range == 20 and ready_for_number_range(updated, 100):
            updated = updated.model_copy(
                update={"number_range": 100, "representation_level": self.settings.representation.max_level}
            )
            range_changed = True
            _LOGGER.info("Learner %s advanced to number range 100", record.learner_id)

        zpd = self._guard(
            "zpd",
            lambda: self.analyzer.compute_zpd(state, history + [attempt]),
            lambda: NEUTRAL_ZPD,
            diagnostics,
        )
        context = "after_success" if attempt.correct else "after_error"
        error_family = ERROR_FAMILIES.get(attempt.error_type) if attempt.error_type else None
        prompt = self._guard(
            "metacognition",
            lambda: self.analyzer.metacognitive_prompt(context, task, error_family),
            lambda: dict(METACOGNITIVE_PROMPTS[context][0], context=context),
            diagnostics,
        )
        return CompletionResult(
            updated_record=updated,
            zpd=zpd,
            ensemble_breakdown=breakdown,
            representation_change=change,
            mastery=mastery,
            metacognitive_prompt=prompt,
            attempt=attempt,
            error_analysis=analysis,
            number_range_changed=range_changed,
            diagnostics=diagnostics,
        )

    def mark_persisted(self) -> None:
        self._transition(ControllerState.PERSISTED)

    # ----- helpers -----------------------------------------------------
    def _restart(self) -> None:
        if self.state is not ControllerState.IDLE:
            self._transition(ControllerState.IDLE, force=True)

    def _transition(self, target: ControllerState, *, force: bool = False) -> None:
        if not force and target not in _TRANSITIONS[self.state]:
            raise ControllerStateError(f"Illegal transition {self.state.value} -> {target.value}")
        self.state = target
        self.transitions.append(target)

    def _guard(
        self,
        stage: str,
        action: Callable[[], T],
        fallback: Callable[[], T],
        diagnostics: List[DegradedModeFallback],
    ) -> T:
        try:
            return action()
        except Exception as exc:  # any stage failure degrades to neutral defaults
            self._record_fallback(stage, exc, diagnostics)
            return fallback()

    @staticmethod
    def _record_fallback(stage: str, exc: Exception, diagnostics: List[DegradedModeFallback]) -> None:
        _LOGGER.warning("Degraded mode in %s: %s", stage, exc)
        diagnostics.append(DegradedModeFallback.from_exception(stage, exc))

    def _neutral_load_target(self) -> float:
        cfg = self.settings.cognitive_load
        return (cfg.target_min + cfg.target_max) / 2

    @staticmethod
    def _enrich_attempt(attempt: TaskAttempt, task: Task, analysis: Optional[ErrorAnalysis]) -> TaskAttempt:
        updates: Dict[str, Any] = {}
        if analysis is not None and attempt.error_type is None:
            updates["error_type"] = analysis.error_type
        if attempt.strategy == "unknown" and attempt.time_taken > 0:
            updates["strategy"] = infer_strategy(task, attempt.time_taken)
        return attempt.model_copy(update=updates) if updates else attempt

    def _rng_for(self, record: LearnerProgressionRecord) -> random.Random:
        if self._rng is not None:
            return self._rng
        seed = self.settings.evolution.seed
        if seed is None:
            return random.Random()
        mixed = (seed * 1_000_003 + zlib.crc32(record.learner_id.encode("utf-8")) + record.version) & 0xFFFFFFFF
        return random.Random(mixed)

    def _apply_desirable_difficulty(
        self,
        record: LearnerProgressionRecord,
        task: Task,
        previous_task: Optional[Task],
    ) -> Task:
        level = mastery_level(record, task.competency_id)
        varied = self.analyzer.inject_desirable_difficulty(task, level)
        if varied is task or is_identical(varied, previous_task):
            return task
        return varied

    @staticmethod
    def _scaffolding(actions: Sequence[float], task: Task, error_family: Optional[str] = None) -> Dict[str, Any]:
        strategic = float(actions[STRATEGIC_SCAFFOLD])
        hints: List[str] = []
        if error_family is not None:
            hints.append(ERROR_HINTS.get(error_family, ERROR_HINTS["other"]))
        if strategic >= 0.5:
            task_hints: List[str] = []
            if task.requires_carry:
                bridge = "Fill up to the next ten first." if task.operation == "+" else "Go back to the ten first."
                task_hints.append(bridge)
            if task.placeholder_position != "end":
                task_hints.append("Use the reverse operation to find the missing number.")
            hints.extend(task_hints or ["Look for a task you already know."])
        return {
            "amount": round(float(actions[SCAFFOLDING]), 4),
            "visual": round(float(actions[VISUAL_SCAFFOLD]), 4),
            "strategic": round(strategic, 4),
            "pacing": round(float(actions[PACING]), 4),
            "feedback_style": "detailed" if actions[FEEDBACK_STYLE] >= 0.5 else "brief",
            "strategic_hints": hints,
            "error_focus": error_family,
        }


def last_error_family(history: Sequence[TaskAttempt]) -> Optional[str]:
    """Error family of the most recent attempt, None when it was correct."""
    if not history or history[-1].correct:
        return None
    last = history[-1]
    error_type = last.error_type
    if error_type is None:
        analysis = classify_error(last.to_task(), last.given_answer)
        error_type = analysis.error_type if analysis is not None else None
    return ERROR_FAMILIES.get(error_type) if error_type else None


class ProgressionService:
    """Run controller cycles against a storage collaborator.

    ``store`` is any object exposing ``get_progression``,
    ``ensure_progression``, ``update_progression`` and
    ``get_recent_attempts``; the :mod:`db` module is the default.
    """

    def __init__(
        self,
        store: Any = None,
        settings: Optional[EngineSettings] = None,
        controller_factory: Optional[Callable[[EngineSettings], ProgressionController]] = None,
    ) -> None:
        self.store = store if store is not None else db
        self.settings = settings or get_settings()
        self._controller_factory = controller_factory or (lambda s: ProgressionController(s))

    def next_task(
        self,
        learner_id: str,
        previous_task: Optional[Task] = None,
        *,
        number_range: int = 20,
    ) -> GeneratedTask:
        record = self._load(learner_id, number_range)
        attempts = self.store.get_recent_attempts(learner_id, self.settings.controller.recent_attempts_limit)
        return self._controller_factory(self.settings).generate_next_task(record, attempts, previous_task)

    def submit_attempt(self, learner_id: str, attempt: TaskAttempt | Mapping[str, Any]) -> CompletionResult:
        """Complete ``attempt`` and persist the new record in one write.

        Raises ConflictError if another writer committed first; nothing is
        written in that case and the caller may retry.
        """
        attempt = parse_attempt(attempt)
        record = self._load(learner_id, attempt.number_range)
        attempts = self.store.get_recent_attempts(learner_id, self.settings.controller.recent_attempts_limit)
        controller = self._controller_factory(self.settings)
        result = controller.complete_task(record, attempt, attempts)
        try:
            self.store.update_progression(
                learner_id,
                result.updated_record,
                expected_version=record.version,
                attempt=result.attempt,
            )
        except ConflictError:
            _LOGGER.warning("Version conflict while saving progression for %s", learner_id)
            raise
        controller.mark_persisted()
        return result

    def _load(self, learner_id: str, number_range: int) -> LearnerProgressionRecord:
        record = self.store.get_progression(learner_id)
        if record is None:
            record = self.store.ensure_progression(learner_id, number_range)
        return record


__all__ = [
    "CompletionResult",
    "ControllerState",
    "ControllerStateError",
    "GeneratedTask",
    "ProgressionController",
    "ProgressionService",
    "last_error_family",
    "new_progression_record",
]
