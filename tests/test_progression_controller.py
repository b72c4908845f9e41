import copy
import math
import random

import pytest

from engines.arithmetic import Task, is_identical, validate_task
from engines.competency import COMPETENCY_REGISTRY
from engines.didactics import ERROR_PROMPTS, METACOGNITIVE_PROMPTS, NEUTRAL_LOAD, DidacticAnalyzer
from engines.ensemble import RuleBasedPredictor
from engines.errors import ERROR_HINTS
from engines.observer import InputObserver
from engines.progression import (
    ControllerState,
    ControllerStateError,
    ProgressionController,
    ProgressionService,
    last_error_family,
    new_progression_record,
)
from engines.task_evolution import TaskEvolutionEngine
from engines.validation import ConflictError, ValidationError
from schemas import CompetencyMastery, TaskAttempt


def _controller(settings, seed=3):
    return ProgressionController(settings, rng=random.Random(seed))


def _attempt(task, correct, **fields):
    fields.setdefault("time_taken", 9.0)
    return TaskAttempt.from_task(task, correct=correct, **fields)


class _StubStore:
    def __init__(self, settings) -> None:
        self.settings = settings
        self.records = {}
        self.attempts = {}
        self.conflict = False
        self.writes = []

    def get_progression(self, learner_id):
        record = self.records.get(learner_id)
        return copy.deepcopy(record) if record is not None else None

    def ensure_progression(self, learner_id, number_range=20):
        self.records.setdefault(
            learner_id, new_progression_record(learner_id, number_range, settings=self.settings)
        )
        return copy.deepcopy(self.records[learner_id])

    def update_progression(self, learner_id, record, expected_version, attempt=None):
        current = self.records[learner_id]
        if self.conflict or current.version != expected_version:
            raise ConflictError(learner_id, expected_version, current.version + 1)
        self.records[learner_id] = record
        if attempt is not None:
            self.attempts.setdefault(learner_id, []).append(attempt)
        self.writes.append((learner_id, expected_version))

    def get_recent_attempts(self, learner_id, limit):
        return list(self.attempts.get(learner_id, []))[-limit:]


def test_generated_task_is_valid_and_not_a_repeat(small_settings, fresh_record):
    previous = Task(3, 4, "+")
    generated = _controller(small_settings).generate_next_task(fresh_record, [], previous)
    validate_task(generated.task)
    assert not is_identical(generated.task, previous)
    assert 0.0 <= generated.predicted_success_probability <= 1.0
    assert 0.0 <= generated.cognitive_load <= 1.0
    assert generated.representations[0] == "symbolic"
    assert generated.diagnostics == []
    assert generated.ensemble is not None
    assert set(generated.scaffolding) >= {"amount", "visual", "strategic", "feedback_style"}
    assert generated.to_dict()["task"]["correct_answer"] == generated.task.correct_answer


def test_previous_task_defaults_to_last_attempt(small_settings, fresh_record):
    last = Task(5, 6, "+")
    generated = _controller(small_settings).generate_next_task(fresh_record, [_attempt(last, True)])
    assert not is_identical(generated.task, last)


def test_degraded_mode_when_a_predictor_raises(small_settings, fresh_record, monkeypatch):
    def boom(self, state, task, history):
        raise RuntimeError("rule table unavailable")

    monkeypatch.setattr(RuleBasedPredictor, "predict", boom)
    previous = Task(3, 4, "+")
    generated = _controller(small_settings).generate_next_task(fresh_record, [], previous)

    validate_task(generated.task)
    assert not is_identical(generated.task, previous)
    assert generated.degraded
    assert generated.diagnostics[0].stage == "ensemble"
    assert generated.diagnostics[0].error_type == "RuntimeError"
    assert generated.predicted_success_probability == 0.5


def test_degraded_mode_when_observer_raises(small_settings, fresh_record, monkeypatch):
    def boom(self, record, attempts):
        raise ValueError("broken history")

    monkeypatch.setattr(InputObserver, "observe", boom)
    generated = _controller(small_settings).generate_next_task(fresh_record, [])
    validate_task(generated.task)
    assert [d.stage for d in generated.diagnostics] == ["observer"]


def test_complete_task_bumps_version_without_mutating_input(small_settings, fresh_record):
    before = fresh_record.model_dump()
    result = _controller(small_settings).complete_task(fresh_record, _attempt(Task(6, 7, "+"), True), [])

    assert fresh_record.model_dump() == before
    updated = result.updated_record
    assert updated.version == fresh_record.version + 1
    assert updated.total_attempts == 1
    assert updated.total_correct == 1
    assert updated.placeholder_stats["end"].attempted == 1
    assert updated.placeholder_stats["end"].avg_time == pytest.approx(9.0)
    assert len(updated.memory_traces) == 1
    assert updated.weights != fresh_record.weights
    assert math.isclose(sum(updated.ensemble_weights), 1.0)
    assert result.metacognitive_prompt["context"] == "after_success"


def test_mastery_reached_on_fifth_attempt_of_mixed_sequence(small_settings, fresh_record):
    controller = _controller(small_settings)
    task = Task(6, 7, "+")
    record = fresh_record
    attempts = []
    mastered = []
    for correct in (True, False, True, True, True):
        attempt = _attempt(task, correct)
        result = controller.complete_task(record, attempt, attempts)
        record = result.updated_record
        attempts.append(attempt)
        mastered.append(result.mastery.mastered)
    assert mastered == [False, False, False, False, True]
    assert record.competency_mastery[task.competency_id].score == 3


def test_weights_bounded_over_many_cycles(small_settings, fresh_record):
    controller = _controller(small_settings)
    record = fresh_record
    attempts = []
    clamp = small_settings.learner_model.weight_clamp
    for step in range(60):
        generated = controller.generate_next_task(record, attempts[-20:])
        attempt = _attempt(generated.task, step % 4 != 0)
        record = controller.complete_task(record, attempt, attempts[-20:]).updated_record
        attempts.append(attempt)
        flat = [abs(v) for row in record.weights.input_hidden + record.weights.hidden_output for v in row]
        assert max(flat) <= clamp
        assert min(record.ensemble_weights) >= small_settings.ensemble.weight_floor - 1e-9
    assert record.version == 60


def test_malformed_attempt_is_rejected_before_any_change(small_settings, fresh_record):
    controller = _controller(small_settings)
    with pytest.raises(ValidationError):
        controller.complete_task(
            fresh_record,
            {"operand1": 15, "operand2": 9, "operation": "+", "correct": True},
            [],
        )
    assert controller.state is ControllerState.IDLE


def test_range_advances_when_enough_competencies_are_mastered(small_settings, fresh_record):
    ids = [cid for cid, d in COMPETENCY_REGISTRY.items() if d.number_range == 20]
    mastery = {cid: CompetencyMastery(score=3, attempts=3) for cid in ids[: len(ids) // 2 - 1]}
    # One more correct attempt on an unmastered competency crosses the threshold.
    target = Task(13, 5, "-", placeholder_position="start")
    mastery[target.competency_id] = CompetencyMastery(score=2, attempts=2)
    record = fresh_record.model_copy(update={"competency_mastery": mastery, "representation_level": 2})
    assert target.competency_id not in ids[: len(ids) // 2 - 1]

    result = _controller(small_settings).complete_task(record, _attempt(target, True), [])
    assert result.number_range_changed
    assert result.updated_record.number_range == 100
    assert result.updated_record.representation_level == small_settings.representation.max_level


def test_state_machine_transitions(small_settings, fresh_record):
    controller = _controller(small_settings)
    with pytest.raises(ControllerStateError):
        controller.mark_persisted()

    generated = controller.generate_next_task(fresh_record, [])
    assert controller.state is ControllerState.EMITTED
    assert controller.transitions[:6] == [
        ControllerState.IDLE,
        ControllerState.OBSERVING,
        ControllerState.ANALYZING,
        ControllerState.EVOLVING,
        ControllerState.RANKING,
        ControllerState.EMITTED,
    ]
    controller.complete_task(fresh_record, _attempt(generated.task, True), [])
    assert controller.state is ControllerState.UPDATING
    controller.mark_persisted()
    assert controller.state is ControllerState.PERSISTED
    controller.generate_next_task(fresh_record, [])
    assert controller.state is ControllerState.EMITTED


def test_service_persists_once_with_expected_version(small_settings):
    store = _StubStore(small_settings)
    service = ProgressionService(store, small_settings)

    generated = service.next_task("carol")
    result = service.submit_attempt("carol", _attempt(generated.task, True))

    assert store.writes == [("carol", 0)]
    assert store.records["carol"].version == 1
    assert result.updated_record.version == 1
    assert len(store.get_recent_attempts("carol", 10)) == 1


def test_service_surfaces_conflicts_without_writing(small_settings):
    store = _StubStore(small_settings)
    service = ProgressionService(store, small_settings)
    store.ensure_progression("dave")
    store.conflict = True

    with pytest.raises(ConflictError) as excinfo:
        service.submit_attempt("dave", _attempt(Task(4, 4, "+"), False))
    assert excinfo.value.retryable
    assert store.writes == []
    assert store.records["dave"].version == 0


def _raise(*args, **kwargs):
    raise RuntimeError("stage unavailable")


def test_degraded_mode_when_load_target_raises(small_settings, fresh_record, monkeypatch):
    seen = {}
    original_evolve = TaskEvolutionEngine.evolve

    def spy(self, zpd, load_target, *args, **kwargs):
        seen["load_target"] = load_target
        return original_evolve(self, zpd, load_target, *args, **kwargs)

    monkeypatch.setattr(DidacticAnalyzer, "load_target", _raise)
    monkeypatch.setattr(TaskEvolutionEngine, "evolve", spy)
    generated = _controller(small_settings).generate_next_task(fresh_record, [], Task(3, 4, "+"))

    validate_task(generated.task)
    assert [d.stage for d in generated.diagnostics] == ["cognitive_load"]
    cfg = small_settings.cognitive_load
    assert seen["load_target"] == pytest.approx((cfg.target_min + cfg.target_max) / 2)


def test_degraded_mode_when_selection_raises(small_settings, fresh_record, monkeypatch):
    monkeypatch.setattr(TaskEvolutionEngine, "select_novel", _raise)
    previous = Task(3, 4, "+")
    generated = _controller(small_settings).generate_next_task(fresh_record, [], previous)

    validate_task(generated.task)
    assert not is_identical(generated.task, previous)
    assert [d.stage for d in generated.diagnostics] == ["selection"]
    assert generated.origin == "template"


def test_degraded_mode_when_difficulty_injection_raises(small_settings, fresh_record, monkeypatch):
    monkeypatch.setattr(DidacticAnalyzer, "inject_desirable_difficulty", _raise)
    previous = Task(3, 4, "+")
    generated = _controller(small_settings).generate_next_task(fresh_record, [], previous)

    validate_task(generated.task)
    assert not is_identical(generated.task, previous)
    assert [d.stage for d in generated.diagnostics] == ["desirable_difficulties"]


def test_degraded_mode_when_cognitive_load_raises(small_settings, fresh_record, monkeypatch):
    original = DidacticAnalyzer.analyze_cognitive_load

    def fail_outside_evolution(self, task, history=(), representation_count=None, *, error_rates=None):
        # Fitness scoring passes precomputed error rates; the emit step does not.
        if error_rates is None:
            raise RuntimeError("load model unavailable")
        return original(self, task, history, representation_count, error_rates=error_rates)

    monkeypatch.setattr(DidacticAnalyzer, "analyze_cognitive_load", fail_outside_evolution)
    generated = _controller(small_settings).generate_next_task(fresh_record, [], Task(3, 4, "+"))

    validate_task(generated.task)
    assert [d.stage for d in generated.diagnostics] == ["cognitive_load"]
    assert generated.cognitive_load == 0.5
    assert generated.load_breakdown == NEUTRAL_LOAD


def test_degraded_mode_when_metacognitive_prompt_raises(small_settings, fresh_record, monkeypatch):
    monkeypatch.setattr(DidacticAnalyzer, "metacognitive_prompt", staticmethod(_raise))
    generated = _controller(small_settings).generate_next_task(fresh_record, [], Task(3, 4, "+"))

    validate_task(generated.task)
    assert [d.stage for d in generated.diagnostics] == ["metacognition"]
    assert generated.metacognitive_prompt == dict(METACOGNITIVE_PROMPTS["before"][0], context="before")


def test_wrong_answer_is_classified_and_strategy_inferred(small_settings, fresh_record):
    task = Task(14, 6, "-")
    attempt = _attempt(task, False, given_answer=12, time_taken=7.0)
    result = _controller(small_settings).complete_task(fresh_record, attempt, [])

    assert result.error_analysis.error_type == "decade_boundary_confusion"
    assert result.attempt.error_type == "decade_boundary_confusion"
    assert result.attempt.strategy == "decade_transition"
    assert result.metacognitive_prompt == dict(ERROR_PROMPTS["decade"], context="after_error")
    assert result.updated_record.memory_traces[-1].strategy == "decade_transition"
    assert result.diagnostics == []


def test_reported_strategy_is_kept(small_settings, fresh_record):
    attempt = _attempt(Task(6, 7, "+"), True, given_answer=13, strategy="counting_all")
    result = _controller(small_settings).complete_task(fresh_record, attempt, [])
    assert result.attempt.strategy == "counting_all"
    assert result.error_analysis is None
    assert result.attempt.error_type is None


def test_last_error_shapes_the_next_hints(small_settings, fresh_record):
    wrong = _attempt(Task(5, 7, "+"), False, given_answer=13, time_taken=12.0)
    assert last_error_family([wrong]) == "counting"
    assert last_error_family([wrong, _attempt(Task(5, 7, "+"), True)]) is None

    generated = _controller(small_settings).generate_next_task(fresh_record, [wrong])
    assert generated.scaffolding["error_focus"] == "counting"
    assert generated.scaffolding["strategic_hints"][0] == ERROR_HINTS["counting"]


def test_service_stores_the_classified_attempt(small_settings):
    store = _StubStore(small_settings)
    service = ProgressionService(store, small_settings)
    service.submit_attempt("erin", _attempt(Task(6, 4, "+"), False, given_answer=2))

    stored = store.get_recent_attempts("erin", 10)[0]
    assert stored.error_type == "operation_confusion"
    assert stored.strategy != "unknown"
