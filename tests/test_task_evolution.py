import random

import pytest

from engines.arithmetic import Task, is_identical, validate_task
from engines.didactics import NEUTRAL_ZPD, ZPDBand
from engines.task_evolution import (
    SAFE_TEMPLATES,
    TaskCandidate,
    TaskEvolutionEngine,
    operative_variants,
)
from schemas import TaskAttempt

REPS = ("symbolic", "number_line")


@pytest.fixture
def engine(small_settings):
    return TaskEvolutionEngine(small_settings, rng=random.Random(5))


def _evolve(engine, record, previous=None, history=(), zpd=NEUTRAL_ZPD):
    return engine.evolve(zpd, 0.5, list(history), REPS, record=record, previous_task=previous)


def test_candidates_are_valid_distinct_and_novel(engine, fresh_record):
    previous = Task(3, 4, "+")
    result = _evolve(engine, fresh_record, previous)
    assert result.candidates
    signatures = [c.signature for c in result.candidates]
    assert len(signatures) == len(set(signatures))
    for candidate in result.candidates:
        validate_task(candidate.task, claimed_answer=candidate.answer)
        assert candidate.answer == candidate.task.correct_answer
        assert not is_identical(candidate.task, previous)
        assert candidate.representations == REPS
    fitness = [c.fitness for c in result.candidates]
    assert fitness == sorted(fitness, reverse=True)


def test_number_range_100_candidates_stay_in_range(small_settings, fresh_record):
    record = fresh_record.model_copy(update={"number_range": 100})
    engine = TaskEvolutionEngine(small_settings, rng=random.Random(9))
    result = _evolve(engine, record)
    for candidate in result.candidates:
        assert candidate.task.number_range == 100
        assert 0 <= candidate.task.correct_answer <= 100


def test_same_seed_gives_same_result(small_settings, fresh_record):
    first = _evolve(TaskEvolutionEngine(small_settings, rng=random.Random(42)), fresh_record)
    second = _evolve(TaskEvolutionEngine(small_settings, rng=random.Random(42)), fresh_record)
    assert [c.signature for c in first.candidates] == [c.signature for c in second.candidates]


def test_offspring_that_break_the_range_are_discarded(engine):
    first = TaskCandidate(task=Task(15, 4, "+"), answer=19, representations=REPS)
    second = TaskCandidate(task=Task(4, 15, "+"), answer=19, representations=REPS)
    for _ in range(50):
        child = engine.crossover(first, second)
        if child is not None:
            assert child.task.correct_answer <= 20
        mutant = engine.mutate(first)
        if mutant is not None:
            validate_task(mutant.task)


def test_fitness_prefers_tasks_inside_the_band(engine, fresh_record):
    zpd = ZPDBand(min_difficulty=0.5, max_difficulty=0.8, center=0.65, confidence=1.0)
    inside = TaskCandidate(task=Task(13, 5, "-", placeholder_position="middle"), answer=8, representations=REPS)
    outside = TaskCandidate(task=Task(2, 1, "+"), answer=3, representations=REPS)
    kwargs = dict(zpd=zpd, load_target=0.6, history=[], record=fresh_record)
    assert engine.fitness(inside, **kwargs) > engine.fitness(outside, **kwargs)


def test_recent_tasks_lower_novelty(engine, fresh_record):
    task = Task(6, 7, "+")
    candidate = TaskCandidate(task=task, answer=13, representations=REPS)
    history = [TaskAttempt.from_task(task, correct=True, time_taken=8.0)]
    kwargs = dict(zpd=NEUTRAL_ZPD, load_target=0.5, record=fresh_record)
    assert engine.fitness(candidate, history=history, **kwargs) < engine.fitness(candidate, history=[], **kwargs)


def test_select_novel_falls_back_to_safe_template(engine):
    previous = Task(3, 4, "+")
    repeats = [TaskCandidate(task=previous, answer=7) for _ in range(3)]
    chosen = engine.select_novel(repeats, previous)
    assert chosen.origin == "template"
    assert not is_identical(chosen.task, previous)


def test_safe_template_skips_previous_task(engine):
    first = SAFE_TEMPLATES[20][0]
    previous = Task(first[0], first[1], first[2])
    assert not is_identical(engine.safe_template(20, previous).task, previous)


def test_operative_variants_include_reversal_and_inverse():
    names = {name for name, _ in operative_variants(Task(7, 5, "+"))}
    assert {"neighbor-tasks", "reversal", "inverse-problems", "sum-constancy", "decade-transition"} <= names
    inverse = dict(operative_variants(Task(7, 5, "+")))["inverse-problems"]
    assert (inverse.operand1, inverse.operand2, inverse.operation) == (12, 5, "-")


def test_no_immediate_repeat_over_many_generations(small_settings, fresh_record):
    engine = TaskEvolutionEngine(small_settings, rng=random.Random(2024))
    previous = None
    history = []
    for step in range(1000):
        result = _evolve(engine, fresh_record, previous, history[-10:])
        chosen = engine.select_novel(result.candidates, previous, REPS)
        assert not is_identical(chosen.task, previous), f"repeat at step {step}"
        validate_task(chosen.task)
        history.append(TaskAttempt.from_task(chosen.task, correct=step % 3 != 0, time_taken=10.0))
        previous = chosen.task
