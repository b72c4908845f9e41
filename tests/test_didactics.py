import numpy as np
import pytest

from engines.arithmetic import Task
from engines.didactics import ERROR_PROMPTS, DidacticAnalyzer, competency_error_rates
from engines.observer import CONSISTENCY, RETRIEVAL_SHARE, ROLLING_ACCURACY
from engines.validation import ValidationError
from schemas import INPUT_SIZE, TaskAttempt


def _state(accuracy=0.5, consistency=0.5, retrieval=0.5):
    state = np.full(INPUT_SIZE, 0.5)
    state[ROLLING_ACCURACY] = accuracy
    state[CONSISTENCY] = consistency
    state[RETRIEVAL_SHARE] = retrieval
    return state


def _history(count, correct=True, task=Task(3, 4, "+")):
    return [TaskAttempt.from_task(task, correct=correct, time_taken=10.0) for _ in range(count)]


def test_cold_start_zpd_uses_configured_center(small_settings):
    analyzer = DidacticAnalyzer(small_settings)
    band = analyzer.compute_zpd(_state(accuracy=0.7), [])
    assert band.center == pytest.approx(0.3)
    assert band.confidence == 0.0
    assert band.width == pytest.approx(small_settings.zpd.max_width)


def test_zpd_moves_with_accuracy(small_settings):
    analyzer = DidacticAnalyzer(small_settings)
    history = _history(6, task=Task(13, 5, "-"))
    high = analyzer.compute_zpd(_state(accuracy=0.95), history)
    low = analyzer.compute_zpd(_state(accuracy=0.3), history)
    assert high.center > low.center
    assert high.center - low.center == pytest.approx(2 * small_settings.zpd.push_step)


def test_zpd_narrows_with_consistent_history(small_settings):
    analyzer = DidacticAnalyzer(small_settings)
    history = _history(10, task=Task(13, 5, "-"))
    loose = analyzer.compute_zpd(_state(consistency=0.0), history)
    tight = analyzer.compute_zpd(_state(consistency=1.0), history)
    assert tight.width < loose.width
    assert tight.width == pytest.approx(small_settings.zpd.min_width)


def test_zpd_rejects_malformed_state(small_settings):
    analyzer = DidacticAnalyzer(small_settings)
    with pytest.raises(ValidationError):
        analyzer.compute_zpd([0.5] * 3, [])
    with pytest.raises(ValidationError):
        analyzer.compute_zpd([float("nan")] * INPUT_SIZE, [])


def test_cognitive_load_components(small_settings):
    analyzer = DidacticAnalyzer(small_settings)
    simple = analyzer.analyze_cognitive_load(Task(2, 3, "+"), [], 1)
    demanding = analyzer.analyze_cognitive_load(Task(13, 5, "-", placeholder_position="start"), [], 4)
    assert simple.total < demanding.total
    assert demanding.extraneous > simple.extraneous
    assert simple.germane == 0.0
    assert demanding.germane > 0.0
    assert 0.0 <= demanding.total <= 1.0


def test_error_history_adds_germane_load(small_settings):
    analyzer = DidacticAnalyzer(small_settings)
    task = Task(3, 4, "+")
    clean = analyzer.analyze_cognitive_load(task, _history(4, correct=True, task=task))
    struggling = analyzer.analyze_cognitive_load(task, _history(4, correct=False, task=task))
    assert struggling.germane > clean.germane
    assert competency_error_rates(_history(2, correct=False, task=task)) == {task.competency_id: 1.0}


def test_desirable_difficulty_moves_placeholder_forward(small_settings):
    analyzer = DidacticAnalyzer(small_settings)
    task = Task(6, 7, "+")
    assert analyzer.inject_desirable_difficulty(task, 0.5) is task
    harder = analyzer.inject_desirable_difficulty(task, 1.0)
    assert harder.placeholder_position == "middle"
    assert (harder.operand1, harder.operand2, harder.operation) == (6, 7, "+")
    assert analyzer.inject_desirable_difficulty(harder, 1.0).placeholder_position == "start"


def test_identify_difficulties_for_monotonous_practice(small_settings):
    analyzer = DidacticAnalyzer(small_settings)
    kinds = {d.kind for d in analyzer.identify_desirable_difficulties(_state(accuracy=0.9, retrieval=0.8), _history(5))}
    assert {"spacing", "interleaving", "variability", "generation"} <= kinds
    assert analyzer.identify_desirable_difficulties(_state(accuracy=0.3), _history(5)) == []


def test_metacognitive_prompts():
    prompt = DidacticAnalyzer.metacognitive_prompt("before", Task(3, 4, "+", placeholder_position="start"))
    assert prompt["purpose"] == "placeholder_reasoning"
    assert DidacticAnalyzer.metacognitive_prompt("after_error")["context"] == "after_error"
    with pytest.raises(ValueError):
        DidacticAnalyzer.metacognitive_prompt("during")


def test_error_family_selects_the_follow_up_prompt():
    task = Task(14, 6, "-")
    prompt = DidacticAnalyzer.metacognitive_prompt("after_error", task, "decade")
    assert prompt == dict(ERROR_PROMPTS["decade"], context="after_error")
    generic = DidacticAnalyzer.metacognitive_prompt("after_error", task, "other")
    assert generic["purpose"] in {"error_analysis", "representation_support"}
    # Error families only matter after a wrong answer.
    assert DidacticAnalyzer.metacognitive_prompt("after_success", task, "decade")["context"] == "after_success"
