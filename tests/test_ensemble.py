import math

import numpy as np
import pytest

from engine_settings import EngineSettings
from engines.arithmetic import Task
from engines.base import BasePredictor
from engines.ensemble import (
    PREDICTOR_ORDER,
    BayesianPredictor,
    CaseBasedPredictor,
    EnsemblePredictor,
    PredictorKind,
    RuleBasedPredictor,
    normalize_with_floor,
)
from engines.memory import MemoryConsolidator
from engines.validation import ValidationError
from schemas import INPUT_SIZE, PREDICTOR_COUNT, CompetencyMastery, TaskAttempt

STATE = np.full(INPUT_SIZE, 0.5)


@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def ensemble(fresh_record, settings):
    return EnsemblePredictor.from_record(fresh_record, settings)


def test_predict_reports_every_predictor(ensemble):
    breakdown = ensemble.predict(STATE, Task(6, 7, "+"), [])
    assert set(breakdown.individual) == {kind.value for kind in PredictorKind}
    assert 0.0 < breakdown.probability < 1.0
    assert math.isclose(sum(breakdown.weights.values()), 1.0)
    assert 0.0 <= breakdown.consensus <= 1.0


def test_weights_stay_normalized_and_floored(ensemble, settings):
    task = Task(6, 7, "+")
    weights = list(ensemble.weights)
    for step in range(200):
        breakdown = ensemble.predict(STATE, task, [])
        weights = ensemble.update_weights(breakdown, outcome=step % 4 != 0)
        ensemble.weights = weights
        assert math.isclose(sum(weights), 1.0, abs_tol=1e-9)
        assert min(weights) >= settings.ensemble.weight_floor - 1e-12
    assert len(weights) == PREDICTOR_COUNT


def test_accurate_predictors_gain_weight(fresh_record, settings):
    ensemble = EnsemblePredictor.from_record(fresh_record, settings)
    breakdown = ensemble.predict(STATE, Task(2, 3, "+"), [])
    updated = ensemble.update_weights(breakdown, outcome=True)
    best = max(breakdown.individual, key=breakdown.individual.get)
    worst = min(breakdown.individual, key=breakdown.individual.get)
    order = [kind.value for kind in PREDICTOR_ORDER]
    assert updated[order.index(best)] > updated[order.index(worst)]


def test_normalize_with_floor_lifts_small_weights():
    weights = normalize_with_floor([0.9, 0.1, 0.0, 0.0, 0.0], 0.05)
    assert math.isclose(sum(weights), 1.0)
    assert min(weights) == pytest.approx(0.05)
    assert normalize_with_floor([0, 0, 0, 0, 0], 0.02) == [0.2] * 5
    with pytest.raises(ValidationError):
        normalize_with_floor([1, 1, 1, 1, 1], 0.3)


def test_rank_prefers_candidates_in_target_band(ensemble):
    candidates = [
        (Task(13, 8, "-", placeholder_position="start"), 0.9),
        (Task(2, 3, "+"), 0.1),
        (Task(6, 7, "+"), 0.5),
    ]
    ranked = ensemble.rank(candidates, STATE, [])
    assert len(ranked) == 3
    in_band = [0.65 <= item.breakdown.probability <= 0.85 for item in ranked]
    assert in_band == sorted(in_band, reverse=True)


def test_bayesian_prior_follows_mastery():
    task = Task(6, 7, "+")
    unseen = BayesianPredictor({})
    mastered = BayesianPredictor({task.competency_id: CompetencyMastery(score=3, attempts=3)})
    assert mastered.predict(STATE, task, []) > unseen.predict(STATE, task, [])
    failures = [TaskAttempt.from_task(task, correct=False, time_taken=9.0) for _ in range(4)]
    assert unseen.predict(STATE, task, failures) < unseen.predict(STATE, task, [])


def test_rule_table_penalises_carry_and_placeholder():
    predictor = RuleBasedPredictor()
    easy = predictor.predict(STATE, Task(2, 3, "+"), [])
    hard = predictor.predict(STATE, Task(8, 5, "+", placeholder_position="start"), [])
    assert easy > hard


def test_case_based_uses_similar_traces(settings):
    consolidator = MemoryConsolidator(settings)
    traces = []
    for _ in range(5):
        traces = consolidator.add_trace(traces, TaskAttempt.from_task(Task(6, 7, "+"), correct=False))
    predictor = CaseBasedPredictor(traces, neighbors=3, default=0.6)
    assert predictor.predict(STATE, Task(6, 8, "+"), []) < 0.1
    assert CaseBasedPredictor([]).predict(STATE, Task(6, 8, "+"), []) == 0.6


def test_predictor_set_is_closed(fresh_record, settings):
    ensemble = EnsemblePredictor.from_record(fresh_record, settings)
    predictors = list(ensemble.predictors)
    predictors[2] = BasePredictor()
    with pytest.raises(ValidationError):
        EnsemblePredictor(predictors, ensemble.weights, settings)
    with pytest.raises(ValidationError):
        EnsemblePredictor(ensemble.predictors, [0.5, 0.5, 0.0, 0.0, 0.1], settings)
    with pytest.raises(NotImplementedError):
        BasePredictor().predict(STATE, Task(1, 1, "+"), [])
