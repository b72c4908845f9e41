import pytest

from engine_settings import EngineSettings
from engines.arithmetic import Task
from engines.memory import MemoryConsolidator
from schemas import TaskAttempt


def _attempt(correct, task=Task(9, 6, "+")):
    return TaskAttempt.from_task(task, correct=correct, time_taken=11.0, strategy="decomposition")


def test_traces_decay_and_store_outcome_strength():
    consolidator = MemoryConsolidator(EngineSettings())
    traces = consolidator.add_trace([], _attempt(True))
    traces = consolidator.add_trace(traces, _attempt(False))

    assert traces[0].consolidation_strength == pytest.approx(0.98)
    assert traces[1].consolidation_strength == pytest.approx(0.6)
    assert traces[1].competency_id == "add_zr20_carry_end"
    assert traces[1].strategy == "decomposition"


def test_trace_list_is_bounded_and_keeps_newest():
    settings = EngineSettings().with_overrides({"memory": {"max_traces": 5}})
    consolidator = MemoryConsolidator(settings)
    traces = []
    for index in range(1, 9):
        traces = consolidator.add_trace(traces, _attempt(True, Task(index, 1, "+")))
    assert len(traces) == 5
    assert [trace.operand1 for trace in traces] == [4, 5, 6, 7, 8]


def test_add_trace_leaves_input_untouched():
    consolidator = MemoryConsolidator(EngineSettings())
    original = consolidator.add_trace([], _attempt(True))
    consolidator.add_trace(original, _attempt(False))
    assert len(original) == 1
    assert original[0].consolidation_strength == 1.0


def test_recall_strength_weights_by_consolidation():
    consolidator = MemoryConsolidator(EngineSettings())
    traces = consolidator.add_trace([], _attempt(True))
    traces = consolidator.add_trace(traces, _attempt(False))
    strength = MemoryConsolidator.recall_strength(traces, "add_zr20_carry_end")
    assert strength == pytest.approx(0.98 / (0.98 + 0.6))
    assert MemoryConsolidator.recall_strength(traces, "sub_zr20_carry_end") == 0.5
