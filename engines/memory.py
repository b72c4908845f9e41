"""Bounded episodic memory of past attempts with consolidation decay."""

from __future__ import annotations

from typing import List, Optional, Sequence

from engine_settings import EngineSettings, MemorySettings, get_settings
from schemas import MemoryTrace, TaskAttempt


class MemoryConsolidator:
    def __init__(self, settings: Optional[EngineSettings] = None) -> None:
        self.settings: MemorySettings = (settings or get_settings()).memory

    def add_trace(self, traces: Sequence[MemoryTrace], attempt: TaskAttempt) -> List[MemoryTrace]:
        """Return a new trace list with ``attempt`` appended.

        Older traces lose consolidation strength with every new attempt and
        the oldest entries are evicted once the list is full.
        """
        decay = self.settings.consolidation_decay
        updated = [
            trace.model_copy(update={"consolidation_strength": trace.consolidation_strength * decay})
            for trace in traces
        ]
        task = attempt.to_task()
        updated.append(
            MemoryTrace(
                operand1=attempt.operand1,
                operand2=attempt.operand2,
                operation=attempt.operation,
                number_range=attempt.number_range,
                placeholder_position=attempt.placeholder_position,
                correct=attempt.correct,
                time_taken=attempt.time_taken,
                strategy=attempt.strategy,
                competency_id=task.competency_id,
                consolidation_strength=(
                    self.settings.correct_strength if attempt.correct else self.settings.error_strength
                ),
                recorded_at=attempt.created_at,
            )
        )
        return updated[-self.settings.max_traces:]

    @staticmethod
    def recall_strength(traces: Sequence[MemoryTrace], competency_id: str) -> float:
        """Strength-weighted success rate for one competency, 0.5 when unseen."""
        relevant = [trace for trace in traces if trace.competency_id == competency_id]
        total = sum(trace.consolidation_strength for trace in relevant)
        if total <= 0:
            return 0.5
        return sum(trace.consolidation_strength for trace in relevant if trace.correct) / total


__all__ = ["MemoryConsolidator"]
