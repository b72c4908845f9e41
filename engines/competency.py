"""Arithmetic competency registry and the mastery scoring rule."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from engines.arithmetic import NUMBER_RANGES, OPERATIONS, PLACEHOLDER_POSITIONS
from schemas import MASTERY_SCORE_THRESHOLD, CompetencyMastery, LearnerProgressionRecord

CORRECT_DELTA = 1
INCORRECT_DELTA = -2
# Share of number-range-20 competencies that must be mastered before range 100 opens.
RANGE_ADVANCE_SHARE = 0.5


@dataclass
class CompetencyDefinition:
    """One trackable arithmetic skill, e.g. addition with carry, missing result."""

    competency_id: str
    label: str
    operation: str
    number_range: int
    carry: bool
    placeholder_position: str
    prerequisites: List[str] = field(default_factory=list)


def _competency_id(operation: str, number_range: int, carry: bool, placeholder: str) -> str:
    op_name = "add" if operation == "+" else "sub"
    return f"{op_name}_zr{number_range}_{'carry' if carry else 'nocarry'}_{placeholder}"


def _label(operation: str, number_range: int, carry: bool, placeholder: str) -> str:
    op_label = "Addition" if operation == "+" else "Subtraction"
    crossing = "crossing the ten" if carry else "without crossing the ten"
    missing = {"start": "missing first number", "middle": "missing second number", "end": "missing result"}[placeholder]
    return f"{op_label} up to {number_range}, {crossing}, {missing}"


def _build_registry() -> Dict[str, CompetencyDefinition]:
    registry: Dict[str, CompetencyDefinition] = {}
    for operation, number_range, carry, placeholder in itertools.product(
        OPERATIONS, NUMBER_RANGES, (False, True), PLACEHOLDER_POSITIONS
    ):
        prerequisites: List[str] = []
        if carry:
            prerequisites.append(_competency_id(operation, number_range, False, placeholder))
        placeholder_index = PLACEHOLDER_POSITIONS.index(placeholder)
        if placeholder_index < len(PLACEHOLDER_POSITIONS) - 1:
            easier = PLACEHOLDER_POSITIONS[placeholder_index + 1]
            prerequisites.append(_competency_id(operation, number_range, carry, easier))
        if number_range == 100:
            prerequisites.append(_competency_id(operation, 20, carry, placeholder))
        competency_id = _competency_id(operation, number_range, carry, placeholder)
        registry[competency_id] = CompetencyDefinition(
            competency_id=competency_id,
            label=_label(operation, number_range, carry, placeholder),
            operation=operation,
            number_range=number_range,
            carry=carry,
            placeholder_position=placeholder,
            prerequisites=prerequisites,
        )
    return registry


COMPETENCY_REGISTRY: Dict[str, CompetencyDefinition] = _build_registry()


def apply_mastery_outcome(entry: Optional[CompetencyMastery], correct: bool) -> CompetencyMastery:
    """Return the entry after one attempt: +1 if correct, -2 if not, floored at 0."""
    previous = entry or CompetencyMastery()
    delta = CORRECT_DELTA if correct else INCORRECT_DELTA
    score = max(0, previous.score + delta)
    return CompetencyMastery(score=score, attempts=previous.attempts + 1)


def mastery_level(record: LearnerProgressionRecord, competency_id: str) -> float:
    """Mastery progress in [0, 1] for ``competency_id``."""
    entry = record.competency_mastery.get(competency_id)
    if entry is None:
        return 0.0
    return min(1.0, entry.score / MASTERY_SCORE_THRESHOLD)


def mastered_ids(mastery: Mapping[str, CompetencyMastery]) -> List[str]:
    return sorted(cid for cid, entry in mastery.items() if entry.mastered)


def unlocked_competencies(record: LearnerProgressionRecord, number_range: Optional[int] = None) -> List[str]:
    """Competencies whose prerequisites are all mastered and which are not yet mastered."""
    mastered = set(mastered_ids(record.competency_mastery))
    unlocked = []
    for competency_id, definition in COMPETENCY_REGISTRY.items():
        if number_range is not None and definition.number_range != number_range:
            continue
        if competency_id in mastered:
            continue
        if all(prereq in mastered for prereq in definition.prerequisites):
            unlocked.append(competency_id)
    return unlocked


def ready_for_number_range(record: LearnerProgressionRecord, number_range: int) -> bool:
    """Whether enough of the previous range is mastered to move up to ``number_range``."""
    if number_range <= record.number_range:
        return True
    lower = [d.competency_id for d in COMPETENCY_REGISTRY.values() if d.number_range < number_range]
    if not lower:
        return True
    mastered = sum(
        1 for cid in lower if record.competency_mastery.get(cid) and record.competency_mastery[cid].mastered
    )
    return mastered / len(lower) >= RANGE_ADVANCE_SHARE


def coverage_summary(record: LearnerProgressionRecord) -> Dict[str, Tuple[int, int]]:
    """Return ``{number_range: (mastered, total)}`` for reporting."""
    summary: Dict[str, Tuple[int, int]] = {}
    for number_range in NUMBER_RANGES:
        ids = [d.competency_id for d in COMPETENCY_REGISTRY.values() if d.number_range == number_range]
        mastered = sum(
            1 for cid in ids if cid in record.competency_mastery and record.competency_mastery[cid].mastered
        )
        summary[str(number_range)] = (mastered, len(ids))
    return summary


__all__ = [
    "CompetencyDefinition",
    "COMPETENCY_REGISTRY",
    "CORRECT_DELTA",
    "INCORRECT_DELTA",
    "apply_mastery_outcome",
    "mastery_level",
    "mastered_ids",
    "unlocked_competencies",
    "ready_for_number_range",
    "coverage_summary",
]
