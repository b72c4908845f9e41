"""Arithmetic task model shared by the analyzers, evolution and ensemble."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from engines.validation import ArithmeticIntegrityError

OPERATIONS: Tuple[str, ...] = ("+", "-")
NUMBER_RANGES: Tuple[int, ...] = (20, 100)
PLACEHOLDER_POSITIONS: Tuple[str, ...] = ("start", "middle", "end")

_OPERATION_NAMES = {"+": "add", "-": "sub"}


def compute_answer(operand1: int, operand2: int, operation: str) -> int:
    if operation == "+":
        return operand1 + operand2
    if operation == "-":
        return operand1 - operand2
    raise ArithmeticIntegrityError(f"Unsupported operation: {operation!r}")


def requires_carry(operand1: int, operand2: int, operation: str) -> bool:
    """Return True when the task crosses a ten (carry for +, borrow for -)."""
    if operation == "+":
        return (operand1 % 10) + (operand2 % 10) >= 10
    return (operand1 % 10) < (operand2 % 10)


@dataclass(frozen=True)
class Task:
    """A concrete arithmetic problem ``operand1 OP operand2 = result``.

    ``placeholder_position`` names the slot the learner has to fill:
    ``start`` hides operand1, ``middle`` hides operand2 and ``end`` hides
    the result.
    """

    operand1: int
    operand2: int
    operation: str
    number_range: int = 20
    placeholder_position: str = "end"

    @property
    def correct_answer(self) -> int:
        return compute_answer(self.operand1, self.operand2, self.operation)

    @property
    def expected_input(self) -> int:
        if self.placeholder_position == "start":
            return self.operand1
        if self.placeholder_position == "middle":
            return self.operand2
        return self.correct_answer

    @property
    def requires_carry(self) -> bool:
        return requires_carry(self.operand1, self.operand2, self.operation)

    @property
    def competency_id(self) -> str:
        carry = "carry" if self.requires_carry else "nocarry"
        op_name = _OPERATION_NAMES.get(self.operation, "op")
        return f"{op_name}_zr{self.number_range}_{carry}_{self.placeholder_position}"

    @property
    def signature(self) -> Tuple[int, int, str, str]:
        """Identity used by the no-immediate-repeat rule."""
        return (self.operand1, self.operand2, self.operation, self.placeholder_position)

    def render(self) -> str:
        slots = [str(self.operand1), str(self.operand2), str(self.correct_answer)]
        hidden = PLACEHOLDER_POSITIONS.index(self.placeholder_position)
        slots[hidden] = "_"
        return f"{slots[0]} {self.operation} {slots[1]} = {slots[2]}"

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["correct_answer"] = self.correct_answer
        payload["competency_id"] = self.competency_id
        return payload

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Task":
        return cls(
            operand1=int(data["operand1"]),
            operand2=int(data["operand2"]),
            operation=str(data["operation"]),
            number_range=int(data.get("number_range", 20)),
            placeholder_position=str(data.get("placeholder_position", "end")),
        )


def validate_task(
    task: Task,
    *,
    claimed_answer: Optional[int] = None,
    allow_negative: bool = False,
    min_operand: int = 1,
) -> Task:
    """Check that ``task`` is a well-formed problem inside its number range.

    ``claimed_answer`` is compared against the re-derived result so stale
    answers carried by recombined genomes are caught.
    """
    if task.operation not in OPERATIONS:
        raise ArithmeticIntegrityError(f"Unsupported operation: {task.operation!r}")
    if task.number_range not in NUMBER_RANGES:
        raise ArithmeticIntegrityError(f"Unsupported number range: {task.number_range}")
    if task.placeholder_position not in PLACEHOLDER_POSITIONS:
        raise ArithmeticIntegrityError(f"Unknown placeholder position: {task.placeholder_position!r}")
    for operand in (task.operand1, task.operand2):
        if not isinstance(operand, int) or isinstance(operand, bool):
            raise ArithmeticIntegrityError("Operands must be integers")
        if operand < min_operand or operand > task.number_range:
            raise ArithmeticIntegrityError(
                f"Operand {operand} outside [{min_operand}, {task.number_range}]"
            )

    result = task.correct_answer
    if claimed_answer is not None and claimed_answer != result:
        raise ArithmeticIntegrityError(
            f"{task.operand1} {task.operation} {task.operand2} != {claimed_answer}"
        )
    if result > task.number_range:
        raise ArithmeticIntegrityError(f"Result {result} exceeds number range {task.number_range}")
    if result < 0 and not allow_negative:
        raise ArithmeticIntegrityError(f"Result {result} is negative")
    return task


def is_identical(first: Optional[Task], second: Optional[Task]) -> bool:
    if first is None or second is None:
        return False
    return first.signature == second.signature


def estimate_difficulty(task: Task) -> float:
    """Heuristic difficulty in [0, 1] implied by a task's surface features."""
    difficulty = max(task.operand1, task.operand2) / task.number_range * 0.3
    if task.operation == "-":
        difficulty += 0.15
    if task.placeholder_position == "start":
        difficulty += 0.25
    elif task.placeholder_position == "middle":
        difficulty += 0.2
    if task.requires_carry:
        difficulty += 0.2 if task.number_range == 20 else 0.15
    if task.number_range == 100:
        difficulty += 0.1
    return max(0.0, min(1.0, difficulty))


def magnitude(task: Task) -> float:
    """Log-scaled operand magnitude relative to the number range."""
    largest = max(task.operand1, task.operand2, abs(task.correct_answer))
    return min(1.0, math.log10(largest + 1) / math.log10(task.number_range + 1))


__all__ = [
    "OPERATIONS",
    "NUMBER_RANGES",
    "PLACEHOLDER_POSITIONS",
    "Task",
    "compute_answer",
    "requires_carry",
    "validate_task",
    "is_identical",
    "estimate_difficulty",
    "magnitude",
]
