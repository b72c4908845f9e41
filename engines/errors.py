"""Error-pattern classification and strategy inference for single attempts.

A wrong answer is matched against typical arithmetic misconceptions in a
fixed priority order, most specific first. Operation-level patterns such as
doubling, sign confusion or the ten-crossing slips only make sense when the
learner computed the result, so they are checked for ``end`` placeholders
only; digit and distance patterns apply to every position.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from engines.arithmetic import Task

_LOGGER = logging.getLogger(__name__)

SEVERITIES = ("minor", "moderate", "severe")

# Error type -> family used to pick follow-up prompts and hints.
ERROR_FAMILIES: Dict[str, str] = {
    "doubling_error": "doubling",
    "operation_confusion": "operation",
    "decade_boundary_confusion": "decade",
    "subtraction_reversal_at_ten": "decade",
    "digit_reversal": "place_value",
    "place_value": "place_value",
    "off_by_ten_minus": "place_value",
    "off_by_ten_plus": "place_value",
    "input_error": "input",
    "counting_error_minus_1": "counting",
    "counting_error_plus_1": "counting",
    "counting_error_minus_2": "counting",
    "counting_error_plus_2": "counting",
    "other": "other",
}

ERROR_HINTS: Dict[str, str] = {
    "doubling": "Use the doubles you know: 6 + 6 helps with 6 + 7.",
    "operation": "Look at the sign again: add or take away?",
    "decade": "Go back to the ten first, then keep taking away the rest.",
    "place_value": "Look at tens and ones separately.",
    "input": "Check the number you typed before you send it.",
    "counting": "Count on from the bigger number and check where you stop.",
    "other": "Work through the task one step at a time.",
}

# Solution strategies an attempt can be labelled with when none was reported.
INFERRED_STRATEGIES = (
    "retrieval",
    "derived_fact",
    "doubling",
    "inverse",
    "decade_transition",
    "decomposition",
    "counting",
    "counting_on",
)


@dataclass(frozen=True)
class ErrorAnalysis:
    error_type: str
    severity: str
    expected: int
    given: int

    @property
    def difference(self) -> int:
        return self.given - self.expected

    @property
    def family(self) -> str:
        return ERROR_FAMILIES.get(self.error_type, "other")

    @property
    def hint(self) -> str:
        return ERROR_HINTS[self.family]

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data.update(difference=self.difference, family=self.family, hint=self.hint)
        return data


# ----- error classification ------------------------------------------------
def _doubling(task: Task) -> bool:
    if task.operation == "+":
        return task.operand1 == task.operand2
    return task.operand1 == 2 * task.operand2


def _operation_confusion(task: Task, given: int) -> bool:
    if task.operation == "+":
        return given in (task.operand1 - task.operand2, abs(task.operand1 - task.operand2))
    return given == task.operand1 + task.operand2


def _rest_after_ten(task: Task) -> Optional[int]:
    """Part of the subtrahend left after stepping back to the full ten."""
    if task.operation != "-" or task.operand1 <= 10 or task.correct_answer >= 10:
        return None
    remaining = task.operand2 - task.operand1 % 10
    return remaining if remaining > 0 else None


def _digit_reversal(expected: int, given: int) -> bool:
    expected_text, given_text = str(expected), str(given)
    return len(expected_text) == 2 and len(given_text) == 2 and given_text == expected_text[::-1]


def _input_error(expected: int, given: int) -> bool:
    """A digit was typed twice, e.g. 122 for 12."""
    given_text = str(given)
    if len(given_text) <= len(str(expected)):
        return False
    for digit in dict.fromkeys(given_text):
        count = given_text.count(digit)
        if count < 2:
            continue
        trimmed = given_text
        for _ in range(count - 1):
            index = trimmed.rfind(digit)
            trimmed = trimmed[:index] + trimmed[index + 1:]
        if int(trimmed) == expected:
            return True
    return False


_COUNTING = {
    -1: ("counting_error_minus_1", "minor"),
    1: ("counting_error_plus_1", "minor"),
    -2: ("counting_error_minus_2", "moderate"),
    2: ("counting_error_plus_2", "moderate"),
}


def _place_value_severity(task: Task, expected: int, given: int) -> Optional[str]:
    distance = abs(given - expected)
    if distance in (90, 100):
        return "severe"
    if task.placeholder_position == "end" and task.operation == "+" and 10 < expected < 20 and task.requires_carry:
        ones = str(expected % 10)
        given_text = str(given)
        if "1" in given_text and ones in given_text:
            return "moderate"
    if expected >= 10 and given >= 10:
        if abs(expected % 10 - given % 10) <= 2 and expected // 10 != given // 10:
            return "moderate"
    return None


def _classify(task: Task, expected: int, given: int) -> Tuple[str, str]:
    if task.placeholder_position == "end":
        if _doubling(task):
            return "doubling_error", "moderate"
        if _operation_confusion(task, given):
            return "operation_confusion", "severe"
        rest = _rest_after_ten(task)
        if rest is not None:
            if given == 10 + rest:
                return "decade_boundary_confusion", "severe"
            if given == rest:
                return "subtraction_reversal_at_ten", "severe"
    if _digit_reversal(expected, given):
        return "digit_reversal", "moderate"
    if _input_error(expected, given):
        return "input_error", "minor"
    difference = given - expected
    if difference in _COUNTING:
        return _COUNTING[difference]
    if difference == -10:
        return "off_by_ten_minus", "moderate"
    if difference == 10:
        return "off_by_ten_plus", "moderate"
    severity = _place_value_severity(task, expected, given)
    if severity is not None:
        return "place_value", severity
    if abs(difference) <= 3:
        return "other", "minor"
    if abs(difference) >= 20:
        return "other", "severe"
    return "other", "moderate"


def classify_error(task: Task, given_answer: Optional[int]) -> Optional[ErrorAnalysis]:
    """Name the misconception behind ``given_answer``.

    Returns None when no answer was reported or the answer is right.
    """
    if given_answer is None:
        return None
    expected = task.expected_input
    if given_answer == expected:
        return None
    error_type, severity = _classify(task, expected, given_answer)
    _LOGGER.debug("Classified %s answered %d as %s", task.render(), given_answer, error_type)
    return ErrorAnalysis(error_type=error_type, severity=severity, expected=expected, given=given_answer)


# ----- strategy inference --------------------------------------------------
def _derived_fact(task: Task, seconds: float) -> bool:
    n1, n2 = task.operand1, task.operand2
    if task.operation != "+":
        return False
    if 1 <= abs(n1 - n2) <= 2 and 3 <= seconds <= 8:
        return True
    if 10 <= n1 + n2 <= 12 and 3 <= seconds <= 8:
        if n1 + n2 == 10 or (abs(n1 - 5) <= 2 and abs(n2 - 5) <= 2):
            return True
    if n1 > 10 or n2 > 10:
        ones1, ones2 = n1 % 10, n2 % 10
        simple = (ones1 <= 5 and ones2 <= 5) or abs(ones1 - ones2) <= 1
        if simple and 3 <= seconds <= 10:
            return True
    return False


def infer_strategy(task: Task, time_taken: float) -> str:
    """Most likely solution strategy from the task shape and response time."""
    n1, n2 = task.operand1, task.operand2
    if time_taken < 2.5:
        return "retrieval"
    if _derived_fact(task, time_taken):
        return "derived_fact"
    if task.operation == "+" and abs(n1 - n2) <= 1 and time_taken < 5:
        return "doubling"
    if task.operation == "-":
        if n1 <= 10 and n2 < n1 and time_taken < 6:
            return "inverse"
        if n1 > 10 and n2 > n1 % 10 and time_taken < 8:
            return "decade_transition"
    if task.operation == "+" and n1 > 10 and 5 < time_taken < 12:
        return "decomposition"
    if time_taken > 10:
        return "counting"
    return "counting_on"


__all__ = [
    "ERROR_FAMILIES",
    "ERROR_HINTS",
    "INFERRED_STRATEGIES",
    "ErrorAnalysis",
    "classify_error",
    "infer_strategy",
]
