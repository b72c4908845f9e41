"""Error types and validators shared by the learner-modeling engines."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence

import numpy as np


class EngineError(Exception):
    """Base class for errors raised by the adaptive engines."""
    pass


class ValidationError(EngineError, ValueError):
    """Raised when vectors, weights, records or attempts are malformed."""
    pass


class ArithmeticIntegrityError(ValidationError):
    """Raised when a task's stored answer does not match its operands."""
    pass


class ConflictError(EngineError):
    """Raised when a progression record was modified concurrently.

    The caller may re-read the record and retry the whole cycle.
    """

    retryable = True

    def __init__(self, learner_id: str, expected_version: int, actual_version: int | None) -> None:
        self.learner_id = learner_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Progression record for {learner_id!r} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


@dataclass(frozen=True)
class DegradedModeFallback:
    """Diagnostic emitted when a pipeline stage failed and defaults were used."""

    stage: str
    error_type: str
    message: str

    @classmethod
    def from_exception(cls, stage: str, exc: BaseException) -> "DegradedModeFallback":
        return cls(stage=stage, error_type=type(exc).__name__, message=str(exc))

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.stage, "error_type": self.error_type, "message": self.message}


def validate_vector(values: Any, length: int, name: str) -> np.ndarray:
    """Return ``values`` as a float vector of ``length`` entries.

    Raises ValidationError if the shape is wrong or any entry is not finite.
    The returned array is always a copy.
    """
    try:
        vector = np.array(values, dtype=float)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be numeric") from exc
    if vector.ndim != 1 or vector.shape[0] != length:
        raise ValidationError(f"{name} must have length {length}, got shape {vector.shape}")
    if not np.all(np.isfinite(vector)):
        raise ValidationError(f"{name} contains non-finite values")
    return vector


def validate_matrix(values: Any, shape: tuple[int, int], name: str) -> np.ndarray:
    """Return ``values`` as a float matrix of ``shape`` (copied)."""
    try:
        matrix = np.array(values, dtype=float)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be numeric") from exc
    if matrix.shape != shape:
        raise ValidationError(f"{name} must have shape {shape}, got {matrix.shape}")
    if not np.all(np.isfinite(matrix)):
        raise ValidationError(f"{name} contains non-finite values")
    return matrix


def validate_unit_interval(values: Iterable[float], name: str) -> None:
    for value in values:
        if not math.isfinite(value) or not 0.0 <= value <= 1.0:
            raise ValidationError(f"{name} values must lie within [0, 1]")


def validate_probability_weights(weights: Sequence[float], expected: int, floor: float = 0.0) -> None:
    """Check that ``weights`` form a distribution with every entry at least ``floor``."""
    if len(weights) != expected:
        raise ValidationError(f"Expected {expected} weights, got {len(weights)}")
    if any(not math.isfinite(w) for w in weights):
        raise ValidationError("Weights must be finite")
    if any(w < floor - 1e-9 for w in weights):
        raise ValidationError(f"Weights must be at least {floor}")
    if abs(sum(weights) - 1.0) > 1e-6:
        raise ValidationError("Weights must sum to 1")


def normalize_with_floor(weights: Sequence[float], floor: float) -> List[float]:
    """Scale ``weights`` to sum to 1 with no entry below ``floor``."""
    count = len(weights)
    if count == 0:
        return []
    if floor * count > 1.0:
        raise ValidationError("weight floor too large for the number of predictors")
    values = [max(0.0, float(w)) if math.isfinite(w) else 0.0 for w in weights]
    total = sum(values)
    if total <= 0:
        return [1.0 / count] * count
    values = [v / total for v in values]

    pinned: set[int] = set()
    for _ in range(count):
        below = {i for i, v in enumerate(values) if i not in pinned and v < floor}
        if not below:
            break
        pinned |= below
        free = [i for i in range(count) if i not in pinned]
        free_total = sum(values[i] for i in free)
        remaining = 1.0 - floor * len(pinned)
        for i in pinned:
            values[i] = floor
        for i in free:
            values[i] = values[i] / free_total * remaining if free_total > 0 else remaining / len(free)
    return values


__all__ = [
    "EngineError",
    "ValidationError",
    "ArithmeticIntegrityError",
    "ConflictError",
    "DegradedModeFallback",
    "validate_vector",
    "validate_matrix",
    "validate_unit_interval",
    "validate_probability_weights",
    "normalize_with_floor",
]
