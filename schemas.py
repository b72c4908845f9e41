"""Pydantic schemas for persisted learner state and task attempts."""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator, model_validator

from engine_settings import MAX_MEMORY_TRACES, EngineSettings, get_settings
from engines.arithmetic import Task, validate_task
from engines.validation import ValidationError, normalize_with_floor

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "SCHEMA_VERSION",
    "INPUT_SIZE",
    "HIDDEN_SIZE",
    "OUTPUT_SIZE",
    "PREDICTOR_COUNT",
    "MASTERY_SCORE_THRESHOLD",
    "MAX_MEMORY_TRACES",
    "CompetencyMastery",
    "RepresentationStats",
    "PlaceholderStats",
    "MemoryTrace",
    "ActivationState",
    "NetworkWeights",
    "LearnerProgressionRecord",
    "TaskAttempt",
    "load_progression_record",
    "parse_attempt",
]

SCHEMA_VERSION = 1
INPUT_SIZE = 24
HIDDEN_SIZE = 12
OUTPUT_SIZE = 8
PREDICTOR_COUNT = 5
MASTERY_SCORE_THRESHOLD = 3

Operation = Literal["+", "-"]
NumberRange = Literal[20, 100]
PlaceholderPosition = Literal["start", "middle", "end"]


class CompetencyMastery(BaseModel):
    score: int = Field(default=0, ge=0, description="Net mastery score; +1 per correct, -2 per error, floored at 0.")
    attempts: int = Field(default=0, ge=0)
    mastered: bool = Field(default=False, description="Derived: true exactly when score reaches the threshold.")

    @model_validator(mode="before")
    @classmethod
    def derive_mastered(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            data["mastered"] = int(data.get("score", 0) or 0) >= MASTERY_SCORE_THRESHOLD
        return data


class RepresentationStats(BaseModel):
    solo_attempts: int = Field(default=0, ge=0)
    solo_correct: int = Field(default=0, ge=0)
    consecutive_correct: int = Field(default=0, ge=0, description="Consecutive solo correct attempts.")
    consecutive_wrong: int = Field(default=0, ge=0)


class PlaceholderStats(BaseModel):
    attempted: int = Field(default=0, ge=0)
    correct: int = Field(default=0, ge=0)
    avg_time: float = Field(default=0.0, ge=0.0, description="Running mean response time in seconds.")

    @model_validator(mode="after")
    def check_counts(self) -> "PlaceholderStats":
        if self.correct > self.attempted:
            raise ValueError("correct may not exceed attempted")
        return self


class MemoryTrace(BaseModel):
    operand1: int
    operand2: int
    operation: Operation
    number_range: NumberRange = 20
    placeholder_position: PlaceholderPosition = "end"
    correct: bool
    time_taken: float = Field(default=0.0, ge=0.0)
    strategy: str = "unknown"
    competency_id: str
    consolidation_strength: float = Field(default=1.0, ge=0.0, le=1.0)
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def _check_unit_vector(values: List[float], length: int, name: str) -> List[float]:
    if len(values) != length:
        raise ValueError(f"{name} must contain {length} values")
    for value in values:
        if not math.isfinite(value) or not 0.0 <= value <= 1.0:
            raise ValueError(f"{name} values must lie within [0, 1]")
    return values


class ActivationState(BaseModel):
    input: List[float] = Field(default_factory=lambda: [0.5] * INPUT_SIZE)
    hidden: List[float] = Field(default_factory=lambda: [0.5] * HIDDEN_SIZE)
    output: List[float] = Field(default_factory=lambda: [0.5] * OUTPUT_SIZE)

    @field_validator("input")
    @classmethod
    def check_input(cls, value: List[float]) -> List[float]:
        return _check_unit_vector(value, INPUT_SIZE, "input")

    @field_validator("hidden")
    @classmethod
    def check_hidden(cls, value: List[float]) -> List[float]:
        return _check_unit_vector(value, HIDDEN_SIZE, "hidden")

    @field_validator("output")
    @classmethod
    def check_output(cls, value: List[float]) -> List[float]:
        return _check_unit_vector(value, OUTPUT_SIZE, "output")


def _check_matrix(value: List[List[float]], rows: int, cols: int, name: str) -> List[List[float]]:
    if len(value) != rows or any(len(row) != cols for row in value):
        raise ValueError(f"{name} must be a {rows}x{cols} matrix")
    for row in value:
        for entry in row:
            if not math.isfinite(entry):
                raise ValueError(f"{name} contains non-finite values")
    return value


class NetworkWeights(BaseModel):
    input_hidden: List[List[float]] = Field(description="24x12 input-to-hidden weights.")
    hidden_output: List[List[float]] = Field(description="12x8 hidden-to-output weights.")

    @field_validator("input_hidden")
    @classmethod
    def check_input_hidden(cls, value: List[List[float]]) -> List[List[float]]:
        return _check_matrix(value, INPUT_SIZE, HIDDEN_SIZE, "input_hidden")

    @field_validator("hidden_output")
    @classmethod
    def check_hidden_output(cls, value: List[List[float]]) -> List[List[float]]:
        return _check_matrix(value, HIDDEN_SIZE, OUTPUT_SIZE, "hidden_output")


class LearnerProgressionRecord(BaseModel):
    """Persistent per-learner adaptive state."""

    model_config = ConfigDict(extra="forbid")

    learner_id: str = Field(min_length=1)
    schema_version: int = Field(default=SCHEMA_VERSION, description="Layout version of the stored payload.")
    version: int = Field(default=0, ge=0, description="Optimistic-concurrency token, bumped on every committed update.")
    number_range: NumberRange = 20
    representation_level: int = Field(default=5, ge=1, le=5)
    activation_state: ActivationState = Field(default_factory=ActivationState)
    weights: NetworkWeights
    competency_mastery: Dict[str, CompetencyMastery] = Field(default_factory=dict)
    representation_profile: Dict[str, RepresentationStats] = Field(default_factory=dict)
    placeholder_stats: Dict[PlaceholderPosition, PlaceholderStats] = Field(default_factory=dict)
    memory_traces: List[MemoryTrace] = Field(default_factory=list, max_length=MAX_MEMORY_TRACES)
    ensemble_weights: List[float] = Field(default_factory=lambda: [1.0 / PREDICTOR_COUNT] * PREDICTOR_COUNT)
    total_attempts: int = Field(default=0, ge=0)
    total_correct: int = Field(default=0, ge=0)

    @field_validator("schema_version")
    @classmethod
    def check_schema_version(cls, value: int) -> int:
        if value != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema_version {value}; expected {SCHEMA_VERSION}")
        return value

    @field_validator("ensemble_weights")
    @classmethod
    def check_ensemble_weights(cls, value: List[float]) -> List[float]:
        if len(value) != PREDICTOR_COUNT:
            raise ValueError(f"ensemble_weights must contain {PREDICTOR_COUNT} values")
        if any(not math.isfinite(w) or w < 0 for w in value):
            raise ValueError("ensemble_weights must be finite and non-negative")
        if abs(sum(value) - 1.0) > 1e-6:
            raise ValueError("ensemble_weights must sum to 1")
        return value


class TaskAttempt(BaseModel):
    """One completed attempt as reported by the caller."""

    operand1: int = Field(ge=0)
    operand2: int = Field(ge=0)
    operation: Operation
    number_range: NumberRange = 20
    placeholder_position: PlaceholderPosition = "end"
    correct: bool
    time_taken: float = Field(default=0.0, ge=0.0, description="Seconds spent on the task.")
    strategy: str = Field(default="unknown", description="Self-reported or inferred solution strategy.")
    representations_used: List[str] = Field(default_factory=list)
    help_requested: bool = False
    self_corrected: bool = False
    given_answer: Optional[int] = Field(default=None, ge=0, description="Number entered for the placeholder.")
    error_type: Optional[str] = Field(default=None, description="Classified misconception behind a wrong answer.")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def check_arithmetic(self) -> "TaskAttempt":
        task = validate_task(self.to_task(), min_operand=0)
        if self.given_answer is not None and (self.given_answer == task.expected_input) != self.correct:
            raise ValueError(
                f"given_answer {self.given_answer} contradicts correct={self.correct} for {task.render()}"
            )
        return self

    def to_task(self) -> Task:
        return Task(
            operand1=self.operand1,
            operand2=self.operand2,
            operation=self.operation,
            number_range=self.number_range,
            placeholder_position=self.placeholder_position,
        )

    @classmethod
    def from_task(cls, task: Task, *, correct: bool, **fields: Any) -> "TaskAttempt":
        return cls(
            operand1=task.operand1,
            operand2=task.operand2,
            operation=task.operation,
            number_range=task.number_range,
            placeholder_position=task.placeholder_position,
            correct=correct,
            **fields,
        )


# ----- legacy payload migration --------------------------------------------
_LEGACY_KEYS = {
    "learnerId": "learner_id",
    "userId": "learner_id",
    "numberRange": "number_range",
    "representationLevel": "representation_level",
    "activationState": "activation_state",
    "neuronWeights": "weights",
    "competencyMastery": "competency_mastery",
    "representationProfile": "representation_profile",
    "placeholderStats": "placeholder_stats",
    "memoryTraces": "memory_traces",
    "ensembleWeights": "ensemble_weights",
}
_LEGACY_WEIGHT_KEYS = {"inputToHidden": "input_hidden", "hiddenToOutput": "hidden_output"}
_LEGACY_PROFILE_KEYS = {
    "soloAttempts": "solo_attempts",
    "soloCorrect": "solo_correct",
    "consecutiveCorrect": "consecutive_correct",
    "consecutiveWrong": "consecutive_wrong",
}


def _migrate_v0(payload: Dict[str, Any]) -> Dict[str, Any]:
    migrated = {_LEGACY_KEYS.get(key, key): value for key, value in payload.items()}

    weights = migrated.get("weights")
    if isinstance(weights, dict):
        migrated["weights"] = {_LEGACY_WEIGHT_KEYS.get(k, k): v for k, v in weights.items()}

    mastery = migrated.get("competency_mastery")
    if isinstance(mastery, dict):
        migrated["competency_mastery"] = {
            comp_id: {
                "score": entry.get("score", entry.get("correct", 0)),
                "attempts": entry.get("attempts", 0),
            }
            for comp_id, entry in mastery.items()
            if isinstance(entry, dict)
        }

    profile = migrated.get("representation_profile")
    if isinstance(profile, dict):
        migrated["representation_profile"] = {
            rep_id: {_LEGACY_PROFILE_KEYS.get(k, k): v for k, v in entry.items()}
            for rep_id, entry in profile.items()
            if isinstance(entry, dict)
        }

    stats = migrated.get("placeholder_stats")
    if isinstance(stats, dict):
        migrated["placeholder_stats"] = {
            position: {
                "attempted": entry.get("attempted", 0),
                "correct": entry.get("correct", 0),
                "avg_time": entry.get("avg_time", entry.get("avgTime", 0.0)),
            }
            for position, entry in stats.items()
            if isinstance(entry, dict) and position in ("start", "middle", "end")
        }

    traces = migrated.get("memory_traces")
    if isinstance(traces, list):
        # Early traces only stored a task type label without operands.
        kept = [trace for trace in traces if isinstance(trace, dict) and "operand1" in trace]
        if len(kept) != len(traces):
            _LOGGER.info("Dropped %d legacy memory traces without operands", len(traces) - len(kept))
        migrated["memory_traces"] = kept[-MAX_MEMORY_TRACES:]

    migrated.setdefault("version", 0)
    migrated["schema_version"] = SCHEMA_VERSION
    return migrated


def _fit_to_settings(record: LearnerProgressionRecord, settings: EngineSettings) -> LearnerProgressionRecord:
    clamp = settings.learner_model.weight_clamp
    floor = settings.ensemble.weight_floor
    updates: Dict[str, Any] = {}

    matrices = (record.weights.input_hidden, record.weights.hidden_output)
    if any(abs(entry) > clamp for matrix in matrices for row in matrix for entry in row):
        _LOGGER.warning("Clipping network weights of %s to +/-%s", record.learner_id, clamp)
        clipped = [[[min(clamp, max(-clamp, entry)) for entry in row] for row in matrix] for matrix in matrices]
        updates["weights"] = NetworkWeights(input_hidden=clipped[0], hidden_output=clipped[1])

    if any(w < floor - 1e-9 for w in record.ensemble_weights):
        _LOGGER.warning("Raising ensemble weights of %s to the %s floor", record.learner_id, floor)
        updates["ensemble_weights"] = normalize_with_floor(record.ensemble_weights, floor)

    return record.model_copy(update=updates) if updates else record


def load_progression_record(
    payload: Mapping[str, Any] | str | bytes,
    settings: EngineSettings | None = None,
) -> LearnerProgressionRecord:
    """Validate a stored payload, migrating older layouts.

    Network weights outside the configured clamp are clipped and ensemble
    weights below the floor are renormalized, so a loaded record always
    satisfies the bounds the engines maintain. Raises ValidationError for
    unknown schema versions or malformed shapes.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValidationError("Progression payload is not valid JSON") from exc
    if not isinstance(payload, Mapping):
        raise ValidationError("Progression payload must be a JSON object")

    data = dict(payload)
    version = data.get("schema_version", 0)
    if version == 0:
        data = _migrate_v0(data)
    elif version != SCHEMA_VERSION:
        raise ValidationError(f"Unknown progression schema_version: {version}")

    try:
        record = LearnerProgressionRecord.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid progression record: {exc}") from exc
    return _fit_to_settings(record, settings or get_settings())


def parse_attempt(payload: Mapping[str, Any] | TaskAttempt) -> TaskAttempt:
    """Validate an attempt payload, raising the engine ValidationError."""
    if isinstance(payload, TaskAttempt):
        return payload
    try:
        return TaskAttempt.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid task attempt: {exc}") from exc
