"""Tunable numeric defaults for the adaptive arithmetic engines.

Every heuristic constant used by the observer, analyzers, learner model,
task evolution and ensemble lives here so deployments can adjust them
without touching engine code. Settings are read from an optional JSON file
(``ENGINE_SETTINGS_PATH`` or ``engine_settings.json`` next to this module)
and a handful of environment overrides, then validated by pydantic.
"""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from engines.validation import ValidationError
from env_validation import get_env_float, get_env_int

_LOGGER = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = Path(__file__).resolve().parent / "engine_settings.json"
MAX_MEMORY_TRACES = 100


class EngineSettingsError(ValidationError):
    """Raised when the engine settings file or overrides contain invalid data."""


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ObserverSettings(_Section):
    window: int = Field(10, ge=1, le=100, description="Number of recent attempts summarised.")
    trend_min_attempts: int = Field(4, ge=2)
    fast_response_seconds: float = Field(10.0, gt=0)
    slow_response_seconds: float = Field(60.0, gt=0)
    reflection_min_seconds: float = Field(15.0, ge=0)
    reflection_max_seconds: float = Field(60.0, gt=0)
    session_target: int = Field(20, ge=1)
    attempt_horizon: int = Field(200, ge=1)

    @model_validator(mode="after")
    def check_bounds(self) -> "ObserverSettings":
        if self.fast_response_seconds >= self.slow_response_seconds:
            raise ValueError("fast_response_seconds must be lower than slow_response_seconds")
        if self.reflection_min_seconds >= self.reflection_max_seconds:
            raise ValueError("reflection_min_seconds must be lower than reflection_max_seconds")
        return self


class ZPDSettings(_Section):
    cold_start_center: float = Field(0.3, ge=0.0, le=1.0)
    target_accuracy: float = Field(0.7, gt=0.0, lt=1.0)
    high_accuracy: float = Field(0.9, gt=0.0, le=1.0)
    low_accuracy: float = Field(0.5, ge=0.0, lt=1.0)
    push_step: float = Field(0.1, ge=0.0, le=0.5)
    drift: float = Field(0.25, ge=0.0, le=1.0)
    min_width: float = Field(0.1, gt=0.0, le=1.0)
    max_width: float = Field(0.4, gt=0.0, le=1.0)
    history_window: int = Field(5, ge=1)
    confidence_horizon: int = Field(10, ge=1)

    @model_validator(mode="after")
    def check_bounds(self) -> "ZPDSettings":
        if self.min_width > self.max_width:
            raise ValueError("min_width must not exceed max_width")
        if self.low_accuracy >= self.high_accuracy:
            raise ValueError("low_accuracy must be lower than high_accuracy")
        return self


class CognitiveLoadSettings(_Section):
    optimal_min: float = Field(0.5, ge=0.0, le=1.0)
    optimal_max: float = Field(0.8, ge=0.0, le=1.0)
    target_min: float = Field(0.35, ge=0.0, le=1.0)
    target_max: float = Field(0.8, ge=0.0, le=1.0)
    magnitude_weight: float = Field(0.3, ge=0.0)
    subtraction_cost: float = Field(0.1, ge=0.0)
    carry_cost: float = Field(0.2, ge=0.0)
    placeholder_start_cost: float = Field(0.2, ge=0.0)
    placeholder_middle_cost: float = Field(0.15, ge=0.0)
    base_extraneous: float = Field(0.05, ge=0.0)
    representation_cost: float = Field(0.03, ge=0.0)
    germane_placeholder: float = Field(0.1, ge=0.0)
    error_history_weight: float = Field(0.1, ge=0.0)

    @model_validator(mode="after")
    def check_bounds(self) -> "CognitiveLoadSettings":
        if self.optimal_min > self.optimal_max:
            raise ValueError("optimal_min must not exceed optimal_max")
        if self.target_min > self.target_max:
            raise ValueError("target_min must not exceed target_max")
        return self


class RepresentationSettings(_Section):
    min_level: int = Field(1, ge=1, le=5)
    max_level: int = Field(5, ge=1, le=5)
    solo_correct_to_fade: int = Field(5, ge=1)
    errors_to_support: int = Field(3, ge=1)
    desirable_difficulty_threshold: float = Field(0.85, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_bounds(self) -> "RepresentationSettings":
        if self.min_level > self.max_level:
            raise ValueError("min_level must not exceed max_level")
        return self


class LearnerModelSettings(_Section):
    learning_rate: float = Field(0.05, gt=0.0, le=1.0)
    weight_clamp: float = Field(2.0, gt=0.0)
    reward_correct: float = Field(1.0, ge=0.0)
    penalty_incorrect: float = Field(1.0, ge=0.0)
    weight_decay: float = Field(0.0, ge=0.0, lt=1.0)
    init_scale: float = Field(0.1, ge=0.0)
    init_seed: int = 7

    @model_validator(mode="after")
    def check_bounds(self) -> "LearnerModelSettings":
        if self.init_scale > self.weight_clamp:
            raise ValueError("init_scale must not exceed weight_clamp")
        return self


class FitnessWeights(_Section):
    difficulty: float = Field(0.35, ge=0.0)
    novelty: float = Field(0.25, ge=0.0)
    coverage: float = Field(0.15, ge=0.0)
    placeholder_balance: float = Field(0.1, ge=0.0)
    load: float = Field(0.15, ge=0.0)

    @model_validator(mode="after")
    def check_total(self) -> "FitnessWeights":
        total = self.difficulty + self.novelty + self.coverage + self.placeholder_balance + self.load
        if total <= 0:
            raise ValueError("fitness weights must not all be zero")
        return self


class EvolutionSettings(_Section):
    population_size: int = Field(24, ge=4, le=500)
    generations: int = Field(12, ge=1, le=200)
    tournament_size: int = Field(3, ge=2)
    crossover_rate: float = Field(0.9, ge=0.0, le=1.0)
    mutation_rate: float = Field(0.15, ge=0.0, le=1.0)
    elitism: float = Field(0.2, ge=0.0, lt=1.0)
    novelty_window: int = Field(10, ge=1)
    max_retries: int = Field(10, ge=1)
    breeding_attempt_factor: int = Field(4, ge=1)
    allow_negative_results: bool = False
    seed: Optional[int] = None
    fitness: FitnessWeights = Field(default_factory=FitnessWeights)

    @model_validator(mode="after")
    def check_bounds(self) -> "EvolutionSettings":
        if self.tournament_size > self.population_size:
            raise ValueError("tournament_size must not exceed population_size")
        return self


class EnsembleSettings(_Section):
    weight_floor: float = Field(0.02, ge=0.0, lt=0.2)
    learning_rate: float = Field(2.0, ge=0.0)
    weight_decay: float = Field(0.01, ge=0.0, lt=1.0)
    target_min: float = Field(0.65, ge=0.0, le=1.0)
    target_max: float = Field(0.85, ge=0.0, le=1.0)
    candidate_count: int = Field(8, ge=1)
    bayesian_prior_strength: float = Field(4.0, gt=0.0)
    case_neighbors: int = Field(5, ge=1)
    case_default: float = Field(0.6, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_bounds(self) -> "EnsembleSettings":
        if self.target_min >= self.target_max:
            raise ValueError("target_min must be lower than target_max")
        return self


class MemorySettings(_Section):
    max_traces: int = Field(100, ge=1, le=MAX_MEMORY_TRACES)
    consolidation_decay: float = Field(0.98, gt=0.0, le=1.0)
    correct_strength: float = Field(1.0, ge=0.0, le=1.0)
    error_strength: float = Field(0.6, ge=0.0, le=1.0)


class ControllerSettings(_Section):
    recent_attempts_limit: int = Field(20, ge=1, le=50)


class EngineSettings(_Section):
    """Complete, immutable configuration for one engine deployment."""

    observer: ObserverSettings = Field(default_factory=ObserverSettings)
    zpd: ZPDSettings = Field(default_factory=ZPDSettings)
    cognitive_load: CognitiveLoadSettings = Field(default_factory=CognitiveLoadSettings)
    representation: RepresentationSettings = Field(default_factory=RepresentationSettings)
    learner_model: LearnerModelSettings = Field(default_factory=LearnerModelSettings)
    evolution: EvolutionSettings = Field(default_factory=EvolutionSettings)
    ensemble: EnsembleSettings = Field(default_factory=EnsembleSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    controller: ControllerSettings = Field(default_factory=ControllerSettings)

    def with_overrides(self, overrides: Mapping[str, Mapping[str, Any]]) -> "EngineSettings":
        """Return a copy with section values replaced, validating the result."""
        payload = self.model_dump()
        for section, values in overrides.items():
            if section not in payload:
                raise EngineSettingsError(f"Unknown settings section: {section}")
            payload[section].update(values)
        return _validate(payload, source="overrides")


# env name -> (section, key, parser)
_ENV_OVERRIDES = {
    "LEARNER_MODEL_LEARNING_RATE": ("learner_model", "learning_rate", get_env_float),
    "LEARNER_MODEL_WEIGHT_CLAMP": ("learner_model", "weight_clamp", get_env_float),
    "ENSEMBLE_WEIGHT_FLOOR": ("ensemble", "weight_floor", get_env_float),
    "ENSEMBLE_WEIGHT_DECAY": ("ensemble", "weight_decay", get_env_float),
    "ZPD_PUSH_STEP": ("zpd", "push_step", get_env_float),
    "EVOLUTION_SEED": ("evolution", "seed", get_env_int),
}


def _validate(payload: Mapping[str, Any], *, source: str) -> EngineSettings:
    try:
        return EngineSettings.model_validate(payload)
    except PydanticValidationError as exc:
        raise EngineSettingsError(f"Invalid engine settings in {source}: {exc}") from exc


def _read_file(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except json.JSONDecodeError as exc:
        raise EngineSettingsError(f"Engine settings file is not valid JSON: {path}") from exc
    if not isinstance(raw, dict):
        raise EngineSettingsError("Engine settings file must contain a JSON object")
    return raw


def load_settings(path: str | Path | None = None, *, use_env: bool = True) -> EngineSettings:
    """Load settings from ``path`` (or the default locations) plus env overrides.

    A missing default file is not an error; an explicitly requested file
    that does not exist is.
    """
    payload: Dict[str, Any] = {}
    explicit = path if path is not None else os.getenv("ENGINE_SETTINGS_PATH")
    if explicit:
        settings_path = Path(explicit)
        if not settings_path.exists():
            raise FileNotFoundError(f"Engine settings file not found: {settings_path}")
        payload = _read_file(settings_path)
        source = str(settings_path)
    elif DEFAULT_SETTINGS_FILE.exists():
        payload = _read_file(DEFAULT_SETTINGS_FILE)
        source = str(DEFAULT_SETTINGS_FILE)
    else:
        source = "defaults"

    if use_env:
        for env_name, (section, key, parser) in _ENV_OVERRIDES.items():
            value = parser(env_name)
            if value is None:
                continue
            payload.setdefault(section, {})[key] = value
            _LOGGER.info("Engine setting %s.%s overridden from %s", section, key, env_name)

    settings = _validate(payload, source=source)
    _LOGGER.debug("Loaded engine settings from %s", source)
    return settings


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Return the process-wide settings, loaded once."""
    return load_settings()


__all__ = [
    "EngineSettings",
    "EngineSettingsError",
    "ObserverSettings",
    "ZPDSettings",
    "CognitiveLoadSettings",
    "RepresentationSettings",
    "LearnerModelSettings",
    "FitnessWeights",
    "EvolutionSettings",
    "EnsembleSettings",
    "MemorySettings",
    "ControllerSettings",
    "load_settings",
    "get_settings",
]
