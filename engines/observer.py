"""Normalized learner state extraction from recent task attempts."""

from __future__ import annotations

from statistics import mean, pvariance
from typing import Dict, List, Optional, Sequence

import numpy as np

from engine_settings import EngineSettings, ObserverSettings, get_settings
from schemas import INPUT_SIZE, LearnerProgressionRecord, TaskAttempt

# State vector layout
ROLLING_ACCURACY = 0
ACCURACY_TREND = 1
SPEED = 2
CONSISTENCY = 3
FIRST_ATTEMPT_SUCCESS = 4
COUNTING_SHARE = 5
DECOMPOSITION_SHARE = 6
PLACE_VALUE_SHARE = 7
RETRIEVAL_SHARE = 8
STRATEGY_FLEXIBILITY = 9
SELF_CORRECTION = 10
HELP_SEEKING = 11
CONFIDENCE = 12
REFLECTION = 13
FRUSTRATION = 14
ENGAGEMENT = 15
MOTIVATION = 16
ANXIETY = 17
FLOW = 18
SESSION_LENGTH = 19
ATTEMPT_INDEX = 20
PLACEHOLDER_ACCURACY = 21
REPRESENTATION_SUPPORT = 22
MASTERY_RATIO = 23

FEATURE_NAMES: tuple[str, ...] = (
    "rolling_accuracy",
    "accuracy_trend",
    "speed",
    "consistency",
    "first_attempt_success",
    "counting_share",
    "decomposition_share",
    "place_value_share",
    "retrieval_share",
    "strategy_flexibility",
    "self_correction",
    "help_seeking",
    "confidence",
    "reflection",
    "frustration",
    "engagement",
    "motivation",
    "anxiety",
    "flow",
    "session_length",
    "attempt_index",
    "placeholder_accuracy",
    "representation_support",
    "mastery_ratio",
)

# Strategy labels grouped into the four tracked families.
STRATEGY_FAMILIES: Dict[str, str] = {
    "counting_all": "counting",
    "counting_on": "counting",
    "counting": "counting",
    "decomposition": "decomposition",
    "decade_bridge": "decomposition",
    "decade_transition": "decomposition",
    "bridging": "decomposition",
    "place_value": "place_value",
    "retrieval": "retrieval",
    "known_fact": "retrieval",
    "derived_fact": "retrieval",
    "doubling": "retrieval",
    "inverse": "retrieval",
}

NEUTRAL = 0.5


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class InputObserver:
    """Turn a learner's record and recent attempts into a 24-entry state vector.

    The observer is a pure function of its inputs: identical record and
    attempt sequences always produce an identical vector, and nothing is
    written back to the record.
    """

    def __init__(self, settings: Optional[EngineSettings] = None) -> None:
        self.settings: ObserverSettings = (settings or get_settings()).observer

    # ----- public API --------------------------------------------------
    def observe(
        self,
        record: LearnerProgressionRecord,
        recent_attempts: Sequence[TaskAttempt],
    ) -> np.ndarray:
        if not recent_attempts:
            return np.full(INPUT_SIZE, NEUTRAL)

        window = list(recent_attempts)[-self.settings.window:]
        outcomes = [1.0 if attempt.correct else 0.0 for attempt in window]
        times = [attempt.time_taken for attempt in window]

        state = np.full(INPUT_SIZE, NEUTRAL)
        state[ROLLING_ACCURACY] = mean(outcomes)
        state[ACCURACY_TREND] = self._trend(outcomes)
        state[SPEED] = self._speed(times)
        state[CONSISTENCY] = _clamp(1.0 - pvariance(outcomes) * 2) if len(outcomes) > 1 else NEUTRAL
        state[FIRST_ATTEMPT_SUCCESS] = mean(
            1.0 if attempt.correct and not attempt.self_corrected else 0.0 for attempt in window
        )

        shares, flexibility = self._strategy_profile(window)
        state[COUNTING_SHARE] = shares["counting"]
        state[DECOMPOSITION_SHARE] = shares["decomposition"]
        state[PLACE_VALUE_SHARE] = shares["place_value"]
        state[RETRIEVAL_SHARE] = shares["retrieval"]
        state[STRATEGY_FLEXIBILITY] = flexibility

        state[SELF_CORRECTION] = mean(1.0 if a.self_corrected else 0.0 for a in window)
        state[HELP_SEEKING] = mean(1.0 if a.help_requested else 0.0 for a in window)

        affect = self._affective_state(window)
        state[CONFIDENCE] = affect["confidence"]
        state[REFLECTION] = affect["reflection"]
        state[FRUSTRATION] = affect["frustration"]
        state[ENGAGEMENT] = affect["engagement"]
        state[MOTIVATION] = affect["motivation"]
        state[ANXIETY] = affect["anxiety"]
        state[FLOW] = affect["flow"]

        state[SESSION_LENGTH] = _clamp(len(recent_attempts) / self.settings.session_target)
        state[ATTEMPT_INDEX] = _clamp(record.total_attempts / self.settings.attempt_horizon)
        state[PLACEHOLDER_ACCURACY] = self._placeholder_accuracy(record)
        state[REPRESENTATION_SUPPORT] = _clamp((record.representation_level - 1) / 4)
        state[MASTERY_RATIO] = self._mastery_ratio(record)
        return np.clip(state, 0.0, 1.0)

    # ----- helpers -----------------------------------------------------
    def _trend(self, outcomes: List[float]) -> float:
        if len(outcomes) < self.settings.trend_min_attempts:
            return NEUTRAL
        half = len(outcomes) // 2
        first, second = mean(outcomes[:half]), mean(outcomes[half:])
        return _clamp(NEUTRAL + (second - first) / 2)

    def _speed(self, times: List[float]) -> float:
        fast = self.settings.fast_response_seconds
        slow = self.settings.slow_response_seconds
        return _clamp(1.0 - (mean(times) - fast) / (slow - fast))

    @staticmethod
    def _strategy_profile(window: Sequence[TaskAttempt]) -> tuple[Dict[str, float], float]:
        counts = {"counting": 0, "decomposition": 0, "place_value": 0, "retrieval": 0}
        labelled = 0
        for attempt in window:
            family = STRATEGY_FAMILIES.get(attempt.strategy)
            if family is None:
                continue
            counts[family] += 1
            labelled += 1
        if labelled == 0:
            return {family: NEUTRAL for family in counts}, NEUTRAL
        shares = {family: count / labelled for family, count in counts.items()}
        flexibility = sum(1 for count in counts.values() if count) / len(counts)
        return shares, flexibility

    def _affective_state(self, window: Sequence[TaskAttempt]) -> Dict[str, float]:
        fast = self.settings.fast_response_seconds
        last_five = window[-5:]
        errors_recent = sum(1 for attempt in last_five if not attempt.correct)
        frustration = _clamp(errors_recent / 3)

        streak = 0
        for attempt in reversed(window):
            if not attempt.correct:
                break
            streak += 1

        quick_correct = sum(1 for a in window if a.correct and a.time_taken <= fast * 1.5)
        reflective = sum(
            1
            for a in window
            if self.settings.reflection_min_seconds <= a.time_taken <= self.settings.reflection_max_seconds
        )
        fast_errors = sum(1 for a in window if not a.correct and a.time_taken < fast)
        accuracy = mean(1.0 if a.correct else 0.0 for a in window)
        engagement = _clamp(0.5 + streak * 0.1 - frustration * 0.3)
        in_flow = 0.6 <= accuracy <= 0.85 and engagement >= 0.5
        return {
            "confidence": quick_correct / len(window),
            "reflection": reflective / len(window),
            "frustration": frustration,
            "engagement": engagement,
            "motivation": _clamp(1.0 - frustration / 2),
            "anxiety": _clamp(fast_errors / len(window) * 2),
            "flow": 1.0 if in_flow else _clamp(1.0 - abs(accuracy - 0.725) * 2),
        }

    @staticmethod
    def _placeholder_accuracy(record: LearnerProgressionRecord) -> float:
        attempted = sum(stats.attempted for stats in record.placeholder_stats.values())
        if attempted == 0:
            return NEUTRAL
        correct = sum(stats.correct for stats in record.placeholder_stats.values())
        return correct / attempted

    @staticmethod
    def _mastery_ratio(record: LearnerProgressionRecord) -> float:
        if not record.competency_mastery:
            return NEUTRAL
        mastered = sum(1 for entry in record.competency_mastery.values() if entry.mastered)
        return mastered / len(record.competency_mastery)


def observe(
    record: LearnerProgressionRecord,
    recent_attempts: Sequence[TaskAttempt],
    settings: Optional[EngineSettings] = None,
) -> np.ndarray:
    """Convenience wrapper around :class:`InputObserver`."""
    return InputObserver(settings).observe(record, recent_attempts)


__all__ = ["InputObserver", "observe", "FEATURE_NAMES", "STRATEGY_FAMILIES"]
