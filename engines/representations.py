"""Representation planning and fading for arithmetic tasks.

Learners start with the full set of concrete aids for their number range.
Aids are faded one at a time, from the most concrete to the most abstract,
once the learner repeatedly succeeds without help, and brought back after a
run of errors. The symbolic notation is always shown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from engine_settings import EngineSettings, get_settings
from schemas import LearnerProgressionRecord, RepresentationStats, TaskAttempt

_LOGGER = logging.getLogger(__name__)

# Ordered from most abstract (always kept) to most concrete (faded first).
REPRESENTATION_PRIORITY: Dict[int, Tuple[str, ...]] = {
    20: ("symbolic", "number_line", "twenty_frame", "counters", "fingers"),
    100: ("symbolic", "number_line", "hundred_field", "place_value_bars", "grouped_counters"),
}


def representations_for_level(level: int, number_range: int) -> Tuple[str, ...]:
    priority = REPRESENTATION_PRIORITY.get(number_range, REPRESENTATION_PRIORITY[20])
    level = max(1, min(len(priority), int(level)))
    return priority[:level]


def tested_representation(level: int, number_range: int) -> str:
    """The representation that is next in line to be faded."""
    return representations_for_level(level, number_range)[-1]


@dataclass
class RepresentationChange:
    previous_level: int
    new_level: int
    tested_representation: str
    profile: Dict[str, RepresentationStats] = field(default_factory=dict)
    reason: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.previous_level != self.new_level


class RepresentationPlanner:
    """Choose the representations to show and adapt the level after attempts."""

    def __init__(self, settings: Optional[EngineSettings] = None) -> None:
        self.settings = (settings or get_settings()).representation

    def plan_representations(self, record: LearnerProgressionRecord) -> Tuple[str, ...]:
        return representations_for_level(record.representation_level, record.number_range)

    def update_representation_profile(
        self,
        record: LearnerProgressionRecord,
        attempt: TaskAttempt,
    ) -> RepresentationChange:
        """Return the updated profile and level for ``attempt``.

        The record itself is left untouched.
        """
        level = record.representation_level
        tested = tested_representation(level, record.number_range)
        profile = {rep_id: stats.model_copy() for rep_id, stats in record.representation_profile.items()}

        used = list(attempt.representations_used) or list(self.plan_representations(record))
        solo = not attempt.help_requested
        for rep_id in dict.fromkeys(used):
            stats = profile.get(rep_id) or RepresentationStats()
            if solo:
                stats.solo_attempts += 1
                if attempt.correct:
                    stats.solo_correct += 1
            if attempt.correct:
                stats.consecutive_wrong = 0
                if solo:
                    stats.consecutive_correct += 1
                else:
                    # A helped success breaks the solo streak.
                    stats.consecutive_correct = 0
            else:
                stats.consecutive_wrong += 1
                stats.consecutive_correct = 0
            profile[rep_id] = stats

        new_level = level
        reason = None
        tested_stats = profile.get(tested)
        if tested_stats is not None:
            if tested_stats.consecutive_correct >= self.settings.solo_correct_to_fade:
                new_level = max(self.settings.min_level, level - 1)
                reason = f"{tested_stats.consecutive_correct} solo correct attempts with {tested}"
            elif tested_stats.consecutive_wrong >= self.settings.errors_to_support:
                new_level = min(self.settings.max_level, level + 1)
                reason = f"{tested_stats.consecutive_wrong} consecutive errors with {tested}"

        if reason is not None:
            # Streaks start over once the level has been evaluated.
            for stats in profile.values():
                stats.consecutive_correct = 0
                stats.consecutive_wrong = 0
            if new_level != level:
                _LOGGER.info(
                    "Representation level for %s: %d -> %d (%s)",
                    record.learner_id,
                    level,
                    new_level,
                    reason,
                )

        return RepresentationChange(
            previous_level=level,
            new_level=new_level,
            tested_representation=tested,
            profile=profile,
            reason=reason,
        )


__all__ = [
    "REPRESENTATION_PRIORITY",
    "RepresentationChange",
    "RepresentationPlanner",
    "representations_for_level",
    "tested_representation",
]
