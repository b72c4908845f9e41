"""Simulation utilities for evaluating the progression policy offline."""

from __future__ import annotations

import random
from collections import Counter, defaultdict
from dataclasses import dataclass
from statistics import mean
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from engine_settings import EngineSettings, get_settings
from engines.arithmetic import Task, is_identical
from engines.competency import mastered_ids
from engines.progression import GeneratedTask, ProgressionController, new_progression_record
from schemas import TaskAttempt

STRATEGIES = ("counting", "decomposition", "place_value", "retrieval")


@dataclass
class Persona:
    """Represents a simulated learner profile."""

    name: str
    accuracy_bias: float
    latency_bias: float
    help_bias: float


@dataclass
class EpisodeResult:
    """Outcome of a single generate/complete cycle."""

    persona: str
    step: int
    task: str
    competency_id: str
    predicted_success: float
    success: bool
    representation_level: int
    number_range: int
    repeated: bool
    degraded: bool
    error_type: Optional[str] = None


@dataclass
class SimulationMetrics:
    """Aggregated statistics for a persona across simulation episodes."""

    persona: str
    episodes: int
    accuracy: float
    mean_predicted_success: float
    immediate_repeats: int
    degraded_cycles: int
    final_representation_level: int
    final_number_range: int
    mastered_competencies: int
    competency_distribution: Dict[str, int]
    error_distribution: Dict[str, int]


AttemptModel = Callable[[random.Random, Persona, GeneratedTask], Tuple[bool, float, bool]]


class LearningSimulation:
    """Drive the progression controller with synthetic learners."""

    def __init__(
        self,
        *,
        settings: Optional[EngineSettings] = None,
        personas: Sequence[Persona] | None = None,
        random_seed: int | None = None,
        attempt_model: AttemptModel | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.personas: List[Persona] = list(personas) if personas is not None else [
            Persona(name="Novice", accuracy_bias=0.55, latency_bias=1.3, help_bias=0.5),
            Persona(name="FastAdvancer", accuracy_bias=0.9, latency_bias=0.7, help_bias=0.05),
            Persona(name="SlowSteady", accuracy_bias=0.7, latency_bias=1.5, help_bias=0.25),
        ]
        self.rng = random.Random(random_seed)
        self.attempt_model: AttemptModel = attempt_model or self._default_attempt_model
        self._mastered: Dict[str, int] = {}

    # ------------------------------------------------------------------
    def run(self, *, steps: int = 20) -> List[EpisodeResult]:
        """Simulate ``steps`` cycles for every persona."""

        results: List[EpisodeResult] = []
        for persona in self.personas:
            results.extend(self._simulate_persona(persona, steps=steps))
        return results

    # ------------------------------------------------------------------
    def summarise(self, episodes: Iterable[EpisodeResult]) -> List[SimulationMetrics]:
        """Aggregate metrics for reporting."""

        grouped: Dict[str, List[EpisodeResult]] = defaultdict(list)
        for episode in episodes:
            grouped[episode.persona].append(episode)

        summaries: List[SimulationMetrics] = []
        for persona, persona_episodes in grouped.items():
            last = persona_episodes[-1]
            summaries.append(
                SimulationMetrics(
                    persona=persona,
                    episodes=len(persona_episodes),
                    accuracy=mean(1.0 if ep.success else 0.0 for ep in persona_episodes),
                    mean_predicted_success=mean(ep.predicted_success for ep in persona_episodes),
                    immediate_repeats=sum(1 for ep in persona_episodes if ep.repeated),
                    degraded_cycles=sum(1 for ep in persona_episodes if ep.degraded),
                    final_representation_level=last.representation_level,
                    final_number_range=last.number_range,
                    mastered_competencies=self._mastered.get(persona, 0),
                    competency_distribution=dict(Counter(ep.competency_id for ep in persona_episodes)),
                    error_distribution=dict(Counter(ep.error_type for ep in persona_episodes if ep.error_type)),
                )
            )
        return summaries

    # ------------------------------------------------------------------
    def _simulate_persona(self, persona: Persona, *, steps: int) -> List[EpisodeResult]:
        controller = ProgressionController(self.settings, rng=random.Random(self.rng.getrandbits(32)))
        record = new_progression_record(f"sim-{persona.name}", settings=self.settings)
        attempts: List[TaskAttempt] = []
        previous: Optional[Task] = None
        results: List[EpisodeResult] = []
        window = self.settings.controller.recent_attempts_limit
        for step in range(steps):
            generated = controller.generate_next_task(record, attempts[-window:], previous)
            task = generated.task
            success, time_taken, help_requested = self.attempt_model(self.rng, persona, generated)
            attempt = TaskAttempt.from_task(
                task,
                correct=success,
                time_taken=time_taken,
                strategy=self._strategy(persona),
                given_answer=self._given_answer(task, success),
                representations_used=list(generated.representations),
                help_requested=help_requested,
            )
            completion = controller.complete_task(record, attempt, attempts[-window:])
            controller.mark_persisted()
            record = completion.updated_record
            results.append(
                EpisodeResult(
                    persona=persona.name,
                    step=step,
                    task=task.render(),
                    competency_id=task.competency_id,
                    predicted_success=generated.predicted_success_probability,
                    success=success,
                    representation_level=record.representation_level,
                    number_range=record.number_range,
                    repeated=is_identical(task, previous),
                    degraded=generated.degraded or bool(completion.diagnostics),
                    error_type=completion.attempt.error_type,
                )
            )
            attempts.append(completion.attempt)
            previous = task
        self._mastered[persona.name] = len(mastered_ids(record.competency_mastery))
        return results

    # ------------------------------------------------------------------
    def _strategy(self, persona: Persona) -> str:
        if persona.accuracy_bias >= 0.85 and self.rng.random() < 0.6:
            return "retrieval"
        return self.rng.choice(STRATEGIES)

    def _given_answer(self, task: Task, success: bool) -> int:
        expected = task.expected_input
        if success:
            return expected
        # Typical slips: miscounting by one or two, or losing a ten.
        offsets = [o for o in (-1, 1, -2, 2, -10, 10) if expected + o >= 0]
        return expected + self.rng.choice(offsets)

    # ------------------------------------------------------------------
    @staticmethod
    def _default_attempt_model(
        rng: random.Random,
        persona: Persona,
        generated: GeneratedTask,
    ) -> Tuple[bool, float, bool]:
        """Heuristic attempt model balancing persona bias, load and support."""

        support = 0.03 * len(generated.representations)
        effective_accuracy = (
            persona.accuracy_bias * 0.7
            + generated.predicted_success_probability * 0.2
            - (generated.cognitive_load - 0.5) * 0.2
            + support
        )
        effective_accuracy = max(0.05, min(0.95, effective_accuracy))
        help_requested = rng.random() < persona.help_bias * (1.0 - effective_accuracy)
        if help_requested:
            effective_accuracy = min(0.95, effective_accuracy + 0.1)
        success = rng.random() < effective_accuracy
        time_taken = max(1.0, rng.gauss(12.0, 3.0) * persona.latency_bias * (0.5 + generated.cognitive_load))
        return success, round(time_taken, 2), help_requested


__all__ = [
    "Persona",
    "EpisodeResult",
    "SimulationMetrics",
    "LearningSimulation",
]
