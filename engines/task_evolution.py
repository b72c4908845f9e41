"""Genetic evolution of arithmetic practice tasks.

A small population of candidate tasks is evolved for a fixed number of
generations. Fitness rewards tasks whose implied difficulty sits in the
learner's ZPD band, that differ from recently practised tasks, that cover
competencies still to be learned, that balance the placeholder positions
and whose cognitive load is near the target. Every offspring re-derives
its answer and is discarded when it is not a valid task in its number
range; nothing is repaired.
"""

from __future__ import annotations

import dataclasses
import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from engine_settings import EngineSettings, EvolutionSettings, get_settings
from engines.arithmetic import (
    PLACEHOLDER_POSITIONS,
    Task,
    compute_answer,
    estimate_difficulty,
    is_identical,
    validate_task,
)
from engines.competency import unlocked_competencies
from engines.didactics import DidacticAnalyzer, ZPDBand, competency_error_rates
from engines.memory import MemoryConsolidator
from engines.validation import ArithmeticIntegrityError
from schemas import LearnerProgressionRecord, TaskAttempt

_LOGGER = logging.getLogger(__name__)

SAFE_TEMPLATES: Dict[int, Tuple[Tuple[int, int, str], ...]] = {
    20: ((3, 4, "+"), (6, 2, "-"), (5, 5, "+"), (9, 3, "-"), (7, 8, "+"), (12, 5, "-")),
    100: ((23, 14, "+"), (45, 12, "-"), (30, 40, "+"), (67, 25, "-"), (38, 27, "+"), (81, 36, "-")),
}

# Operative patterns used to seed the population from the previous task.
OPERATIVE_PATTERNS: Dict[str, float] = {
    "neighbor-tasks": 0.7,
    "reversal": 0.6,
    "sum-constancy": 0.8,
    "inverse-problems": 0.8,
    "decade-transition": 0.9,
    "analogy": 0.85,
}


@dataclass
class TaskCandidate:
    """Genome for one candidate task plus its last computed fitness."""

    task: Task
    answer: int
    representations: Tuple[str, ...] = ()
    fitness: float = 0.0
    origin: str = "random"

    @property
    def signature(self) -> Tuple[int, int, str, str]:
        return self.task.signature


@dataclass
class EvolutionResult:
    candidates: List[TaskCandidate]
    generations: int
    evaluated: int
    discarded: int
    refills: int = 0

    @property
    def best(self) -> TaskCandidate:
        return self.candidates[0]


@dataclass
class _FitnessContext:
    zpd: ZPDBand
    load_target: float
    representations: Tuple[str, ...]
    recent_tasks: List[Task]
    error_rates: Dict[str, float]
    placeholder_counts: Counter
    placeholder_readiness: float
    mastered: set
    unlocked: set
    attempts_by_competency: Dict[str, int]
    recall: Dict[str, float] = field(default_factory=dict)


class TaskEvolutionEngine:
    """Evolve a ranked set of novel candidate tasks for one learner.

    Parameters
    ----------
    settings:
        Engine settings; the ``evolution`` section controls population
        size, generations, selection pressure and fitness weights.
    rng:
        Random source. A seeded :class:`random.Random` makes runs
        reproducible; instances are never shared between learners.
    analyzer:
        Didactic analyzer used for cognitive load estimates.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        *,
        rng: Optional[random.Random] = None,
        analyzer: Optional[DidacticAnalyzer] = None,
    ) -> None:
        self.engine_settings = settings or get_settings()
        self.settings: EvolutionSettings = self.engine_settings.evolution
        self.rng = rng or random.Random(self.settings.seed)
        self.analyzer = analyzer or DidacticAnalyzer(self.engine_settings)

    # ----- public API --------------------------------------------------
    def evolve(
        self,
        zpd: ZPDBand,
        load_target: float,
        history: Sequence[TaskAttempt],
        representations: Sequence[str],
        *,
        record: LearnerProgressionRecord,
        previous_task: Optional[Task] = None,
        seed_population: Iterable[Task] = (),
        placeholder_readiness: float = 0.5,
    ) -> EvolutionResult:
        """Run the genetic loop and return distinct candidates, best first.

        Candidates identical to ``previous_task`` are never returned.
        """
        cfg = self.settings
        number_range = record.number_range
        context = self._build_context(
            zpd, load_target, history, tuple(representations), record, placeholder_readiness
        )
        reps = tuple(representations)
        cache: Dict[Tuple[int, int, str, str], float] = {}
        discarded = 0
        refills = 0

        population = self._seed_population(number_range, reps, previous_task, seed_population)
        for _ in range(cfg.generations):
            for candidate in population:
                candidate.fitness = self._cached_fitness(candidate, context, cache)
            ranked = sorted(population, key=lambda c: c.fitness, reverse=True)

            elite_count = max(1, int(round(cfg.elitism * cfg.population_size)))
            next_population = [dataclasses.replace(c) for c in ranked[:elite_count]]
            max_attempts = cfg.population_size * cfg.breeding_attempt_factor
            attempts = 0
            while len(next_population) < cfg.population_size and attempts < max_attempts:
                attempts += 1
                first = self._tournament(ranked)
                second = self._tournament(ranked)
                if self.rng.random() < cfg.crossover_rate:
                    child = self.crossover(first, second)
                else:
                    child = dataclasses.replace(first, origin="clone")
                if child is not None and self.rng.random() < cfg.mutation_rate:
                    child = self.mutate(child)
                if child is None:
                    discarded += 1
                    continue
                next_population.append(child)

            if len(next_population) < 2:
                refills += 1
                next_population.extend(self._template_candidates(number_range, reps))
            population = next_population

        for candidate in population:
            candidate.fitness = self._cached_fitness(candidate, context, cache)
        ranked = sorted(population, key=lambda c: c.fitness, reverse=True)

        seen = set()
        distinct: List[TaskCandidate] = []
        for candidate in ranked:
            if candidate.signature in seen or is_identical(candidate.task, previous_task):
                continue
            seen.add(candidate.signature)
            distinct.append(candidate)
        if not distinct:
            fallback = self.safe_template(number_range, previous_task, reps)
            fallback.fitness = self._cached_fitness(fallback, context, cache)
            distinct.append(fallback)

        _LOGGER.debug(
            "Evolution finished: %d distinct candidates, %d evaluations, %d discarded",
            len(distinct),
            len(cache),
            discarded,
        )
        return EvolutionResult(
            candidates=distinct,
            generations=cfg.generations,
            evaluated=len(cache),
            discarded=discarded,
            refills=refills,
        )

    def select_novel(
        self,
        candidates: Sequence[TaskCandidate],
        previous_task: Optional[Task],
        representations: Sequence[str] = (),
    ) -> TaskCandidate:
        """Return the first candidate that differs from ``previous_task``.

        At most ``max_retries`` candidates are inspected; after that a safe
        template that differs from the previous task is used.
        """
        for retry, candidate in enumerate(candidates):
            if retry >= self.settings.max_retries:
                break
            if not is_identical(candidate.task, previous_task):
                return candidate
        if candidates:
            number_range = candidates[0].task.number_range
        else:
            number_range = previous_task.number_range if previous_task is not None else 20
        _LOGGER.warning("No novel candidate within %d retries; using safe template", self.settings.max_retries)
        return self.safe_template(number_range, previous_task, tuple(representations))

    def fitness(
        self,
        candidate: TaskCandidate,
        *,
        zpd: ZPDBand,
        load_target: float,
        history: Sequence[TaskAttempt],
        record: LearnerProgressionRecord,
        placeholder_readiness: float = 0.5,
    ) -> float:
        context = self._build_context(
            zpd, load_target, history, candidate.representations, record, placeholder_readiness
        )
        return self._fitness(candidate, context)

    def crossover(self, first: TaskCandidate, second: TaskCandidate) -> Optional[TaskCandidate]:
        """Uniform gene crossover; returns None when the child is not a valid task."""
        operand1 = self._pick(first.task.operand1, second.task.operand1)
        operand2 = self._pick(first.task.operand2, second.task.operand2)
        operation = self._pick(first.task.operation, second.task.operation)
        placeholder = self._pick(first.task.placeholder_position, second.task.placeholder_position)
        return self._make_candidate(
            operand1,
            operand2,
            operation,
            first.task.number_range,
            placeholder,
            first.representations,
            origin="crossover",
        )

    def mutate(self, candidate: TaskCandidate) -> Optional[TaskCandidate]:
        """Change one gene; returns None when the mutant is not a valid task."""
        task = candidate.task
        operand1, operand2 = task.operand1, task.operand2
        operation, placeholder = task.operation, task.placeholder_position
        gene = self.rng.randrange(4)
        step = self.rng.choice((-3, -2, -1, 1, 2, 3))
        if gene == 0:
            operand1 += step
        elif gene == 1:
            operand2 += step
        elif gene == 2:
            operation = "-" if operation == "+" else "+"
        else:
            placeholder = self.rng.choice([p for p in PLACEHOLDER_POSITIONS if p != placeholder])
        return self._make_candidate(
            operand1,
            operand2,
            operation,
            task.number_range,
            placeholder,
            candidate.representations,
            origin="mutation",
        )

    def safe_template(
        self,
        number_range: int,
        previous_task: Optional[Task],
        representations: Tuple[str, ...] = (),
    ) -> TaskCandidate:
        """Deterministic fallback task that never repeats ``previous_task``."""
        for candidate in self._template_candidates(number_range, representations):
            if not is_identical(candidate.task, previous_task):
                return candidate
        raise ArithmeticIntegrityError(f"No safe template available for number range {number_range}")

    # ----- population --------------------------------------------------
    def _seed_population(
        self,
        number_range: int,
        representations: Tuple[str, ...],
        previous_task: Optional[Task],
        seed_population: Iterable[Task],
    ) -> List[TaskCandidate]:
        population: List[TaskCandidate] = []
        for task in seed_population:
            candidate = self._from_task(task, representations, origin="seed")
            if candidate is not None:
                population.append(candidate)
        if previous_task is not None and previous_task.number_range == number_range:
            variants = sorted(
                operative_variants(previous_task),
                key=lambda item: OPERATIVE_PATTERNS.get(item[0], 0.0),
                reverse=True,
            )
            for name, task in variants:
                candidate = self._from_task(task, representations, origin=name)
                if candidate is not None:
                    population.append(candidate)
        population = population[: self.settings.population_size // 2]
        while len(population) < self.settings.population_size:
            population.append(self._random_candidate(number_range, representations))
        return population

    def _random_candidate(self, number_range: int, representations: Tuple[str, ...]) -> TaskCandidate:
        operation = self.rng.choice(("+", "-"))
        if operation == "+":
            operand1 = self.rng.randint(1, number_range - 1)
            operand2 = self.rng.randint(1, number_range - operand1)
        else:
            operand1 = self.rng.randint(2, number_range)
            upper = number_range if self.settings.allow_negative_results else operand1
            operand2 = self.rng.randint(1, upper)
        placeholder = self.rng.choices(PLACEHOLDER_POSITIONS, weights=(0.25, 0.25, 0.5))[0]
        task = Task(operand1, operand2, operation, number_range, placeholder)
        return TaskCandidate(
            task=task,
            answer=task.correct_answer,
            representations=representations,
            origin="random",
        )

    def _template_candidates(self, number_range: int, representations: Tuple[str, ...]) -> List[TaskCandidate]:
        templates = SAFE_TEMPLATES.get(number_range, SAFE_TEMPLATES[20])
        candidates = []
        for operand1, operand2, operation in templates:
            candidate = self._make_candidate(
                operand1, operand2, operation, number_range, "end", representations, origin="template"
            )
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    def _from_task(self, task: Task, representations: Tuple[str, ...], origin: str) -> Optional[TaskCandidate]:
        return self._make_candidate(
            task.operand1,
            task.operand2,
            task.operation,
            task.number_range,
            task.placeholder_position,
            representations,
            origin=origin,
        )

    def _make_candidate(
        self,
        operand1: int,
        operand2: int,
        operation: str,
        number_range: int,
        placeholder: str,
        representations: Tuple[str, ...],
        *,
        origin: str,
    ) -> Optional[TaskCandidate]:
        task = Task(operand1, operand2, operation, number_range, placeholder)
        try:
            answer = compute_answer(operand1, operand2, operation)
            validate_task(
                task,
                claimed_answer=answer,
                allow_negative=self.settings.allow_negative_results,
            )
        except ArithmeticIntegrityError:
            return None
        return TaskCandidate(task=task, answer=answer, representations=representations, origin=origin)

    def _pick(self, first, second):
        return first if self.rng.random() < 0.5 else second

    def _tournament(self, ranked: Sequence[TaskCandidate]) -> TaskCandidate:
        size = min(self.settings.tournament_size, len(ranked))
        contenders = self.rng.sample(list(ranked), size)
        return max(contenders, key=lambda c: c.fitness)

    # ----- fitness -----------------------------------------------------
    def _build_context(
        self,
        zpd: ZPDBand,
        load_target: float,
        history: Sequence[TaskAttempt],
        representations: Tuple[str, ...],
        record: LearnerProgressionRecord,
        placeholder_readiness: float,
    ) -> _FitnessContext:
        window = list(history)[-self.settings.novelty_window:]
        recent_tasks = [attempt.to_task() for attempt in window]
        mastered = {cid for cid, entry in record.competency_mastery.items() if entry.mastered}
        competencies = {task.competency_id for task in recent_tasks}
        recall = {
            cid: MemoryConsolidator.recall_strength(record.memory_traces, cid) for cid in competencies
        }
        return _FitnessContext(
            zpd=zpd,
            load_target=load_target,
            representations=representations,
            recent_tasks=recent_tasks,
            error_rates=competency_error_rates(history),
            placeholder_counts=Counter(task.placeholder_position for task in recent_tasks),
            placeholder_readiness=max(0.0, min(1.0, float(placeholder_readiness))),
            mastered=mastered,
            unlocked=set(unlocked_competencies(record, record.number_range)),
            attempts_by_competency={
                cid: entry.attempts for cid, entry in record.competency_mastery.items()
            },
            recall=recall,
        )

    def _cached_fitness(
        self,
        candidate: TaskCandidate,
        context: _FitnessContext,
        cache: Dict[Tuple[int, int, str, str], float],
    ) -> float:
        key = candidate.signature
        if key not in cache:
            cache[key] = self._fitness(candidate, context)
        return cache[key]

    def _fitness(self, candidate: TaskCandidate, context: _FitnessContext) -> float:
        weights = self.settings.fitness
        task = candidate.task
        scores = (
            (weights.difficulty, self._difficulty_score(task, context)),
            (weights.novelty, self._novelty_score(task, context)),
            (weights.coverage, self._coverage_score(task, context)),
            (weights.placeholder_balance, self._placeholder_score(task, context)),
            (weights.load, self._load_score(task, context)),
        )
        total_weight = sum(weight for weight, _ in scores)
        return sum(weight * score for weight, score in scores) / total_weight

    @staticmethod
    def _difficulty_score(task: Task, context: _FitnessContext) -> float:
        distance = abs(estimate_difficulty(task) - context.zpd.center)
        scale = max(context.zpd.width, 0.1)
        return max(0.0, 1.0 - distance / scale)

    def _novelty_score(self, task: Task, context: _FitnessContext) -> float:
        penalty = 0.0
        window = max(1, self.settings.novelty_window)
        for age, previous in enumerate(reversed(context.recent_tasks)):
            recency = 1.0 - 0.5 * age / window
            if previous.signature == task.signature:
                similarity = 1.0
            elif previous.operation == task.operation and {previous.operand1, previous.operand2} == {
                task.operand1,
                task.operand2,
            }:
                similarity = 0.7
            elif (
                previous.operation == task.operation
                and abs(previous.operand1 - task.operand1) + abs(previous.operand2 - task.operand2) <= 2
            ):
                similarity = 0.4
            else:
                continue
            penalty = max(penalty, similarity * recency)
        return 1.0 - penalty

    @staticmethod
    def _coverage_score(task: Task, context: _FitnessContext) -> float:
        competency_id = task.competency_id
        if competency_id in context.mastered:
            score = 0.3
        elif competency_id in context.unlocked:
            score = 1.0
        else:
            score = 0.5
        attempts = context.attempts_by_competency.get(competency_id, 0)
        score *= 1.0 - 0.3 * attempts / (attempts + 10)
        # Weakly consolidated competencies are worth revisiting.
        score += 0.2 * (1.0 - context.recall.get(competency_id, 0.5))
        return max(0.0, min(1.0, score))

    @staticmethod
    def _placeholder_score(task: Task, context: _FitnessContext) -> float:
        total = sum(context.placeholder_counts.values())
        if total == 0:
            share = 1.0 / len(PLACEHOLDER_POSITIONS)
        else:
            share = context.placeholder_counts.get(task.placeholder_position, 0) / total
        score = 1.0 - share
        if task.placeholder_position != "end":
            score *= 0.5 + 0.5 * context.placeholder_readiness
        return score

    def _load_score(self, task: Task, context: _FitnessContext) -> float:
        load = self.analyzer.analyze_cognitive_load(
            task,
            representation_count=len(context.representations) or None,
            error_rates=context.error_rates,
        ).total
        return max(0.0, 1.0 - abs(load - context.load_target) * 2)


def operative_variants(task: Task) -> List[Tuple[str, Task]]:
    """Tasks related to ``task`` by an operative pattern (not yet validated)."""
    a, b, op = task.operand1, task.operand2, task.operation
    number_range, placeholder = task.number_range, task.placeholder_position
    result = task.correct_answer
    variants = [
        ("neighbor-tasks", Task(a, b + 1, op, number_range, placeholder)),
        ("neighbor-tasks", Task(a, b - 1, op, number_range, placeholder)),
    ]
    # Sum stays constant for +, difference stays constant for -.
    shifted = b - 1 if op == "+" else b + 1
    variants.append(("sum-constancy", Task(a + 1, shifted, op, number_range, placeholder)))
    if op == "+":
        variants.append(("reversal", Task(b, a, "+", number_range, placeholder)))
        variants.append(("inverse-problems", Task(result, b, "-", number_range, "end")))
    else:
        variants.append(("inverse-problems", Task(result, b, "+", number_range, "end")))
    ones = a % 10
    if ones:
        # Choose the second operand so the task just crosses the ten.
        crossing = 10 - ones + 1 if op == "+" else ones + 1
        variants.append(("decade-transition", Task(a, crossing, op, number_range, placeholder)))
    if number_range == 100:
        variants.append(("analogy", Task(a + 10, b, op, number_range, placeholder)))
    return variants


__all__ = [
    "EvolutionResult",
    "OPERATIVE_PATTERNS",
    "SAFE_TEMPLATES",
    "TaskCandidate",
    "TaskEvolutionEngine",
    "operative_variants",
]
