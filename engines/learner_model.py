"""Layered learner model with reward-modulated Hebbian updates.

The model maps the 24-entry learner state through a 12-unit hidden layer to
8 action dimensions that steer scaffolding and pacing. It is not trained by
gradient descent; after each outcome the co-activation of connected units
strengthens or weakens the connection, and every weight stays inside a
fixed clamp range.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from engine_settings import EngineSettings, LearnerModelSettings, get_settings
from engines.validation import ValidationError, validate_matrix, validate_vector
from schemas import HIDDEN_SIZE, INPUT_SIZE, OUTPUT_SIZE, ActivationState, NetworkWeights

_LOGGER = logging.getLogger(__name__)

# Action vector layout
DIFFICULTY_ADJUSTMENT = 0
SCAFFOLDING = 1
PACING = 2
FEEDBACK_STYLE = 3
VISUAL_SCAFFOLD = 4
STRATEGIC_SCAFFOLD = 5
PLACEHOLDER_READINESS = 6
CHALLENGE = 7

ACTION_NAMES = (
    "difficulty_adjustment",
    "scaffolding",
    "pacing",
    "feedback_style",
    "visual_scaffold",
    "strategic_scaffold",
    "placeholder_readiness",
    "challenge",
)


def sigmoid(values: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-values))


@dataclass(frozen=True)
class Weights:
    input_hidden: np.ndarray
    hidden_output: np.ndarray

    @classmethod
    def from_schema(cls, weights: NetworkWeights) -> "Weights":
        return cls(
            input_hidden=validate_matrix(weights.input_hidden, (INPUT_SIZE, HIDDEN_SIZE), "input_hidden"),
            hidden_output=validate_matrix(weights.hidden_output, (HIDDEN_SIZE, OUTPUT_SIZE), "hidden_output"),
        )

    def to_schema(self) -> NetworkWeights:
        return NetworkWeights(
            input_hidden=self.input_hidden.tolist(),
            hidden_output=self.hidden_output.tolist(),
        )

    def max_abs(self) -> float:
        return float(max(np.abs(self.input_hidden).max(), np.abs(self.hidden_output).max()))


@dataclass(frozen=True)
class Activations:
    input: np.ndarray
    hidden: np.ndarray
    output: np.ndarray

    def to_schema(self) -> ActivationState:
        return ActivationState(
            input=np.clip(self.input, 0.0, 1.0).tolist(),
            hidden=self.hidden.tolist(),
            output=self.output.tolist(),
        )


class LearnerModel:
    """Forward pass and Hebbian update over fixed-shape weight matrices.

    Parameters
    ----------
    settings:
        Engine settings; only the ``learner_model`` section is used. The
        learning rate, clamp range, reward and penalty magnitudes and the
        optional weight decay are read from there.
    """

    def __init__(self, settings: Optional[EngineSettings] = None) -> None:
        self.settings: LearnerModelSettings = (settings or get_settings()).learner_model

    # ----- public API --------------------------------------------------
    def initial_weights(self, seed: Optional[int] = None) -> Weights:
        """Deterministic small weights for a freshly enrolled learner."""
        rng = np.random.default_rng(self.settings.init_seed if seed is None else seed)
        scale = self.settings.init_scale
        return Weights(
            input_hidden=rng.uniform(-scale, scale, size=(INPUT_SIZE, HIDDEN_SIZE)),
            hidden_output=rng.uniform(-scale, scale, size=(HIDDEN_SIZE, OUTPUT_SIZE)),
        )

    def activations(self, state: Sequence[float], weights: Weights) -> Activations:
        x = validate_vector(state, INPUT_SIZE, "state vector")
        w1, w2 = self._checked(weights)
        hidden = sigmoid(x @ w1)
        output = sigmoid(hidden @ w2)
        return Activations(input=x, hidden=hidden, output=output)

    def forward(self, state: Sequence[float], weights: Weights) -> np.ndarray:
        """Return the 8-entry action vector for ``state``."""
        return self.activations(state, weights).output

    def update(
        self,
        state: Sequence[float],
        actions: Sequence[float],
        outcome: bool,
        weights: Weights,
    ) -> Weights:
        """Apply one Hebbian step and return new, clamped weights.

        A correct outcome reinforces co-active connections and weakens the
        connections feeding the scaffolding output; an incorrect outcome
        does the opposite. The input arrays are never modified.
        """
        x = validate_vector(state, INPUT_SIZE, "state vector")
        a = validate_vector(actions, OUTPUT_SIZE, "action vector")
        w1, w2 = self._checked(weights)

        cfg = self.settings
        reward = cfg.reward_correct if outcome else -cfg.penalty_incorrect
        hidden = sigmoid(x @ w1)

        delta_w1 = cfg.learning_rate * reward * np.outer(x, hidden)
        delta_w2 = cfg.learning_rate * reward * np.outer(hidden, a)
        delta_w2[:, SCAFFOLDING] *= -1.0

        new_w1 = w1 * (1.0 - cfg.weight_decay) + delta_w1
        new_w2 = w2 * (1.0 - cfg.weight_decay) + delta_w2
        limit = cfg.weight_clamp
        updated = Weights(
            input_hidden=np.clip(new_w1, -limit, limit),
            hidden_output=np.clip(new_w2, -limit, limit),
        )
        _LOGGER.debug(
            "Hebbian update reward=%.2f max|w|=%.3f", reward, updated.max_abs()
        )
        return updated

    # ----- helpers -----------------------------------------------------
    def _checked(self, weights: Weights) -> tuple[np.ndarray, np.ndarray]:
        if not isinstance(weights, Weights):
            raise ValidationError("weights must be a Weights instance")
        w1 = validate_matrix(weights.input_hidden, (INPUT_SIZE, HIDDEN_SIZE), "input_hidden")
        w2 = validate_matrix(weights.hidden_output, (HIDDEN_SIZE, OUTPUT_SIZE), "hidden_output")
        return w1, w2


__all__ = [
    "ACTION_NAMES",
    "Activations",
    "LearnerModel",
    "Weights",
    "sigmoid",
    "DIFFICULTY_ADJUSTMENT",
    "SCAFFOLDING",
    "PACING",
    "FEEDBACK_STYLE",
    "VISUAL_SCAFFOLD",
    "STRATEGIC_SCAFFOLD",
    "PLACEHOLDER_READINESS",
    "CHALLENGE",
]
