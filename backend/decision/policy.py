"""
Decision policy: turns an EnvironmentState into one Action.

The variant is fixed at construction and dispatched through a table, so the
per-frame path is a single bound-method call.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from common.settings import PipelineSettings, PolicyVariant
from cv.types import Action, EnvironmentState
from decision.noise import PerlinNoise1D

logger = logging.getLogger(__name__)

IDLE = "idle"
FOCUS = "focus"

# Spreads candidates across the noise field so they do not move in lockstep.
CANDIDATE_OFFSET = 37.713


@dataclass(frozen=True)
class Candidate:
    kind: str
    target_id: Optional[int]
    score: float

    @property
    def noise_offset(self) -> float:
        if self.target_id is None:
            return 0.0
        return (self.target_id + 1) * CANDIDATE_OFFSET


def resolve_seed(seed: Optional[int]) -> int:
    """Explicit seeds pass through; ``None`` becomes a time-derived seed."""
    if seed is not None:
        return int(seed)
    derived = time.time_ns() & 0xFFFFFFFF
    logger.info("No policy seed configured; using time-derived seed %d", derived)
    return derived


def recency_factor(unseen: int) -> float:
    return 1.0 / (1 + unseen)


class DecisionPolicy:
    def __init__(
        self,
        variant: PolicyVariant = PolicyVariant.DETERMINISTIC,
        seed: Optional[int] = None,
        idle_score: float = 0.05,
        noise_amplitude: float = 0.25,
        noise_frequency: float = 0.1,
    ):
        self.variant = PolicyVariant(variant)
        self.seed = resolve_seed(seed)
        self.idle_score = idle_score
        self.noise_amplitude = noise_amplitude
        self.noise_frequency = noise_frequency
        self._rng = np.random.default_rng(self.seed)
        self._noise = PerlinNoise1D(self.seed)

        strategies: dict[PolicyVariant, Callable[[EnvironmentState, List[Candidate]], Candidate]] = {
            PolicyVariant.DETERMINISTIC: self._deterministic,
            PolicyVariant.WEIGHTED_RANDOM: self._weighted_random,
            PolicyVariant.NOISE_DRIVEN: self._noise_driven,
        }
        self._choose = strategies[self.variant]
        logger.info("Decision policy %s (seed=%d)", self.variant.value, self.seed)

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "DecisionPolicy":
        return cls(
            variant=settings.policy_variant,
            seed=settings.policy_seed,
            idle_score=settings.idle_score,
            noise_amplitude=settings.noise_amplitude,
            noise_frequency=settings.noise_frequency,
        )

    def candidates(self, state: EnvironmentState) -> List[Candidate]:
        options = [Candidate(IDLE, None, self.idle_score)]
        for entity_id, entity in state.entities.items():
            options.append(Candidate(FOCUS, entity_id, entity.confidence * recency_factor(entity.unseen)))
        return options

    def decide(self, state: EnvironmentState) -> Action:
        options = self.candidates(state)
        chosen = self._choose(state, options)
        return Action(
            sequence_id=state.sequence_id,
            kind=chosen.kind,
            target_id=chosen.target_id,
            score=float(chosen.score),
            variant=self.variant.value,
        )

    @staticmethod
    def _deterministic(state: EnvironmentState, options: List[Candidate]) -> Candidate:
        best = options[0]
        for option in options[1:]:
            if option.score > best.score:
                best = option
        return best

    def _weighted_random(self, state: EnvironmentState, options: List[Candidate]) -> Candidate:
        weights = np.array([max(option.score, 0.0) for option in options], dtype=np.float64)
        total = weights.sum()
        if total <= 0:
            return options[0]
        return options[int(self._rng.choice(len(options), p=weights / total))]

    def _noise_driven(self, state: EnvironmentState, options: List[Candidate]) -> Candidate:
        t = state.sequence_id * self.noise_frequency
        best, best_score = options[0], None
        for option in options:
            perturbed = option.score + self.noise_amplitude * self._noise(t + option.noise_offset)
            if best_score is None or perturbed > best_score:
                best, best_score = option, perturbed
        return best
