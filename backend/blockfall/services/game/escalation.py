import random
from typing import Optional

BASE_PROBABILITY = 0.005
SCORE_STEP = 500
SCORE_STEP_BONUS = 0.02
MAX_SCORE_BONUS = 0.1
VIOLATION_BONUS = 0.05


def challenge_probability(score: int, speed_violations: float, base: float = BASE_PROBABILITY) -> float:
    score_bonus = min(MAX_SCORE_BONUS, (score // SCORE_STEP) * SCORE_STEP_BONUS)
    return base + score_bonus + speed_violations * VIOLATION_BONUS


class EscalationGate:
    """Decides, after an accepted action, whether to demand human verification."""

    def __init__(self, base_probability: float = BASE_PROBABILITY, rng: Optional[random.Random] = None):
        self.base_probability = base_probability
        self.rng = rng or random.SystemRandom()

    def should_challenge(self, score: int, speed_violations: float) -> bool:
        return self.rng.random() < challenge_probability(score, speed_violations, self.base_probability)
