from bisect import bisect_right
from typing import NamedTuple, Sequence


class Tier(NamedTuple):
    score: int
    drop_interval: int
    level: int
    name: str

    def to_dict(self):
        return {'level': self.level, 'name': self.name, 'drop_interval': self.drop_interval}


# Sorted ascending by score threshold; intervals in ms never drop below 200
DIFFICULTY_TIERS = (
    Tier(0, 1000, 1, 'Novice'),
    Tier(500, 900, 2, 'Beginner'),
    Tier(1000, 800, 3, 'Intermediate'),
    Tier(2000, 700, 4, 'Advanced'),
    Tier(3000, 600, 5, 'Expert'),
    Tier(4000, 500, 6, 'Master'),
    Tier(5000, 450, 7, 'Grandmaster'),
    Tier(6000, 400, 8, 'Legend'),
    Tier(7000, 350, 9, 'Mythic'),
    Tier(8000, 300, 10, 'Supreme'),
    Tier(10000, 250, 11, 'Transcendent'),
    Tier(15000, 200, 12, 'Godlike'),
)

_THRESHOLDS = [t.score for t in DIFFICULTY_TIERS]


def tier_for_score(score: int, tiers: Sequence[Tier] = DIFFICULTY_TIERS) -> Tier:
    """Entry with the greatest threshold <= score; the lowest tier below the first threshold."""
    if tiers is DIFFICULTY_TIERS:
        thresholds = _THRESHOLDS
    else:
        thresholds = [t.score for t in tiers]
    idx = bisect_right(thresholds, score) - 1
    return tiers[max(idx, 0)]


def max_fall_time(score: int, tolerance_ratio: float, extra_tolerance_ms: int) -> float:
    return tier_for_score(score).drop_interval * (1 + tolerance_ratio) + extra_tolerance_ms
