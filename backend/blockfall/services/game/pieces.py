import random
import uuid
from typing import Any, Dict, List, Optional

# Board cell code of each kind is its position in this table plus one
TETROMINOES = [
    {'kind': 'I', 'color': '#00f0f0', 'shape': [[1, 1, 1, 1]]},
    {'kind': 'O', 'color': '#f0f000', 'shape': [[1, 1], [1, 1]]},
    {'kind': 'T', 'color': '#a000f0', 'shape': [[0, 1, 0], [1, 1, 1]]},
    {'kind': 'S', 'color': '#00f000', 'shape': [[0, 1, 1], [1, 1, 0]]},
    {'kind': 'Z', 'color': '#f00000', 'shape': [[1, 1, 0], [0, 1, 1]]},
    {'kind': 'J', 'color': '#0000f0', 'shape': [[1, 0, 0], [1, 1, 1]]},
    {'kind': 'L', 'color': '#f0a000', 'shape': [[0, 0, 1], [1, 1, 1]]},
]

INITIAL_BATCH = 50
REFILL_BATCH = 20
VISIBLE_WINDOW = 10
SPAWN_X = 3
SPAWN_Y = 0


class PieceGenerator:
    """Draws pieces uniformly from the seven tetrominoes.

    Defaults to ``random.SystemRandom``; tests pass a seeded ``random.Random``.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.SystemRandom()

    def piece(self) -> Dict[str, Any]:
        template = self.rng.choice(TETROMINOES)
        return {
            'id': f"{template['kind']}_{uuid.uuid4().hex[:12]}",
            'kind': template['kind'],
            'color': template['color'],
            'shape': [row[:] for row in template['shape']],
            'x': SPAWN_X,
            'y': SPAWN_Y,
        }

    def batch(self, count: int) -> List[Dict[str, Any]]:
        return [self.piece() for _ in range(count)]

    def ensure_lookahead(self, sequence: List[Dict[str, Any]], cursor: int) -> int:
        """Append a refill batch when fewer than VISIBLE_WINDOW pieces remain ahead of ``cursor``.

        Returns the number of pieces appended.
        """
        if len(sequence) - cursor - 1 >= VISIBLE_WINDOW:
            return 0
        sequence.extend(self.batch(REFILL_BATCH))
        return REFILL_BATCH


def visible_window(sequence: List[Dict[str, Any]], cursor: int = 0) -> List[Dict[str, Any]]:
    return [dict(p) for p in sequence[cursor:cursor + VISIBLE_WINDOW]]
