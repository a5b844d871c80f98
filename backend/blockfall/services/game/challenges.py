import logging
import random
import threading
import time
import uuid
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

# No 0/O, 1/I/l lookalikes
CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz23456789'
CODE_LENGTH = 4

IMAGE_WIDTH = 150
IMAGE_HEIGHT = 50
IMAGE_FONT_SIZE = 30


class Challenge:
    def __init__(self, challenge_id: str, session_id: str, code: str, created_at: float, expires_at: float):
        self.id = challenge_id
        self.session_id = session_id
        self.code = code
        self.created_at = created_at
        self.expires_at = expires_at

    def to_dict(self):
        return {'challenge_id': self.id, 'expires_at': self.expires_at}


class ChallengeStore:
    """Single-use human verification codes with a fixed time to live.

    The store issues, checks and expires codes; ``render_svg`` draws one for
    the player. Times are epoch seconds.
    """

    def __init__(self, ttl_sec: int = 120, clock: Callable[[], float] = time.time,
                 rng: Optional[random.Random] = None):
        self.ttl_sec = ttl_sec
        self.clock = clock
        self.rng = rng or random.SystemRandom()
        self._challenges: Dict[str, Challenge] = {}
        self._lock = threading.Lock()

    def create(self, session_id: str) -> Challenge:
        now = self.clock()
        code = ''.join(self.rng.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
        challenge = Challenge(f"challenge_{uuid.uuid4().hex[:16]}", session_id, code, now, now + self.ttl_sec)
        with self._lock:
            self._challenges[challenge.id] = challenge
        self.sweep_expired()
        return challenge

    def get(self, challenge_id: str) -> Optional[Challenge]:
        with self._lock:
            return self._challenges.get(challenge_id)

    def get_active(self, challenge_id: str) -> Optional[Challenge]:
        """Like ``get`` but treats an expired challenge as missing."""
        challenge = self.get(challenge_id)
        if challenge is None or self.clock() > challenge.expires_at:
            return None
        return challenge

    def verify(self, challenge_id: str, answer: str) -> Dict[str, object]:
        with self._lock:
            challenge = self._challenges.get(challenge_id)
            if not challenge:
                return {'valid': False, 'error': 'Challenge does not exist or has expired'}
            if self.clock() > challenge.expires_at:
                del self._challenges[challenge_id]
                return {'valid': False, 'error': 'Challenge has expired'}
            if (answer or '').strip().lower() != challenge.code.lower():
                return {'valid': False, 'error': 'Incorrect answer'}
            del self._challenges[challenge_id]
        return {'valid': True}

    def discard(self, challenge_id: Optional[str]) -> None:
        if not challenge_id:
            return
        with self._lock:
            self._challenges.pop(challenge_id, None)

    def sweep_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [cid for cid, c in self._challenges.items() if now > c.expires_at]
            for cid in expired:
                del self._challenges[cid]
        if expired:
            logger.info(f"[challenge-sweep] removed={len(expired)}")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)


def render_svg(code: str, rng: Optional[random.Random] = None) -> str:
    """Draw ``code`` as a small noisy SVG: one tilted glyph per character over grey lines and dots."""
    rng = rng or random.SystemRandom()
    width, height = IMAGE_WIDTH, IMAGE_HEIGHT
    parts = [
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{width}" height="{height}">',
        '<rect width="100%" height="100%" fill="white"/>',
    ]
    for _ in range(3):
        parts.append(
            f'<line x1="0" y1="{rng.uniform(0, height):.1f}" x2="{width}" y2="{rng.uniform(0, height):.1f}" '
            f'stroke="gray" stroke-width="1"/>'
        )
    parts.append(f'<text font-family="Arial" font-size="{IMAGE_FONT_SIZE}" fill="#333">')
    y = IMAGE_FONT_SIZE + 5
    for i, char in enumerate(code):
        x = 25 + i * 28
        angle = rng.uniform(-15, 15)
        parts.append(f'<tspan x="{x}" y="{y}" transform="rotate({angle:.1f}, {x}, {y})">{char}</tspan>')
    parts.append('</text>')
    for _ in range(3):
        parts.append(f'<circle cx="{rng.uniform(0, width):.1f}" cy="{rng.uniform(0, height):.1f}" r="2" fill="gray"/>')
    parts.append('</svg>')
    return ''.join(parts)
