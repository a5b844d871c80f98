import copy
import time
from typing import Any, Dict, List, Optional

BOARD_ROWS = 20
BOARD_COLS = 10
MAX_CELL_CODE = 7

STATUS_REGISTERED = 'registered'
STATUS_PLAYING = 'playing'
STATUS_FINISHED = 'finished'


def now_ms() -> int:
    return int(time.time() * 1000)


def empty_board() -> List[List[int]]:
    return [[0] * BOARD_COLS for _ in range(BOARD_ROWS)]


class PlayerSession:
    """Server-held state for one player, keyed by an opaque session id.

    Gameplay fields (sequence, timing, counters, board) are only meaningful
    while ``status == 'playing'`` and are rebuilt by ``reset_run()`` on every
    start. Identity, ``highest_score`` and ``history`` survive restarts.
    """

    def __init__(self, session_id: str, nickname: str, email: Optional[str] = None):
        self.id = session_id
        self.nickname = nickname
        self.email = email
        self.current_score = 0
        self.highest_score = 0
        self.status = STATUS_REGISTERED
        self.started_at: Optional[int] = None
        self.ended_at: Optional[int] = None
        self.history: List[Dict[str, Any]] = []
        self.clear_run()

    def clear_run(self) -> None:
        self.piece_sequence: List[Dict[str, Any]] = []
        self.piece_index = 0
        self.piece_issued_at: Optional[int] = None
        self.is_paused = False
        self.pause_started_at: Optional[int] = None
        self.speed_violations = 0.0
        self.pause_count = 0
        self.cheat_flag = False
        self.awaiting_challenge = False
        self.active_challenge_id: Optional[str] = None
        self.last_board: Optional[List[List[int]]] = None
        self.lines = 0
        self.level = 1
        self.game_state: Optional[Dict[str, Any]] = None

    def reset_for_login(self) -> None:
        self.current_score = 0
        self.status = STATUS_REGISTERED
        self.started_at = None
        self.ended_at = None
        self.clear_run()

    @property
    def pieces_ahead(self) -> int:
        return len(self.piece_sequence) - self.piece_index - 1

    def duration(self, now: int) -> Optional[int]:
        if not self.started_at:
            return None
        if self.ended_at:
            return self.ended_at - self.started_at
        if self.status == STATUS_PLAYING:
            return now - self.started_at
        return None

    def to_dict(self, now: Optional[int] = None) -> Dict[str, Any]:
        """Public summary; never includes email or the piece sequence."""
        return {
            'id': self.id,
            'nickname': self.nickname,
            'current_score': self.current_score,
            'highest_score': self.highest_score,
            'status': self.status,
            'started_at': self.started_at,
            'ended_at': self.ended_at,
            'duration': self.duration(now if now is not None else now_ms()),
            'is_paused': self.is_paused,
            'awaiting_challenge': self.awaiting_challenge,
            'cheat_flag': self.cheat_flag,
        }

    def snapshot(self, now: Optional[int] = None) -> Dict[str, Any]:
        """Deep copy used by broadcasts and rankings, taken under the session lock."""
        data = self.to_dict(now)
        data['piece_index'] = self.piece_index
        data['speed_violations'] = self.speed_violations
        data['pause_count'] = self.pause_count
        data['game_state'] = copy.deepcopy(self.game_state)
        return data

    def to_record(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'nickname': self.nickname,
            'email': self.email,
            'current_score': self.current_score,
            'highest_score': self.highest_score,
            'status': self.status,
            'started_at': self.started_at,
            'ended_at': self.ended_at,
            'history': list(self.history),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'PlayerSession':
        # Only finished-run data comes back; a restart never resumes a game
        session = cls(record['id'], record['nickname'], record.get('email'))
        session.highest_score = int(record.get('highest_score') or 0)
        session.history = list(record.get('history') or [])
        return session
