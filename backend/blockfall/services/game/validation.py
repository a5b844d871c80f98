"""Anti-cheat checks applied to everything a client submits.

Client data is advisory. The server re-derives what it can (elapsed time per
piece, rows cleared, score gained) and rejects what does not match. Counter
updates happen on the session passed in, so callers must hold that
session's lock.
"""
import logging
from typing import Any, Dict, List, Optional

from blockfall.errors import CheatDetected
from blockfall.models import BOARD_COLS, BOARD_ROWS, MAX_CELL_CODE, PlayerSession
from .difficulty import max_fall_time

logger = logging.getLogger(__name__)

# Points per simultaneous clear of 0..4 rows, multiplied by level
LINE_CLEAR_POINTS = (0, 100, 300, 500, 800)
# Advisory only: cells expected to disappear per cleared row
MIN_CELLS_PER_CLEARED_ROW = 5

TIMING_NORMAL = 'normal'
TIMING_SLOW = 'slow'
TIMING_PAUSE = 'pause'


class ValidationPolicy:
    def __init__(self, tolerance_ratio=0.5, extra_tolerance_ms=2000, suspicious_count=8,
                 max_pause_time_ms=30000, pause_tolerance=10, violation_decay=0.5):
        self.tolerance_ratio = float(tolerance_ratio)
        self.extra_tolerance_ms = int(extra_tolerance_ms)
        self.suspicious_count = int(suspicious_count)
        self.max_pause_time_ms = int(max_pause_time_ms)
        self.pause_tolerance = int(pause_tolerance)
        self.violation_decay = float(violation_decay)

    @classmethod
    def from_config(cls, config) -> 'ValidationPolicy':
        return cls(
            tolerance_ratio=config.get('TOLERANCE_RATIO', 0.5),
            extra_tolerance_ms=config.get('EXTRA_TOLERANCE_MS', 2000),
            suspicious_count=config.get('SUSPICIOUS_COUNT', 8),
            max_pause_time_ms=config.get('MAX_PAUSE_TIME_MS', 30000),
            pause_tolerance=config.get('PAUSE_TOLERANCE', 10),
        )


def classify_fall_time(elapsed: float, score: int, policy: ValidationPolicy) -> str:
    # Falling too fast is never flagged: soft and hard drops are legal input
    if elapsed >= policy.max_pause_time_ms:
        return TIMING_PAUSE
    if elapsed > max_fall_time(score, policy.tolerance_ratio, policy.extra_tolerance_ms):
        return TIMING_SLOW
    return TIMING_NORMAL


def check_piece_timing(session: PlayerSession, now: int, policy: ValidationPolicy) -> str:
    """Update the session's timing counters for one piece advance.

    Raises ``CheatDetected`` (and sets the sticky cheat flag) once the
    violation counter or the pause counter crosses its threshold.
    """
    elapsed = now - session.piece_issued_at
    verdict = classify_fall_time(elapsed, session.current_score, policy)

    if verdict == TIMING_NORMAL:
        if session.speed_violations > 0:
            session.speed_violations = max(0.0, session.speed_violations - policy.violation_decay)
        return verdict

    session.speed_violations += 1
    if verdict == TIMING_PAUSE:
        session.pause_count += 1
    logger.warning(
        f"[speed-violation] session={session.id} nickname={session.nickname} verdict={verdict} "
        f"elapsed={elapsed}ms violations={session.speed_violations}/{policy.suspicious_count} "
        f"pauses={session.pause_count}/{policy.pause_tolerance}"
    )

    if session.speed_violations >= policy.suspicious_count:
        session.cheat_flag = True
        logger.error(f"[cheat] session={session.id} reason=speed violations={session.speed_violations}")
        raise CheatDetected(f'Speed cheat detected after {session.speed_violations:g} slow pieces')
    if session.pause_count > policy.pause_tolerance:
        session.cheat_flag = True
        logger.error(f"[cheat] session={session.id} reason=pause pauses={session.pause_count}")
        raise CheatDetected('Game was stalled too many times')
    return verdict


def validate_board(board: Any) -> List[List[int]]:
    """Structural check: exactly 20x10 integer cells in [0, 7]."""
    if not isinstance(board, list) or len(board) != BOARD_ROWS:
        raise CheatDetected('Board has the wrong number of rows')
    for y, row in enumerate(board):
        if not isinstance(row, list) or len(row) != BOARD_COLS:
            raise CheatDetected(f'Board row {y} has the wrong number of columns')
        for x, cell in enumerate(row):
            if isinstance(cell, bool) or not isinstance(cell, int) or not 0 <= cell <= MAX_CELL_CODE:
                raise CheatDetected(f'Invalid cell value at [{y}][{x}]: {cell!r}')
    return board


def count_full_rows(board: Optional[List[List[int]]]) -> int:
    if not board:
        return 0
    return sum(1 for row in board if all(cell != 0 for cell in row))


def count_occupied(board: Optional[List[List[int]]]) -> int:
    if not board:
        return 0
    return sum(1 for row in board for cell in row if cell != 0)


def estimate_rows_from_delta(delta: int, level: int) -> int:
    for rows in range(len(LINE_CLEAR_POINTS) - 1, 0, -1):
        if delta >= LINE_CLEAR_POINTS[rows] * level:
            return rows
    return 0


def validate_score(session: PlayerSession, reported_score: Any, new_board: List[List[int]]) -> Dict[str, int]:
    """Check the reported score against the rows that were full on the stored board.

    Returns the derived figures; raises ``CheatDetected`` when the reported
    score differs from ``previous + points[full_rows] * level``.
    """
    previous_score = session.current_score
    level = session.level
    full_rows = count_full_rows(session.last_board)
    expected = previous_score + LINE_CLEAR_POINTS[min(full_rows, 4)] * level

    if isinstance(reported_score, bool) or not isinstance(reported_score, int) or reported_score != expected:
        logger.warning(
            f"[score-mismatch] session={session.id} previous={previous_score} reported={reported_score} "
            f"expected={expected} full_rows={full_rows} level={level}"
        )
        raise CheatDetected(f'Score mismatch: expected {expected}, got {reported_score}')

    delta = reported_score - previous_score
    estimated_rows = estimate_rows_from_delta(delta, level)
    cells_removed = count_occupied(session.last_board) - count_occupied(new_board)
    if estimated_rows > 0 and cells_removed < estimated_rows * MIN_CELLS_PER_CLEARED_ROW:
        # New pieces may already sit on the board, so this is never a rejection
        logger.warning(
            f"[block-count] session={session.id} estimated_rows={estimated_rows} cells_removed={cells_removed}"
        )

    return {'expected_score': expected, 'full_rows': full_rows, 'level': level, 'cells_removed': cells_removed}
