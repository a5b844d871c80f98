from typing import Any, Dict, Iterable, List, Optional

from blockfall.models import STATUS_FINISHED, STATUS_PLAYING


def build_leaderboard(snapshots: Iterable[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Rank session snapshots into live and best-score projections.

    Every playing session contributes a ``current`` entry and every session
    with a positive best score a ``highest`` entry, so a live player can
    appear twice. All lists are sorted by score, highest first.
    """
    current = []
    highest = []
    for s in snapshots:
        if s['status'] == STATUS_PLAYING:
            current.append({
                'id': f"{s['id']}_current",
                'session_id': s['id'],
                'nickname': s['nickname'],
                'score': s['current_score'],
                'current_score': s['current_score'],
                'highest_score': s['highest_score'],
                'status': s['status'],
                'started_at': s['started_at'],
                'duration': s['duration'],
                'is_current': True,
            })
        if s['highest_score'] > 0:
            highest.append({
                'id': f"{s['id']}_highest",
                'session_id': s['id'],
                'nickname': s['nickname'],
                'score': s['highest_score'],
                'current_score': s['current_score'],
                'highest_score': s['highest_score'],
                'status': s['status'],
                'ended_at': s['ended_at'],
                'duration': s['duration'] if s['status'] == STATUS_FINISHED else None,
                'is_current': False,
            })
    # sorted() is stable, so ties keep current entries ahead of best-score ones
    everything = sorted(current + highest, key=lambda e: e['score'], reverse=True)
    current.sort(key=lambda e: e['score'], reverse=True)
    highest.sort(key=lambda e: e['score'], reverse=True)
    return {'current': current, 'highest': highest, 'all': everything}


def rank_of(leaderboard: Dict[str, List[Dict[str, Any]]], session_id: str) -> Optional[int]:
    for position, entry in enumerate(leaderboard['all'], start=1):
        if entry['session_id'] == session_id:
            return position
    return None


def top(leaderboard: Dict[str, List[Dict[str, Any]]], n: int) -> List[Dict[str, Any]]:
    return leaderboard['all'][:n]
