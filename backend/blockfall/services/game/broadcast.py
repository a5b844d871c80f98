"""Fan-out of session and ranking changes to connected sockets.

The hub keeps its own map of socket id -> connection context (player or
admin, bound session, watched sessions). It is registered as a registry
listener and only ever receives snapshots, so emitting never holds a
session lock.
"""
import logging
import threading
from typing import Any, Dict, List, Optional, Set

from .leaderboard import rank_of

logger = logging.getLogger(__name__)

ROLE_PLAYER = 'player'
ROLE_ADMIN = 'admin'


class BroadcastHub:
    def __init__(self, socketio, registry, namespace: str = '/ws', top_n: int = 10):
        self.socketio = socketio
        self.registry = registry
        self.namespace = namespace
        self.top_n = top_n
        self._connections: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    # ---- connection bookkeeping ----

    def attach_admin(self, sid: str) -> None:
        with self._lock:
            self._connections[sid] = {'role': ROLE_ADMIN, 'session_id': None, 'subscriptions': set()}

    def attach_player(self, sid: str, session_id: str) -> None:
        with self._lock:
            self._connections[sid] = {'role': ROLE_PLAYER, 'session_id': session_id, 'subscriptions': set()}

    def detach(self, sid: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._connections.pop(sid, None)

    def context(self, sid: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            ctx = self._connections.get(sid)
            return dict(ctx, subscriptions=set(ctx['subscriptions'])) if ctx else None

    def subscribe(self, sid: str, session_id: str) -> bool:
        with self._lock:
            ctx = self._connections.get(sid)
            if not ctx or ctx['role'] != ROLE_ADMIN:
                return False
            ctx['subscriptions'].add(session_id)
        logger.info(f"[subscribe] sid={sid} session={session_id}")
        return True

    def unsubscribe(self, sid: str, session_id: str) -> bool:
        with self._lock:
            ctx = self._connections.get(sid)
            if not ctx or session_id not in ctx['subscriptions']:
                return False
            ctx['subscriptions'].discard(session_id)
        logger.info(f"[unsubscribe] sid={sid} session={session_id}")
        return True

    def _admin_sids(self) -> List[str]:
        with self._lock:
            return [sid for sid, ctx in self._connections.items() if ctx['role'] == ROLE_ADMIN]

    def _watcher_sids(self, session_id: str) -> List[str]:
        with self._lock:
            return [sid for sid, ctx in self._connections.items()
                    if ctx['role'] == ROLE_ADMIN and session_id in ctx['subscriptions']]

    def _player_sids(self, session_id: Optional[str] = None) -> List[Any]:
        with self._lock:
            return [(sid, ctx['session_id']) for sid, ctx in self._connections.items()
                    if ctx['role'] == ROLE_PLAYER and (session_id is None or ctx['session_id'] == session_id)]

    def has_player(self, session_id: str) -> bool:
        return bool(self._player_sids(session_id))

    def _emit(self, event: str, payload: Dict[str, Any], sid: str) -> None:
        self.socketio.emit(event, payload, to=sid, namespace=self.namespace)

    # ---- registry listener interface ----

    def session_changed(self, snapshot: Dict[str, Any]) -> None:
        payload = {
            'session_id': snapshot['id'],
            'player': {k: v for k, v in snapshot.items() if k != 'game_state'},
            'game_state': snapshot.get('game_state'),
        }
        for sid in self._watcher_sids(snapshot['id']):
            self._emit('game_state_update', payload, sid)

    def rankings_changed(self) -> None:
        leaderboard = self.registry.leaderboard()
        admin_payload = {'leaderboard': leaderboard, 'players': self.registry.playing()}
        for sid in self._admin_sids():
            self._emit('leaderboard_update', admin_payload, sid)
        top = leaderboard['all'][:self.top_n]
        for sid, session_id in self._player_sids():
            self._emit('rank_update', {'rank': rank_of(leaderboard, session_id), 'leaderboard': top}, sid)

    def notify_player(self, session_id: str, event: str, payload: Dict[str, Any]) -> None:
        for sid, _ in self._player_sids(session_id):
            self._emit(event, payload, sid)

    def notify_admins(self, event: str, payload: Dict[str, Any]) -> None:
        for sid in self._admin_sids():
            self._emit(event, payload, sid)

    # ---- periodic ----

    def tick_durations(self) -> int:
        """Push elapsed play time to admins and to each playing player's sockets."""
        playing = {p['id']: p for p in self.registry.playing()}
        if not playing:
            return 0
        summary = [
            {'session_id': p['id'], 'nickname': p['nickname'], 'duration': p['duration'], 'score': p['current_score']}
            for p in playing.values()
        ]
        self.notify_admins('duration_update', {'players': summary})
        sent = 0
        for sid, session_id in self._player_sids():
            player = playing.get(session_id)
            if player is None:
                continue
            self._emit('duration_update', {'duration': player['duration']}, sid)
            sent += 1
        return sent

    # ---- snapshots for newly connected sockets ----

    def admin_init(self) -> Dict[str, Any]:
        return {'players': self.registry.playing(), 'leaderboard': self.registry.leaderboard()}

    def player_init(self, session_id: str) -> Dict[str, Any]:
        leaderboard = self.registry.leaderboard()
        return {'rank': rank_of(leaderboard, session_id), 'leaderboard': leaderboard['all'][:self.top_n]}

    def watched(self, sid: str) -> Set[str]:
        ctx = self.context(sid)
        return ctx['subscriptions'] if ctx else set()
