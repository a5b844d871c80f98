"""Authoritative store of player sessions and their lifecycle.

All session state lives in one ``SessionRegistry`` owned by the application.
Mutations on a session run under that session's lock; the registry-wide lock
only guards the maps and is always taken before a session lock, never after.
Listeners (the broadcast hub) receive deep-copied snapshots once the lock is
released, so fan-out never observes a half-applied update.
"""
import copy
import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from blockfall.errors import (BadRequest, ChallengeRequired, CheatDetected, IdentityMismatch,
                              InvalidTransition, NotFound)
from blockfall.models import (STATUS_FINISHED, STATUS_PLAYING, STATUS_REGISTERED, PlayerSession,
                              empty_board, now_ms)
from .challenges import ChallengeStore
from .difficulty import tier_for_score
from .escalation import EscalationGate
from .leaderboard import build_leaderboard, rank_of
from .pieces import INITIAL_BATCH, PieceGenerator, visible_window
from .validation import ValidationPolicy, check_piece_timing, validate_board, validate_score

logger = logging.getLogger(__name__)

LINES_PER_LEVEL = 10


def _run_now(fn: Callable[[], Any]) -> None:
    fn()


class SessionRegistry:
    def __init__(self, store=None, challenges: Optional[ChallengeStore] = None,
                 gate: Optional[EscalationGate] = None, generator: Optional[PieceGenerator] = None,
                 policy: Optional[ValidationPolicy] = None, clock: Callable[[], int] = now_ms,
                 schedule: Callable[[Callable[[], Any]], Any] = _run_now):
        self.store = store
        self.challenges = challenges
        self.gate = gate
        self.generator = generator or PieceGenerator()
        self.policy = policy or ValidationPolicy()
        self.clock = clock
        self.schedule = schedule
        self.listeners: List[Any] = []
        self._sessions: Dict[str, PlayerSession] = {}
        self._by_nickname: Dict[str, str] = {}
        # nickname -> bound email; None marks a nickname stored before emails were required
        self._bindings: Dict[str, Optional[str]] = {}
        self._session_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    # ---- construction / teardown ----

    def load(self) -> int:
        if self.store is None:
            return 0
        data = self.store.load()
        with self._lock:
            for record in data['sessions']:
                session = PlayerSession.from_record(record)
                self._add(session)
                self._bindings[session.nickname] = session.email
            for binding in data['nickname_bindings']:
                nickname = binding.get('nickname')
                if nickname and self._bindings.get(nickname) is None:
                    self._bindings[nickname] = binding.get('email')
        logger.info(f"[registry-load] sessions={len(self._sessions)} bindings={len(self._bindings)}")
        return len(self._sessions)

    def flush(self) -> bool:
        """Persist every session. I/O errors are logged and reported, never raised."""
        if self.store is None:
            return False
        records = [s.to_record() for s in self._each_session()]
        with self._lock:
            bindings = [{'nickname': n, 'email': e} for n, e in self._bindings.items()]
        try:
            self.store.save(records, bindings)
        except OSError:
            logger.exception('[registry-flush] save failed; will retry on next cycle')
            return False
        return True

    def persist_soon(self) -> None:
        if self.store is not None:
            self.schedule(self.flush)

    def add_listener(self, listener) -> None:
        self.listeners.append(listener)

    # ---- internals ----

    def _add(self, session: PlayerSession) -> None:
        self._sessions[session.id] = session
        self._by_nickname[session.nickname] = session.id
        self._session_locks[session.id] = threading.Lock()

    @contextmanager
    def _locked(self, session_id: str) -> Iterator[PlayerSession]:
        with self._lock:
            lock = self._session_locks.get(session_id)
        if lock is None:
            raise NotFound(f'Session {session_id} not found')
        with lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFound(f'Session {session_id} not found')
            yield session

    def _each_session(self) -> Iterator[PlayerSession]:
        with self._lock:
            pairs = [(self._sessions[sid], self._session_locks[sid]) for sid in self._sessions]
        for session, lock in pairs:
            with lock:
                yield session

    def _notify(self, method: str, *args) -> None:
        for listener in self.listeners:
            handler = getattr(listener, method, None)
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception:
                logger.exception(f"[notify-failed] listener={listener!r} method={method}")

    def _publish(self, snapshot: Dict[str, Any], rankings: bool = False) -> None:
        self._notify('session_changed', snapshot)
        if rankings:
            self._notify('rankings_changed')

    @staticmethod
    def _require_playing(session: PlayerSession) -> None:
        if session.status != STATUS_PLAYING:
            raise InvalidTransition(f'Session {session.id} is not playing (status={session.status})')

    def _maybe_escalate(self, session: PlayerSession):
        if self.gate is None or self.challenges is None:
            return None
        if not self.gate.should_challenge(session.current_score, session.speed_violations):
            return None
        challenge = self.challenges.create(session.id)
        session.awaiting_challenge = True
        session.active_challenge_id = challenge.id
        logger.info(
            f"[challenge-issued] session={session.id} challenge={challenge.id} "
            f"score={session.current_score} violations={session.speed_violations}"
        )
        return challenge

    def _announce_challenge(self, session_id: str, nickname: str, challenge) -> None:
        self._notify('notify_player', session_id, 'challenge_required', challenge.to_dict())
        self._notify('notify_admins', 'player_challenge', {'session_id': session_id, 'nickname': nickname})

    # ---- identity ----

    def is_nickname_available(self, nickname: str) -> bool:
        with self._lock:
            return nickname not in self._bindings

    def register(self, nickname: str, email: str) -> Tuple[PlayerSession, bool]:
        with self._lock:
            if nickname in self._bindings:
                bound = self._bindings[nickname]
                if bound is not None and bound != email:
                    logger.warning(f"[identity-mismatch] nickname={nickname}")
                    raise IdentityMismatch()
                session_id = self._by_nickname.get(nickname)
                session = self._sessions.get(session_id) if session_id else None
                is_new = session is None
                if session is None:
                    session = PlayerSession(f"player_{uuid.uuid4().hex}", nickname, email)
                    self._add(session)
                if bound is None:
                    self._bindings[nickname] = email
                    logger.info(f"[identity-bind] nickname={nickname} retroactive=true")
                lock = self._session_locks[session.id]
            else:
                session = PlayerSession(f"player_{uuid.uuid4().hex}", nickname, email)
                self._add(session)
                self._bindings[nickname] = email
                is_new = True
                lock = self._session_locks[session.id]
            with lock:
                if session.email is None:
                    session.email = email
                session.reset_for_login()
                snapshot = session.snapshot(self.clock())
        logger.info(f"[register] session={session.id} nickname={nickname} new={is_new}")
        self._publish(snapshot, rankings=True)
        self.persist_soon()
        return session, is_new

    # ---- lifecycle ----

    def start_session(self, session_id: str) -> Dict[str, Any]:
        with self._locked(session_id) as session:
            if session.status != STATUS_REGISTERED:
                raise InvalidTransition(f'Cannot start a session in status {session.status}; register again first')
            now = self.clock()
            session.clear_run()
            session.status = STATUS_PLAYING
            session.current_score = 0
            session.started_at = now
            session.ended_at = None
            session.piece_sequence = self.generator.batch(INITIAL_BATCH)
            session.piece_index = 0
            session.piece_issued_at = now
            session.last_board = empty_board()
            tier = tier_for_score(0)
            session.level = tier.level
            session.game_state = {
                'board': empty_board(),
                'current_piece': dict(session.piece_sequence[0]),
                'next_piece': dict(session.piece_sequence[1]),
                'score': 0,
                'lines': 0,
                'level': tier.level,
                'drop_interval': tier.drop_interval,
            }
            result = {
                'game_state': copy.deepcopy(session.game_state),
                'visible_pieces': visible_window(session.piece_sequence),
                'drop_interval': tier.drop_interval,
                'difficulty': {'level': tier.level, 'name': tier.name},
            }
            snapshot = session.snapshot(now)
        logger.info(f"[start] session={session_id} nickname={snapshot['nickname']}")
        self._notify('notify_admins', 'player_status_update', {'player': snapshot})
        self._publish(snapshot, rankings=True)
        return result

    def end_session(self, session_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        with self._locked(session_id) as session:
            if session.status != STATUS_PLAYING:
                raise InvalidTransition(f'Session {session_id} has no game in progress')
            now = self.clock()
            session.status = STATUS_FINISHED
            session.ended_at = now
            session.is_paused = False
            session.pause_started_at = None
            if session.awaiting_challenge and self.challenges is not None:
                self.challenges.discard(session.active_challenge_id)
            session.awaiting_challenge = False
            session.active_challenge_id = None
            record = {
                'score': session.current_score,
                'started_at': session.started_at,
                'ended_at': now,
                'duration': now - session.started_at,
            }
            session.history.append(record)
            snapshot = session.snapshot(now)
        logger.info(
            f"[end] session={session_id} score={record['score']} duration={record['duration']}ms "
            f"reason={reason or 'requested'}"
        )
        self._notify('notify_admins', 'player_status_update', {'player': snapshot})
        self._notify('notify_player', session_id, 'game_ended',
                     {'final_score': record['score'], 'reason': reason or 'ended'})
        self._publish(snapshot, rankings=True)
        self.persist_soon()
        result = dict(record)
        result['highest_score'] = snapshot['highest_score']
        result['rank'] = self.rank(session_id)
        return result

    def delete_session(self, session_id: str) -> str:
        with self._lock:
            lock = self._session_locks.get(session_id)
            session = self._sessions.get(session_id)
            if lock is None or session is None:
                raise NotFound(f'Session {session_id} not found')
            with lock:
                if session.status != STATUS_FINISHED:
                    raise InvalidTransition('Only finished sessions can be deleted')
                del self._sessions[session_id]
                del self._session_locks[session_id]
                self._by_nickname.pop(session.nickname, None)
                self._bindings.pop(session.nickname, None)
        logger.info(f"[delete] session={session_id} nickname={session.nickname}")
        self._notify('rankings_changed')
        self.persist_soon()
        return session.nickname

    def pause(self, session_id: str) -> Dict[str, Any]:
        with self._locked(session_id) as session:
            if session.status != STATUS_PLAYING or session.is_paused:
                raise InvalidTransition('Only a running, unpaused game can be paused')
            session.is_paused = True
            session.pause_started_at = self.clock()
            snapshot = session.snapshot(session.pause_started_at)
        self._notify('notify_player', session_id, 'game_paused', {'message': 'Game paused'})
        self._publish(snapshot)
        return {'success': True, 'message': 'Game paused'}

    def resume(self, session_id: str) -> Dict[str, Any]:
        with self._locked(session_id) as session:
            if not session.is_paused:
                raise InvalidTransition('Game is not paused')
            now = self.clock()
            paused_for = now - session.pause_started_at
            # Paused time never counts against the drop interval
            if session.piece_issued_at is not None:
                session.piece_issued_at += paused_for
            session.is_paused = False
            session.pause_started_at = None
            snapshot = session.snapshot(now)
        self._notify('notify_player', session_id, 'game_resumed', {'message': 'Game resumed', 'paused_for': paused_for})
        self._publish(snapshot)
        return {'success': True, 'message': 'Game resumed', 'paused_for': paused_for}

    # ---- gameplay ----

    def advance_piece(self, session_id: str) -> Dict[str, Any]:
        challenge = None
        flagged = None
        with self._locked(session_id) as session:
            self._require_playing(session)
            if session.cheat_flag:
                raise CheatDetected('Session is flagged for cheating; end the game to continue')
            if session.awaiting_challenge:
                raise ChallengeRequired('Human verification required before the next piece',
                                        challenge_id=session.active_challenge_id)
            now = self.clock()
            if session.is_paused:
                logger.info(f"[advance-paused] session={session_id} timing check skipped")
                session.piece_issued_at = now
            try:
                check_piece_timing(session, now, self.policy)
            except CheatDetected as exc:
                flagged = (exc, session.snapshot(now))
            if flagged is None:
                session.piece_index += 1
                self.generator.ensure_lookahead(session.piece_sequence, session.piece_index)
                session.piece_issued_at = now
                tier = tier_for_score(session.current_score)
                current_piece = dict(session.piece_sequence[session.piece_index])
                next_piece = dict(session.piece_sequence[session.piece_index + 1])
                if session.game_state is not None:
                    session.game_state['current_piece'] = current_piece
                    session.game_state['next_piece'] = next_piece
                result = {
                    'current_piece': current_piece,
                    'next_piece': next_piece,
                    'piece_index': session.piece_index,
                    'drop_interval': tier.drop_interval,
                    'difficulty': {'level': tier.level, 'name': tier.name},
                }
                challenge = self._maybe_escalate(session)
                if challenge is not None:
                    result['challenge_required'] = True
                    result['challenge_id'] = challenge.id
                nickname = session.nickname
                snapshot = session.snapshot(now)
        if flagged is not None:
            exc, snap = flagged
            self._publish(snap)
            raise exc
        if challenge is not None:
            self._announce_challenge(session_id, nickname, challenge)
        self._publish(snapshot)
        return result

    def update_state(self, session_id: str, game_state: Any) -> Dict[str, Any]:
        if not isinstance(game_state, dict) or 'board' not in game_state or 'score' not in game_state:
            raise BadRequest('game_state with board and score is required')
        challenge = None
        flagged = None
        with self._locked(session_id) as session:
            self._require_playing(session)
            if session.cheat_flag:
                raise CheatDetected('Session is flagged for cheating; end the game to continue')
            now = self.clock()
            try:
                board = validate_board(game_state['board'])
                derived = validate_score(session, game_state['score'], board)
            except CheatDetected as exc:
                session.cheat_flag = True
                logger.error(f"[cheat] session={session_id} reason={exc.reason}")
                flagged = (exc, session.snapshot(now))
            if flagged is None:
                previous_score = session.current_score
                session.lines += derived['full_rows']
                session.level = session.lines // LINES_PER_LEVEL + 1
                reported_level = game_state.get('level')
                if reported_level is not None and reported_level != session.level:
                    logger.warning(
                        f"[level-mismatch] session={session_id} reported={reported_level} derived={session.level}"
                    )
                session.last_board = copy.deepcopy(board)
                session.current_score = game_state['score']
                session.highest_score = max(session.highest_score, session.current_score)
                tier = tier_for_score(session.current_score)
                stored = session.game_state or {}
                stored.update({
                    'board': copy.deepcopy(board),
                    'score': session.current_score,
                    'lines': session.lines,
                    'level': session.level,
                    'drop_interval': tier.drop_interval,
                })
                session.game_state = stored
                if session.current_score != previous_score:
                    challenge = self._maybe_escalate(session)
                result = {
                    'success': True,
                    'current_score': session.current_score,
                    'highest_score': session.highest_score,
                    'lines': session.lines,
                    'level': session.level,
                }
                if challenge is not None:
                    result['challenge_required'] = True
                    result['challenge_id'] = challenge.id
                nickname = session.nickname
                score_changed = session.current_score != previous_score
                snapshot = session.snapshot(now)
        if flagged is not None:
            exc, snap = flagged
            self._publish(snap)
            raise exc
        if challenge is not None:
            self._announce_challenge(session_id, nickname, challenge)
        self._publish(snapshot, rankings=score_changed)
        return result

    # ---- escalation ----

    def verify_challenge(self, session_id: str, challenge_id: str, answer: str) -> Dict[str, Any]:
        with self._locked(session_id) as session:
            if not session.awaiting_challenge:
                raise InvalidTransition('No verification is pending for this session')
            if challenge_id != session.active_challenge_id:
                raise NotFound('Unknown challenge for this session')
            outcome = self.challenges.verify(challenge_id, answer)
            if not outcome['valid']:
                # Failed attempts add no penalty; the session just stays blocked
                logger.info(f"[challenge-failed] session={session_id} error={outcome.get('error')}")
                raise ChallengeRequired(outcome.get('error') or 'Verification failed',
                                        challenge_id=session.active_challenge_id)
            now = self.clock()
            session.awaiting_challenge = False
            session.active_challenge_id = None
            session.speed_violations = 0.0
            session.pause_count = 0
            session.piece_issued_at = now
            nickname = session.nickname
            snapshot = session.snapshot(now)
        logger.info(f"[challenge-verified] session={session_id}")
        self._notify('notify_player', session_id, 'challenge_verified', {'success': True})
        self._notify('notify_admins', 'player_challenge_verified',
                     {'session_id': session_id, 'nickname': nickname, 'success': True})
        self._publish(snapshot)
        return {'success': True}

    def reissue_challenge(self, session_id: str) -> Dict[str, Any]:
        with self._locked(session_id) as session:
            if not session.awaiting_challenge:
                raise InvalidTransition('No verification is pending for this session')
            self.challenges.discard(session.active_challenge_id)
            challenge = self.challenges.create(session_id)
            session.active_challenge_id = challenge.id
            nickname = session.nickname
        self._announce_challenge(session_id, nickname, challenge)
        return challenge.to_dict()

    # ---- read side ----

    def get(self, session_id: str) -> PlayerSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFound(f'Session {session_id} not found')
        return session

    def snapshot(self, session_id: str) -> Dict[str, Any]:
        with self._locked(session_id) as session:
            return session.snapshot(self.clock())

    def snapshots(self) -> List[Dict[str, Any]]:
        now = self.clock()
        return [s.snapshot(now) for s in self._each_session()]

    def playing(self) -> List[Dict[str, Any]]:
        now = self.clock()
        return [s.to_dict(now) for s in self._each_session() if s.status == STATUS_PLAYING]

    def leaderboard(self) -> Dict[str, List[Dict[str, Any]]]:
        return build_leaderboard(self.snapshots())

    def rank(self, session_id: str) -> Optional[int]:
        return rank_of(self.leaderboard(), session_id)

    def game_state_view(self, session_id: str) -> Dict[str, Any]:
        snapshot = self.snapshot(session_id)
        game_state = snapshot.pop('game_state')
        return {'player': snapshot, 'game_state': game_state}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
