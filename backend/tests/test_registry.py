import threading

import pytest

from blockfall.errors import CheatDetected, IdentityMismatch, InvalidTransition, NotFound
from blockfall.models import empty_board
from blockfall.services.game.registry import SessionRegistry
from conftest import board_with_full_rows


class MemoryStore:
    def __init__(self, sessions=None, bindings=None, fail=False):
        self.data = {'sessions': sessions or [], 'nickname_bindings': bindings or []}
        self.fail = fail
        self.saves = 0

    def load(self):
        return self.data

    def save(self, sessions, bindings):
        if self.fail:
            raise OSError('disk full')
        self.saves += 1
        self.data = {'sessions': sessions, 'nickname_bindings': bindings}


def test_register_new_nickname(registry):
    session, is_new = registry.register('alice', 'alice@example.com')
    assert is_new
    assert session.status == 'registered'
    assert session.email == 'alice@example.com'
    assert not registry.is_nickname_available('alice')
    assert registry.is_nickname_available('Alice')


def test_register_same_email_reuses_session(registry):
    first, _ = registry.register('alice', 'alice@example.com')
    second, is_new = registry.register('alice', 'alice@example.com')
    assert not is_new
    assert second is first
    assert len(registry) == 1


def test_register_different_email_fails(registry):
    registry.register('alice', 'alice@example.com')
    with pytest.raises(IdentityMismatch) as info:
        registry.register('alice', 'mallory@example.com')
    assert 'email' in info.value.reason
    assert info.value.reason == IdentityMismatch.GENERIC_REASON
    assert len(registry) == 1


def test_login_resets_run_fields(registry, playing, clock):
    registry.update_state(playing, {'board': empty_board(), 'score': 0})
    session, _ = registry.register('alice', 'alice@example.com')
    assert session.id == playing
    assert session.status == 'registered'
    assert session.current_score == 0
    assert session.piece_sequence == []


def test_legacy_nickname_binds_email_once(clock):
    store = MemoryStore(
        sessions=[{'id': 'player_old', 'nickname': 'bob', 'email': None, 'highest_score': 700, 'history': []}],
        bindings=[{'nickname': 'bob', 'email': None}],
    )
    registry = SessionRegistry(store=store, clock=clock)
    registry.load()
    session, is_new = registry.register('bob', 'bob@example.com')
    assert not is_new
    assert session.id == 'player_old'
    assert session.email == 'bob@example.com'
    assert session.highest_score == 700
    with pytest.raises(IdentityMismatch):
        registry.register('bob', 'other@example.com')


def test_start_session_issues_visible_window(registry):
    session, _ = registry.register('alice', 'alice@example.com')
    result = registry.start_session(session.id)
    assert len(result['visible_pieces']) == 10
    assert len(session.piece_sequence) == 50
    assert session.piece_index == 0
    assert result['drop_interval'] == 1000
    assert result['difficulty'] == {'level': 1, 'name': 'Novice'}
    assert result['game_state']['current_piece']['id'] == session.piece_sequence[0]['id']
    assert result['game_state']['next_piece']['id'] == session.piece_sequence[1]['id']
    assert [p['id'] for p in result['visible_pieces']] == [p['id'] for p in session.piece_sequence[:10]]


def test_start_requires_registered(registry, playing):
    with pytest.raises(InvalidTransition):
        registry.start_session(playing)
    registry.end_session(playing)
    with pytest.raises(InvalidTransition):
        registry.start_session(playing)


def test_unknown_session_not_found(registry):
    for op in (registry.start_session, registry.advance_piece, registry.end_session,
               registry.pause, registry.resume, registry.delete_session):
        with pytest.raises(NotFound):
            op('player_missing')


def test_on_time_advances_and_refill(registry, playing, clock):
    session = registry.get(playing)
    for _ in range(9):
        clock.advance(800)
        registry.advance_piece(playing)
    assert session.speed_violations == 0
    assert session.piece_index == 9
    assert len(session.piece_sequence) == 50

    for _ in range(30):
        clock.advance(800)
        registry.advance_piece(playing)
    # cursor 39: still ten pieces ahead
    assert len(session.piece_sequence) == 50
    clock.advance(800)
    registry.advance_piece(playing)
    assert len(session.piece_sequence) == 70

    for _ in range(10):
        clock.advance(800)
        registry.advance_piece(playing)
    assert session.piece_index == 50
    assert session.piece_index <= len(session.piece_sequence) - 1
    assert session.pieces_ahead >= 10


def test_advance_returns_next_two_pieces(registry, playing, clock):
    session = registry.get(playing)
    clock.advance(500)
    result = registry.advance_piece(playing)
    assert result['piece_index'] == 1
    assert result['current_piece']['id'] == session.piece_sequence[1]['id']
    assert result['next_piece']['id'] == session.piece_sequence[2]['id']
    assert result['difficulty']['level'] == 1


def test_advance_requires_playing(registry):
    session, _ = registry.register('alice', 'alice@example.com')
    with pytest.raises(InvalidTransition):
        registry.advance_piece(session.id)


def test_pause_excludes_paused_time(registry, playing, clock):
    session = registry.get(playing)
    issued = session.piece_issued_at
    clock.advance(1000)
    registry.pause(playing)
    clock.advance(5000)
    result = registry.resume(playing)
    assert result['paused_for'] == 5000
    assert session.piece_issued_at == issued + 5000
    clock.advance(1000)
    registry.advance_piece(playing)
    # 7000ms of wall time, only 2000ms counted
    assert session.speed_violations == 0


def test_same_gap_without_pause_is_a_violation(registry, playing, clock):
    clock.advance(7000)
    registry.advance_piece(playing)
    assert registry.get(playing).speed_violations == 1


def test_pause_resume_invalid_states(registry, playing):
    with pytest.raises(InvalidTransition):
        registry.resume(playing)
    registry.pause(playing)
    with pytest.raises(InvalidTransition):
        registry.pause(playing)
    other, _ = registry.register('bob', 'bob@example.com')
    with pytest.raises(InvalidTransition):
        registry.pause(other.id)


def test_pause_and_resume_notify_player(registry, playing, listener):
    registry.pause(playing)
    registry.resume(playing)
    names = listener.names()
    assert 'game_paused' in names
    assert 'game_resumed' in names


def test_advance_while_paused_skips_timing(registry, playing, clock):
    registry.pause(playing)
    clock.advance(60000)
    registry.advance_piece(playing)
    session = registry.get(playing)
    assert session.speed_violations == 0
    assert session.pause_count == 0


def test_end_session_records_history(registry, playing, clock):
    clock.advance(4000)
    result = registry.end_session(playing)
    session = registry.get(playing)
    assert session.status == 'finished'
    assert result['duration'] == 4000
    assert session.history == [{
        'score': 0, 'started_at': session.started_at, 'ended_at': session.ended_at, 'duration': 4000,
    }]
    with pytest.raises(InvalidTransition):
        registry.end_session(playing)


def test_end_never_started_session_fails(registry):
    session, _ = registry.register('alice', 'alice@example.com')
    with pytest.raises(InvalidTransition):
        registry.end_session(session.id)


def test_replay_after_reregistration(registry, playing):
    board = board_with_full_rows(1)
    registry.update_state(playing, {'board': board, 'score': 0})
    registry.update_state(playing, {'board': empty_board(), 'score': 100})
    registry.end_session(playing)
    session, is_new = registry.register('alice', 'alice@example.com')
    assert not is_new
    registry.start_session(session.id)
    assert session.current_score == 0
    assert session.highest_score == 100
    assert len(session.history) == 1


def test_delete_only_finished(registry, playing):
    with pytest.raises(InvalidTransition):
        registry.delete_session(playing)
    registry.end_session(playing)
    assert registry.delete_session(playing) == 'alice'
    assert registry.is_nickname_available('alice')
    with pytest.raises(NotFound):
        registry.get(playing)
    session, is_new = registry.register('alice', 'new@example.com')
    assert is_new


def test_update_tracks_scores_and_levels(registry, playing):
    session = registry.get(playing)
    registry.update_state(playing, {'board': board_with_full_rows(4), 'score': 0})
    result = registry.update_state(playing, {'board': empty_board(), 'score': 800, 'level': 1})
    assert result['current_score'] == 800
    assert result['highest_score'] == 800
    assert result['lines'] == 4
    assert session.last_board == empty_board()
    assert session.game_state['score'] == 800


def test_level_rises_every_ten_lines(registry, playing):
    session = registry.get(playing)
    score = 0
    for _ in range(3):
        registry.update_state(playing, {'board': board_with_full_rows(4), 'score': score})
        score += 800 * session.level
        registry.update_state(playing, {'board': empty_board(), 'score': score})
    assert session.lines == 12
    assert session.level == 2
    assert score == 2400
    registry.update_state(playing, {'board': board_with_full_rows(2), 'score': score})
    result = registry.update_state(playing, {'board': empty_board(), 'score': score + 600})
    assert result['current_score'] == 3000


def test_board_cheat_flags_session(registry, playing, clock):
    board = empty_board()
    board[0][0] = 8
    with pytest.raises(CheatDetected):
        registry.update_state(playing, {'board': board, 'score': 0})
    session = registry.get(playing)
    assert session.cheat_flag
    assert session.status == 'playing'
    clock.advance(500)
    with pytest.raises(CheatDetected):
        registry.advance_piece(playing)
    with pytest.raises(CheatDetected):
        registry.update_state(playing, {'board': empty_board(), 'score': 0})
    registry.end_session(playing)
    assert session.status == 'finished'


def test_score_cheat_leaves_state_untouched(registry, playing):
    registry.update_state(playing, {'board': board_with_full_rows(2), 'score': 0})
    with pytest.raises(CheatDetected):
        registry.update_state(playing, {'board': empty_board(), 'score': 500})
    session = registry.get(playing)
    assert session.current_score == 0
    assert session.highest_score == 0
    assert session.cheat_flag


def test_timing_cheat_blocks_further_pieces(registry, playing, clock):
    for _ in range(7):
        clock.advance(5000)
        registry.advance_piece(playing)
    clock.advance(5000)
    with pytest.raises(CheatDetected):
        registry.advance_piece(playing)
    session = registry.get(playing)
    assert session.piece_index == 7
    clock.advance(100)
    with pytest.raises(CheatDetected):
        registry.advance_piece(playing)


def test_listeners_get_snapshots(registry, listener, playing):
    before = len(listener.events)
    registry.update_state(playing, {'board': empty_board(), 'score': 0})
    name, snapshot = listener.events[before]
    assert name == 'session_changed'
    assert snapshot['id'] == playing
    snapshot['game_state']['score'] = 999
    assert registry.get(playing).game_state['score'] == 0


def test_listener_failure_does_not_break_gameplay(registry, playing, clock):
    class Broken:
        def session_changed(self, snapshot):
            raise RuntimeError('socket gone')

    registry.add_listener(Broken())
    clock.advance(500)
    assert registry.advance_piece(playing)['piece_index'] == 1


def test_flush_failure_is_contained(clock):
    store = MemoryStore(fail=True)
    registry = SessionRegistry(store=store, clock=clock)
    session, _ = registry.register('alice', 'alice@example.com')
    registry.start_session(session.id)
    assert registry.flush() is False
    assert registry.end_session(session.id)['score'] == 0


def test_end_session_persists(clock):
    store = MemoryStore()
    registry = SessionRegistry(store=store, clock=clock)
    session, _ = registry.register('alice', 'alice@example.com')
    registry.start_session(session.id)
    saves = store.saves
    registry.end_session(session.id)
    assert store.saves == saves + 1
    assert store.data['sessions'][0]['history']
    assert store.data['nickname_bindings'] == [{'nickname': 'alice', 'email': 'alice@example.com'}]


def test_concurrent_mutations_on_one_session_are_serialized(registry, playing):
    advancers, per_thread, cycles = 4, 25, 9
    start = threading.Barrier(advancers + 1)
    errors = []

    def advance():
        start.wait()
        for _ in range(per_thread):
            try:
                registry.advance_piece(playing)
            except Exception as exc:
                errors.append(exc)

    def update():
        start.wait()
        score = 0
        try:
            for _ in range(cycles):
                registry.update_state(playing, {'board': board_with_full_rows(1), 'score': score})
                score += 100
                registry.update_state(playing, {'board': empty_board(), 'score': score})
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=advance) for _ in range(advancers)]
    threads.append(threading.Thread(target=update))
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert errors == []
    session = registry.get(playing)
    assert session.piece_index == advancers * per_thread
    assert session.lines == cycles
    assert session.current_score == cycles * 100
    assert session.game_state['score'] == cycles * 100
    assert session.game_state['current_piece'] == session.piece_sequence[session.piece_index]
    assert session.pieces_ahead >= 10


def test_held_session_does_not_block_other_sessions(registry, playing):
    other, _ = registry.register('bob', 'bob@example.com')
    registry.start_session(other.id)

    with registry._locked(playing):
        other_thread = threading.Thread(target=registry.advance_piece, args=(other.id,))
        other_thread.start()
        other_thread.join(timeout=2)
        assert not other_thread.is_alive()

        same_thread = threading.Thread(target=registry.advance_piece, args=(playing,))
        same_thread.start()
        same_thread.join(timeout=0.2)
        assert same_thread.is_alive()

    same_thread.join(timeout=2)
    assert not same_thread.is_alive()
    assert registry.get(other.id).piece_index == 1
    assert registry.get(playing).piece_index == 1
