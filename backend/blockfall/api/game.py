import re

from flask import Blueprint, Response, jsonify, request, current_app

from blockfall.engine import get_engine
from blockfall.errors import BadRequest, NotFound
from blockfall.services.game.challenges import render_svg

game = Blueprint('game', __name__)

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')


def _payload():
    return request.get_json(silent=True) or {}


def _session_id(data):
    session_id = data.get('session_id')
    if not session_id:
        raise BadRequest('session_id is required')
    return session_id


@game.route('/health', methods=['GET'])
def health():
    return jsonify({'status': 'ok', 'sessions': len(get_engine().registry)})


@game.route('/player/register', methods=['POST'])
def register_player():
    data = _payload()
    nickname = (data.get('nickname') or '').strip()
    email = (data.get('email') or '').strip()
    if not nickname:
        raise BadRequest('Nickname is required')
    if not email:
        raise BadRequest('Email is required')
    if not EMAIL_RE.match(email):
        raise BadRequest('Please enter a valid email address')

    session, is_new = get_engine().registry.register(nickname, email)
    return jsonify({
        'success': True,
        'is_new_player': is_new,
        'player': {
            'id': session.id,
            'nickname': session.nickname,
            'email': session.email,
            'highest_score': session.highest_score,
        },
    }), 201 if is_new else 200


@game.route('/player/check-nickname/<string:nickname>', methods=['GET'])
def check_nickname(nickname):
    return jsonify({'available': get_engine().registry.is_nickname_available(nickname)})


@game.route('/game/start', methods=['POST'])
def start_game():
    result = get_engine().registry.start_session(_session_id(_payload()))
    result['success'] = True
    return jsonify(result)


@game.route('/game/next-piece', methods=['POST'])
def next_piece():
    result = get_engine().registry.advance_piece(_session_id(_payload()))
    result['success'] = True
    return jsonify(result)


@game.route('/game/update', methods=['POST'])
def update_game():
    data = _payload()
    session_id = _session_id(data)
    return jsonify(get_engine().registry.update_state(session_id, data.get('game_state')))


@game.route('/game/end', methods=['POST'])
def end_game():
    result = get_engine().registry.end_session(_session_id(_payload()))
    return jsonify({
        'success': True,
        'final_score': result['score'],
        'highest_score': result['highest_score'],
        'duration': result['duration'],
        'rank': result['rank'],
    })


@game.route('/game/pause', methods=['POST'])
def pause_game():
    return jsonify(get_engine().registry.pause(_session_id(_payload())))


@game.route('/game/resume', methods=['POST'])
def resume_game():
    return jsonify(get_engine().registry.resume(_session_id(_payload())))


@game.route('/leaderboard', methods=['GET'])
def leaderboard():
    return jsonify(get_engine().registry.leaderboard())


@game.route('/player/<string:session_id>', methods=['GET'])
def player_info(session_id):
    registry = get_engine().registry
    info = registry.snapshot(session_id)
    info.pop('game_state', None)
    info['rank'] = registry.rank(session_id)
    return jsonify(info)


@game.route('/player/<string:session_id>', methods=['DELETE'])
def delete_player(session_id):
    nickname = get_engine().registry.delete_session(session_id)
    return jsonify({'success': True, 'message': f'Deleted player {nickname}'})


@game.route('/players/playing', methods=['GET'])
def playing_players():
    return jsonify(get_engine().registry.playing())


@game.route('/player/<string:session_id>/gamestate', methods=['GET'])
def player_game_state(session_id):
    return jsonify(get_engine().registry.game_state_view(session_id))


@game.route('/challenge/create', methods=['POST'])
def create_challenge():
    challenge = get_engine().registry.reissue_challenge(_session_id(_payload()))
    challenge['success'] = True
    return jsonify(challenge)


@game.route('/challenge/<string:challenge_id>/image', methods=['GET'])
def challenge_image(challenge_id):
    challenge = get_engine().challenges.get_active(challenge_id)
    if challenge is None:
        raise NotFound('Challenge does not exist or has expired')
    response = Response(render_svg(challenge.code), mimetype='image/svg+xml')
    response.headers['Cache-Control'] = 'no-cache'
    return response


@game.route('/challenge/verify', methods=['POST'])
def verify_challenge():
    data = _payload()
    session_id = _session_id(data)
    challenge_id = data.get('challenge_id')
    if not challenge_id:
        raise BadRequest('challenge_id is required')
    return jsonify(get_engine().registry.verify_challenge(session_id, challenge_id, data.get('answer') or ''))


@game.route('/storage/stats', methods=['GET'])
def storage_stats():
    return jsonify(get_engine().store.stats())


@game.route('/storage/save', methods=['POST'])
def storage_save():
    if not get_engine().registry.flush():
        return jsonify({'success': False, 'error': 'Save failed; will retry on next cycle'}), 500
    return jsonify({'success': True, 'message': 'Data saved'})


@game.route('/storage/backup', methods=['POST'])
def storage_backup():
    try:
        path = get_engine().store.backup()
    except OSError as exc:
        current_app.logger.error(f"[storage-backup] error={exc}")
        return jsonify({'success': False, 'error': 'Backup failed'}), 500
    if not path:
        return jsonify({'success': False, 'error': 'Nothing to back up yet'}), 404
    return jsonify({'success': True, 'backup_file': path})
