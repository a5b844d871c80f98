from flask import request, current_app
from flask_socketio import emit

from blockfall import socketio
from blockfall.engine import get_engine
from blockfall.errors import GameError, NotFound
from blockfall.models import STATUS_PLAYING


def _get_sid() -> str:
    # request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def handle_connect(auth=None):
    hub = get_engine().hub
    kind = request.args.get('type')
    session_id = request.args.get('session_id')
    if kind == 'admin':
        hub.attach_admin(_get_sid())
        emit('init', hub.admin_init())
        return
    if kind == 'player' and session_id:
        try:
            get_engine().registry.get(session_id)
        except NotFound as exc:
            emit('error', exc.to_dict())
            return
        hub.attach_player(_get_sid(), session_id)
        emit('init', hub.player_init(session_id))
        return
    emit('connected', {'message': 'Connected to /ws'})


def handle_disconnect(reason=None):
    engine = get_engine()
    ctx = engine.hub.detach(_get_sid())
    if not ctx or not ctx.get('session_id'):
        return
    session_id = ctx['session_id']
    if engine.hub.has_player(session_id):
        # Another socket still plays this session
        return
    # A dropped player connection never leaves a game running
    try:
        if engine.registry.snapshot(session_id)['status'] == STATUS_PLAYING:
            current_app.logger.info(f"[disconnect-end] session={session_id}")
            engine.registry.end_session(session_id, reason='disconnected')
    except GameError as exc:
        current_app.logger.warning(f"[disconnect-end-failed] session={session_id} error={exc.reason}")


def handle_subscribe_player(data):
    session_id = (data or {}).get('session_id')
    if not session_id:
        emit('error', {'error': 'session_id is required', 'kind': 'bad_request'})
        return
    engine = get_engine()
    try:
        view = engine.registry.game_state_view(session_id)
    except NotFound as exc:
        emit('error', exc.to_dict())
        return
    if not engine.hub.subscribe(_get_sid(), session_id):
        emit('error', {'error': 'Only admin connections may subscribe', 'kind': 'bad_request'})
        return
    emit('subscribed', {'session_id': session_id})
    if view['game_state']:
        emit('game_state_update', {'session_id': session_id, 'player': view['player'], 'game_state': view['game_state']})


def handle_unsubscribe_player(data):
    session_id = (data or {}).get('session_id')
    if session_id:
        get_engine().hub.unsubscribe(_get_sid(), session_id)
    emit('unsubscribed', {'session_id': session_id})


def handle_request_game_state(data):
    session_id = (data or {}).get('session_id')
    try:
        emit('game_state_response', {'data': get_engine().registry.game_state_view(session_id)})
    except GameError as exc:
        emit('error', exc.to_dict())


def handle_game_update(data):
    ctx = get_engine().hub.context(_get_sid())
    if not ctx or not ctx.get('session_id'):
        emit('error', {'error': 'Only player connections may send game updates', 'kind': 'bad_request'})
        return
    try:
        result = get_engine().registry.update_state(ctx['session_id'], (data or {}).get('game_state'))
    except GameError as exc:
        emit('error', exc.to_dict())
        return
    emit('game_update_ack', result)


def handle_ping(data=None):
    emit('pong', data or {})


def register_socketio_handlers() -> None:
    """Register Socket.IO event handlers on namespace '/ws'."""
    socketio.on_event('connect', handle_connect, namespace='/ws')
    socketio.on_event('disconnect', handle_disconnect, namespace='/ws')
    socketio.on_event('subscribe_player', handle_subscribe_player, namespace='/ws')
    socketio.on_event('unsubscribe_player', handle_unsubscribe_player, namespace='/ws')
    socketio.on_event('request_game_state', handle_request_game_state, namespace='/ws')
    socketio.on_event('game_update', handle_game_update, namespace='/ws')
    socketio.on_event('ping', handle_ping, namespace='/ws')
