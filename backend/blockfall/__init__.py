from flask import Flask, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO
import click
from config import Config

socketio = SocketIO(async_mode=None)

def create_app(config_class=Config, **engine_overrides):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    allowed_origins = flask_app.config.get('CORS_ORIGINS') or []

    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # Registry, hub and jobs are owned by the app, not by module globals
    from blockfall.engine import EXTENSION_KEY, GameEngine
    engine = GameEngine.from_config(flask_app.config, socketio, **engine_overrides)
    flask_app.extensions[EXTENSION_KEY] = engine

    from blockfall.errors import GameError

    @flask_app.errorhandler(GameError)
    def handle_game_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    from blockfall.api.game import game
    flask_app.register_blueprint(game, url_prefix='/api')

    from blockfall.socketio_events import register_socketio_handlers
    register_socketio_handlers()

    if not flask_app.config.get('TESTING') or flask_app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        engine.jobs.start()

    @click.command('storage-backup')
    def storage_backup_command():
        """Copies the session store to a timestamped backup."""
        path = engine.store.backup()
        if path:
            print(f'Backup written to {path}')
        else:
            print('Nothing to back up yet')

    @click.command('storage-stats')
    def storage_stats_command():
        """Prints size and session count of the session store."""
        for key, value in engine.store.stats().items():
            print(f'{key}: {value}')

    flask_app.cli.add_command(storage_backup_command)
    flask_app.cli.add_command(storage_stats_command)

    return flask_app
