import os
import random
import sys
import pytest

# Ensure the backend root (containing the `blockfall` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from blockfall import create_app, socketio
from blockfall.services.game.challenges import ChallengeStore
from blockfall.services.game.escalation import EscalationGate
from blockfall.services.game.pieces import PieceGenerator
from blockfall.services.game.registry import SessionRegistry

EMPTY_ROW = [0] * 10
FULL_ROW = [1] * 10


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start=1_700_000_000_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms
        return self.now

    def seconds(self):
        return self.now / 1000.0


class ScriptedRandom(random.Random):
    """random() always returns ``value``; the escalation gate fires when value < probability."""

    def __init__(self, value):
        super().__init__(0)
        self.value = value

    def random(self):
        return self.value


class RecordingListener:
    def __init__(self):
        self.events = []

    def session_changed(self, snapshot):
        self.events.append(('session_changed', snapshot))

    def rankings_changed(self):
        self.events.append(('rankings_changed', None))

    def notify_player(self, session_id, event, payload):
        self.events.append((event, dict(payload, session_id=session_id)))

    def notify_admins(self, event, payload):
        self.events.append((event, payload))

    def names(self):
        return [name for name, _ in self.events]


def board_with_full_rows(n, filler_rows=0):
    """Board whose bottom ``n`` rows are full, with ``filler_rows`` half-filled rows above them."""
    rows = [list(EMPTY_ROW) for _ in range(20 - n)] + [list(FULL_ROW) for _ in range(n)]
    for i in range(filler_rows):
        rows[19 - n - i] = [2] * 5 + [0] * 5
    return rows


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    CORS_ORIGINS = ['http://localhost:5173']
    TOLERANCE_RATIO = 0.5
    EXTRA_TOLERANCE_MS = 2000
    SUSPICIOUS_COUNT = 8
    MAX_PAUSE_TIME_MS = 30000
    PAUSE_TOLERANCE = 10
    CHALLENGE_TTL_SEC = 120
    LEADERBOARD_TOP_N = 10
    BACKUP_RETENTION = 10


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def gate():
    # Never fires unless a test lowers gate.rng.value
    return EscalationGate(rng=ScriptedRandom(0.999))


@pytest.fixture()
def challenges(clock):
    return ChallengeStore(ttl_sec=120, clock=clock.seconds, rng=random.Random(3))


@pytest.fixture()
def listener():
    return RecordingListener()


@pytest.fixture()
def registry(clock, gate, challenges, listener):
    reg = SessionRegistry(
        challenges=challenges,
        gate=gate,
        generator=PieceGenerator(random.Random(7)),
        clock=clock,
    )
    reg.add_listener(listener)
    return reg


@pytest.fixture()
def playing(registry):
    """A registered and started session id."""
    session, _ = registry.register('alice', 'alice@example.com')
    registry.start_session(session.id)
    return session.id


@pytest.fixture()
def flask_app(tmp_path, clock, gate, challenges):
    config = type('TestConfig', (TestConfig,), {'DATA_DIR': str(tmp_path / 'data')})
    application = create_app(config, clock=clock, gate=gate, challenges=challenges,
                             generator=PieceGenerator(random.Random(11)))
    with application.app_context():
        yield application


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def engine(flask_app):
    from blockfall.engine import get_engine
    return get_engine()


@pytest.fixture()
def sio_factory(flask_app):
    clients = []

    def _connect(query_string=''):
        test_client = socketio.test_client(flask_app, namespace='/ws', query_string=query_string)
        clients.append(test_client)
        return test_client

    yield _connect
    for test_client in clients:
        try:
            if test_client.is_connected('/ws'):
                test_client.disconnect(namespace='/ws')
        except Exception:
            pass
