from flask import current_app

from blockfall.storage import JsonSessionStore
from blockfall.services.game.broadcast import BroadcastHub
from blockfall.services.game.challenges import ChallengeStore
from blockfall.services.game.escalation import EscalationGate
from blockfall.services.game.registry import SessionRegistry
from blockfall.services.game.scheduler import BackgroundJobs
from blockfall.services.game.validation import ValidationPolicy

EXTENSION_KEY = 'blockfall'


class GameEngine:
    """Owns the registry and its collaborators for one application instance."""

    def __init__(self, registry, hub, challenges, store, jobs):
        self.registry = registry
        self.hub = hub
        self.challenges = challenges
        self.store = store
        self.jobs = jobs

    @classmethod
    def from_config(cls, config, socketio, **overrides) -> 'GameEngine':
        store = JsonSessionStore(config['DATA_DIR'], retention=int(config.get('BACKUP_RETENTION', 10)))
        # An empty ChallengeStore is falsy, so test for None explicitly
        challenges = overrides.pop('challenges', None)
        if challenges is None:
            challenges = ChallengeStore(ttl_sec=int(config.get('CHALLENGE_TTL_SEC', 120)))
        gate = overrides.pop('gate', None)
        if gate is None:
            gate = EscalationGate(float(config.get('CHALLENGE_BASE_PROBABILITY', 0.005)))
        schedule = overrides.pop('schedule', None)
        if schedule is None:
            schedule = (lambda fn: fn()) if config.get('TESTING') else socketio.start_background_task
        registry = SessionRegistry(
            store=store,
            challenges=challenges,
            gate=gate,
            policy=ValidationPolicy.from_config(config),
            schedule=schedule,
            **overrides
        )
        registry.load()
        hub = BroadcastHub(socketio, registry, namespace='/ws', top_n=int(config.get('LEADERBOARD_TOP_N', 10)))
        registry.add_listener(hub)
        jobs = BackgroundJobs.from_config(config, socketio, registry, hub, challenges)
        return cls(registry, hub, challenges, store, jobs)

    def shutdown(self) -> bool:
        return self.jobs.shutdown()


def get_engine() -> GameEngine:
    return current_app.extensions[EXTENSION_KEY]
