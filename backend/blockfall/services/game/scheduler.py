import logging
from typing import Callable, List, Tuple

logger = logging.getLogger(__name__)


class BackgroundJobs:
    """Periodic maintenance loops run as Socket.IO background tasks.

    - duration tick (hub.tick_durations)
    - persistence flush (registry.flush)
    - expired challenge sweep (challenges.sweep_expired)

    Each iteration logs and survives its own failure. ``shutdown()`` stops
    the loops and flushes once more.
    """

    def __init__(self, socketio, registry, hub, challenges, tick_sec=1, autosave_sec=30, sweep_sec=60):
        self.socketio = socketio
        self.registry = registry
        self._stopped = False
        self._started = False
        self.jobs: List[Tuple[str, float, Callable[[], object]]] = [
            ('duration-tick', tick_sec, hub.tick_durations),
            ('autosave', autosave_sec, registry.flush),
            ('challenge-sweep', sweep_sec, challenges.sweep_expired),
        ]

    @classmethod
    def from_config(cls, config, socketio, registry, hub, challenges) -> 'BackgroundJobs':
        return cls(
            socketio, registry, hub, challenges,
            tick_sec=float(config.get('DURATION_TICK_SEC', 1)),
            autosave_sec=float(config.get('AUTOSAVE_INTERVAL_SEC', 30)),
            sweep_sec=float(config.get('CHALLENGE_SWEEP_SEC', 60)),
        )

    def _loop(self, name: str, interval: float, job: Callable[[], object]) -> None:
        logger.info(f"[job-start] job={name} interval={interval}s")
        while not self._stopped:
            self.socketio.sleep(interval)
            if self._stopped:
                break
            try:
                job()
            except Exception:
                logger.exception(f"[job-failed] job={name}")
        logger.info(f"[job-stop] job={name}")

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._stopped = False
        for name, interval, job in self.jobs:
            if interval and interval > 0:
                self.socketio.start_background_task(self._loop, name, interval, job)

    def run_once(self) -> None:
        for name, _, job in self.jobs:
            try:
                job()
            except Exception:
                logger.exception(f"[job-failed] job={name}")

    def shutdown(self) -> bool:
        self._stopped = True
        self._started = False
        return self.registry.flush()
