import os

class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    # Persistence directory for players.json and its backups
    DATA_DIR = os.environ.get('DATA_DIR') or os.path.join(os.path.dirname(__file__), 'data')
    BACKUP_RETENTION = int(os.environ.get('BACKUP_RETENTION', '10'))
    CORS_ORIGINS = [o for o in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:5173,http://127.0.0.1:5173').split(',') if o]
    # Timing validation (ms)
    TOLERANCE_RATIO = float(os.environ.get('TOLERANCE_RATIO', '0.5'))
    EXTRA_TOLERANCE_MS = int(os.environ.get('EXTRA_TOLERANCE_MS', '2000'))
    SUSPICIOUS_COUNT = int(os.environ.get('SUSPICIOUS_COUNT', '8'))
    MAX_PAUSE_TIME_MS = int(os.environ.get('MAX_PAUSE_TIME_MS', '30000'))
    PAUSE_TOLERANCE = int(os.environ.get('PAUSE_TOLERANCE', '10'))
    # Human verification
    CHALLENGE_TTL_SEC = int(os.environ.get('CHALLENGE_TTL_SEC', '120'))
    CHALLENGE_BASE_PROBABILITY = float(os.environ.get('CHALLENGE_BASE_PROBABILITY', '0.005'))
    # Background job intervals (sec). 0 disables a job.
    DURATION_TICK_SEC = float(os.environ.get('DURATION_TICK_SEC', '1'))
    AUTOSAVE_INTERVAL_SEC = float(os.environ.get('AUTOSAVE_INTERVAL_SEC', '30'))
    CHALLENGE_SWEEP_SEC = float(os.environ.get('CHALLENGE_SWEEP_SEC', '60'))
    LEADERBOARD_TOP_N = int(os.environ.get('LEADERBOARD_TOP_N', '10'))
