"""JSON file persistence for sessions and nickname bindings.

Writes go to a temp file in the same directory and are swapped in with
``os.replace`` so a crash mid-write never leaves a truncated store. The
previous file is kept as a timestamped backup; only the newest
``retention`` backups survive.
"""
import json
import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STORE_FILENAME = 'players.json'
BACKUP_PREFIX = 'players_backup_'


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S%fZ')


class JsonSessionStore:
    def __init__(self, data_dir: str, retention: int = 10):
        self.data_dir = data_dir
        self.retention = retention
        self.path = os.path.join(data_dir, STORE_FILENAME)

    def _ensure_dir(self) -> None:
        os.makedirs(self.data_dir, exist_ok=True)

    def load(self) -> Dict[str, List[Dict[str, Any]]]:
        empty = {'sessions': [], 'nickname_bindings': []}
        if not os.path.exists(self.path):
            return empty
        try:
            with open(self.path, 'r', encoding='utf-8') as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.error(f"[storage-load] path={self.path} error={exc}")
            return empty
        sessions = data.get('sessions') or []
        bindings = data.get('nickname_bindings') or []
        logger.info(f"[storage-load] sessions={len(sessions)} bindings={len(bindings)}")
        return {'sessions': sessions, 'nickname_bindings': bindings}

    def save(self, sessions: List[Dict[str, Any]], nickname_bindings: List[Dict[str, Any]]) -> str:
        """Atomically replace the store. Raises ``OSError`` on failure; callers decide what to do."""
        self._ensure_dir()
        payload = {
            'sessions': sessions,
            'nickname_bindings': nickname_bindings,
            'last_updated': datetime.now(timezone.utc).isoformat(),
        }
        fd, tmp_path = tempfile.mkstemp(prefix='players.', suffix='.tmp', dir=self.data_dir)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as fh:
                json.dump(payload, fh, indent=2)
            if os.path.exists(self.path):
                self.backup()
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        logger.info(f"[storage-save] sessions={len(sessions)} path={self.path}")
        return self.path

    def backup(self) -> Optional[str]:
        if not os.path.exists(self.path):
            return None
        backup_path = os.path.join(self.data_dir, f"{BACKUP_PREFIX}{_timestamp()}.json")
        shutil.copyfile(self.path, backup_path)
        self._prune_backups()
        return backup_path

    def list_backups(self) -> List[str]:
        if not os.path.isdir(self.data_dir):
            return []
        names = sorted(n for n in os.listdir(self.data_dir) if n.startswith(BACKUP_PREFIX))
        return [os.path.join(self.data_dir, n) for n in names]

    def _prune_backups(self) -> None:
        backups = self.list_backups()
        for stale in backups[:-self.retention] if self.retention > 0 else backups:
            os.remove(stale)
            logger.info(f"[storage-prune] removed={os.path.basename(stale)}")

    def stats(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {'exists': False, 'size': 0, 'modified': None, 'session_count': 0, 'last_updated': None}
        st = os.stat(self.path)
        try:
            with open(self.path, 'r', encoding='utf-8') as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            data = {}
        return {
            'exists': True,
            'size': st.st_size,
            'modified': st.st_mtime,
            'session_count': len(data.get('sessions') or []),
            'last_updated': data.get('last_updated'),
            'backups': len(self.list_backups()),
        }
