"""Error taxonomy shared by the game services and the transport layer.

Every rejection carries a stable ``kind`` that clients can switch on and a
human readable ``reason``. Route and socket handlers never build error
payloads by hand; they let a ``GameError`` propagate and render it with
``to_dict()``.
"""
from typing import Any, Dict, Optional


class GameError(Exception):
    kind = 'game_error'
    status_code = 400

    def __init__(self, reason: str, **extra: Any):
        super().__init__(reason)
        self.reason = reason
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        payload = {'error': self.reason, 'kind': self.kind}
        payload.update(self.extra)
        return payload


class BadRequest(GameError):
    kind = 'bad_request'
    status_code = 400


class NotFound(GameError):
    kind = 'not_found'
    status_code = 404


class InvalidTransition(GameError):
    kind = 'invalid_transition'
    status_code = 409


class IdentityMismatch(GameError):
    kind = 'identity_mismatch'
    status_code = 403

    # Same message whichever field was wrong
    GENERIC_REASON = 'Nickname is taken; use the matching email or choose another nickname'

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or self.GENERIC_REASON)


class ChallengeRequired(GameError):
    kind = 'challenge_required'
    status_code = 423

    def __init__(self, reason: str, challenge_id: Optional[str] = None):
        super().__init__(reason, challenge_id=challenge_id)
        self.challenge_id = challenge_id


class CheatDetected(GameError):
    kind = 'cheat_detected'
    status_code = 403
