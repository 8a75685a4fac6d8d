"""Error taxonomy for the challenge engine.

``ValidationError`` and its subclasses are raised before any state change.
``AlreadyResolved`` is not a failure: it tells the caller someone else already
moved the challenge (or attempt) past the requested transition.
``TransientError`` means the whole call is safe to retry.
``TerminalSettlementFailure`` is raised after the retry ceiling is hit and the
challenge has been settled with an unresolved payment.
"""

from typing import Optional


class WakeGuardError(Exception):
    """Base class for engine errors."""


class ValidationError(WakeGuardError):
    """Bad input; rejected with no state change."""


class InvalidChallenge(ValidationError):
    pass


class ChallengeNotFound(ValidationError):
    def __init__(self, challenge_id: str):
        super().__init__(f"Challenge {challenge_id} not found")
        self.challenge_id = challenge_id


class ChallengeNotActive(ValidationError):
    pass


class ChallengeExpired(ValidationError):
    pass


class ChallengeNotExpired(ValidationError):
    pass


class AlreadyResolved(WakeGuardError):
    """A conditional write lost: the record already left the expected state."""

    def __init__(self, record_id: str, current_status: Optional[str] = None):
        super().__init__(f"{record_id} already resolved (status={current_status})")
        self.record_id = record_id
        self.current_status = current_status


class TransientError(WakeGuardError):
    """Persistence or provider I/O failure."""


class PaymentProviderError(TransientError):
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class TerminalSettlementFailure(WakeGuardError):
    """Retry ceiling exceeded; the penalty needs manual settlement."""

    def __init__(self, challenge_id: str, attempt_id: str, retry_count: int, reason: str):
        super().__init__(
            f"Settlement for challenge {challenge_id} gave up after "
            f"{retry_count} retries: {reason}"
        )
        self.challenge_id = challenge_id
        self.attempt_id = attempt_id
        self.retry_count = retry_count
        self.reason = reason
