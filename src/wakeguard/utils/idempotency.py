"""Deterministic idempotency keys for every side-effecting operation.

Every key is rooted at the challenge id, so repeated invocations of the same
operation (duplicate cron firing, a webhook racing a sweep) always reach the
provider with the same key.
"""

import re

KEY_PATTERN = re.compile(r"^[A-Za-z0-9_:\-]{1,255}$")


def _key(*parts) -> str:
    key = ":".join(str(p) for p in parts)
    if not KEY_PATTERN.match(key):
        raise ValueError(f"Invalid idempotency key: {key!r}")
    return key


def settlement_create(challenge_id: str) -> str:
    return _key("settle", challenge_id, "create")


def settlement_retry(challenge_id: str, attempt_number: int) -> str:
    if attempt_number < 1:
        raise ValueError("Retry numbers start at 1")
    return _key("settle", challenge_id, "retry", attempt_number)


def notification(challenge_id: str, kind: str) -> str:
    return _key("notify", challenge_id, kind)


def is_valid_key(key: str) -> bool:
    return bool(KEY_PATTERN.match(key or ""))


def settlement_attempt_number(key: str) -> int:
    """Attempt number encoded in a settlement key: 0 for create, n for ``retry:n``."""
    parts = (key or "").split(":")
    if len(parts) == 3 and parts[0] == "settle" and parts[2] == "create":
        return 0
    if len(parts) == 4 and parts[0] == "settle" and parts[2] == "retry" and parts[3].isdigit():
        return int(parts[3])
    raise ValueError(f"Not a settlement key: {key!r}")
