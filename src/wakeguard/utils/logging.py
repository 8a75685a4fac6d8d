import logging
import sys
from typing import Optional
from ..config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Set up a logger with the specified name and level."""
    logger = logging.getLogger(name)

    if level is None:
        level = settings.log_level

    logger.setLevel(getattr(logging, level.upper()))

    # Create console handler if it doesn't exist
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(getattr(logging, level.upper()))
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    return logger


class ChallengeLogAdapter(logging.LoggerAdapter):
    """Prefixes every record with the challenge it concerns."""

    def process(self, msg, kwargs):
        return f"[challenge={self.extra['challenge_id']}] {msg}", kwargs


def challenge_logger(logger: logging.Logger, challenge_id: str) -> ChallengeLogAdapter:
    return ChallengeLogAdapter(logger, {"challenge_id": challenge_id})
