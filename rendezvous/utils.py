from datetime import datetime, timedelta, timezone
from typing import Dict, Hashable, List

from .exceptions import RateLimitedError


# In-memory sliding windows: key -> timestamps of recent actions
_like_log: Dict[Hashable, List[datetime]] = {}
_message_log: Dict[Hashable, List[datetime]] = {}


def _check_rate_limit(key: Hashable, log_dict: Dict[Hashable, List[datetime]], limit: int) -> bool:
    """
    Record an action for ``key`` if it is within ``limit`` actions per minute.

    Args:
        key: Who is acting (usually the user id)
        log_dict: Timestamps of recent actions, updated in place
        limit: Allowed actions in the last minute

    Returns:
        True if the action is allowed, False if it is rate limited
    """
    now = datetime.now(timezone.utc)
    window_start = now - timedelta(minutes=1)
    recent = [ts for ts in log_dict.get(key, []) if ts >= window_start]
    if len(recent) >= limit:
        log_dict[key] = recent
        return False
    recent.append(now)
    log_dict[key] = recent
    return True


def enforce_rate_limit(key: Hashable, log_dict: Dict[Hashable, List[datetime]], limit: int, action: str) -> None:
    if limit > 0 and not _check_rate_limit(key, log_dict, limit):
        raise RateLimitedError(action)


def reset_rate_limits() -> None:
    _like_log.clear()
    _message_log.clear()
