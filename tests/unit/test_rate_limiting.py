import pytest
from datetime import datetime, timezone, timedelta

from rendezvous.exceptions import RateLimitedError
from rendezvous.utils import _check_rate_limit, _like_log, enforce_rate_limit, reset_rate_limits


def test_rate_limit_function():
    """Test the rate limiting function directly"""
    log_dict = {}
    user_id = "alice"
    limit = 3

    # First 3 requests should succeed
    for i in range(3):
        result = _check_rate_limit(user_id, log_dict, limit)
        assert result is True, f"Request {i} should succeed"
        assert len(log_dict[user_id]) == i + 1

    # 4th request should fail
    result = _check_rate_limit(user_id, log_dict, limit)
    assert result is False, "4th request should be rate limited"
    assert len(log_dict[user_id]) == 3


def test_rate_limit_window():
    """Test that rate limiting respects the time window"""
    log_dict = {}
    user_id = "alice"
    limit = 2

    # Old timestamps (outside the one minute window)
    old_time = datetime.now(timezone.utc) - timedelta(minutes=2)
    log_dict[user_id] = [old_time, old_time, old_time]

    for i in range(2):
        result = _check_rate_limit(user_id, log_dict, limit)
        assert result is True, f"Request {i} should succeed after window reset"

    result = _check_rate_limit(user_id, log_dict, limit)
    assert result is False, "3rd request should be rate limited"


def test_rate_limit_per_user():
    """Test that rate limiting is per-user"""
    log_dict = {}
    limit = 2

    for i in range(2):
        assert _check_rate_limit("alice", log_dict, limit) is True

    assert _check_rate_limit("alice", log_dict, limit) is False

    # bob keeps a separate window
    for i in range(2):
        assert _check_rate_limit("bob", log_dict, limit) is True


def test_rate_limit_cleanup():
    """Test that old entries are cleaned up"""
    log_dict = {}
    user_id = "alice"
    limit = 2

    now = datetime.now(timezone.utc)
    old_time = now - timedelta(minutes=2)
    recent_time = now - timedelta(seconds=30)
    log_dict[user_id] = [old_time, recent_time, old_time]

    # Only the recent entry counts, so one more request fits
    assert _check_rate_limit(user_id, log_dict, limit) is True
    assert len(log_dict[user_id]) == 2
    assert all(ts >= now - timedelta(minutes=1) for ts in log_dict[user_id])

    assert _check_rate_limit(user_id, log_dict, limit) is False


def test_enforce_rate_limit_raises_with_action():
    reset_rate_limits()
    enforce_rate_limit("alice", _like_log, 1, "likes")

    with pytest.raises(RateLimitedError) as exc_info:
        enforce_rate_limit("alice", _like_log, 1, "likes")

    assert exc_info.value.status_code == 429
    assert exc_info.value.action == "likes"
    reset_rate_limits()


def test_enforce_rate_limit_zero_disables():
    log_dict = {}
    for _ in range(10):
        enforce_rate_limit("alice", log_dict, 0, "messages")
    assert log_dict == {}
