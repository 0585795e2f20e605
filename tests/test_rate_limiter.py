import pytest
from datetime import datetime, timedelta
from unittest.mock import Mock, patch
from fundraising.rate_limiter import APIRateLimiter, SMSRateLimitExceeded, api_limiter, rate_limit_sms


def test_sms_rate_limiter_daily_cap():
    """Test the daily SMS cap."""
    limiter = APIRateLimiter(messages_per_second=1000, messages_per_day=2)

    assert limiter.check_sms_limit() is True
    assert limiter.check_sms_limit() is True
    assert limiter.check_sms_limit() is False

    # Should reset once the day changes
    limiter.sms_limits['last_daily_reset'] = datetime.now() - timedelta(days=1)
    assert limiter.check_sms_limit() is True
    assert limiter.sms_limits['daily_count'] == 1


@patch('fundraising.rate_limiter.time.sleep')
def test_sms_rate_limiter_waits_between_messages(mock_sleep):
    limiter = APIRateLimiter(messages_per_second=1, messages_per_day=100)

    assert limiter.check_sms_limit() is True
    mock_sleep.assert_not_called()

    assert limiter.check_sms_limit() is True
    assert 0 < mock_sleep.call_args[0][0] <= 1


def test_configure_and_reset():
    limiter = APIRateLimiter(messages_per_second=5, messages_per_day=10)
    limiter.check_sms_limit()

    limiter.configure(10, 20)
    limiter.reset()

    assert limiter.sms_limits['messages_per_second'] == 10
    assert limiter.sms_limits['messages_per_day'] == 20
    assert limiter.sms_limits['daily_count'] == 0
    assert limiter.sms_limits['last_message_time'] is None


def test_rate_limit_sms_decorator():
    """Test SMS rate limit decorator."""
    mock_func = Mock(return_value={'success': True})
    decorated = rate_limit_sms()(mock_func)

    assert decorated('07700900123')['success'] is True
    mock_func.assert_called_once_with('07700900123')

    api_limiter.configure(1000, 1)
    with pytest.raises(SMSRateLimitExceeded):
        decorated('07700900123')
    assert mock_func.call_count == 1
