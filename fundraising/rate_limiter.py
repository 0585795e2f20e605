"""
Rate limiting for HTTP endpoints and for outbound SMS.
Uses in-memory storage suitable for a single-process deployment.
"""

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
import functools
import time
from datetime import datetime
import threading
import logging
from typing import Optional
import os

logger = logging.getLogger(__name__)


class SMSRateLimitExceeded(Exception):
    """Raised when the daily outbound SMS allowance is used up."""


class APIRateLimiter:
    """Throttles outbound SMS to a per-second rate and a daily cap."""

    def __init__(self, messages_per_second: Optional[int] = None, messages_per_day: Optional[int] = None):
        self.sms_limits = {
            'messages_per_day': messages_per_day or int(os.getenv('SMS_MESSAGES_PER_DAY', '2000')),
            'messages_per_second': messages_per_second or int(os.getenv('SMS_MESSAGES_PER_SECOND', '5')),
            'last_message_time': None,
            'daily_count': 0,
            'last_daily_reset': datetime.now()
        }

        self._lock = threading.Lock()

    def _reset_daily_if_needed(self) -> None:
        """Reset daily message counter if day has changed."""
        now = datetime.now()
        if now.date() > self.sms_limits['last_daily_reset'].date():
            self.sms_limits['daily_count'] = 0
            self.sms_limits['last_daily_reset'] = now

    def check_sms_limit(self) -> bool:
        """
        Claim a slot for one SMS, waiting out the per-second interval if needed.

        Returns:
            bool: False when the daily cap has been reached
        """
        with self._lock:
            self._reset_daily_if_needed()

            if self.sms_limits['daily_count'] >= self.sms_limits['messages_per_day']:
                return False

            interval = 1.0 / self.sms_limits['messages_per_second']
            last = self.sms_limits['last_message_time']
            if last is not None:
                wait = interval - (datetime.now() - last).total_seconds()
                if wait > 0:
                    time.sleep(wait)

            self.sms_limits['last_message_time'] = datetime.now()
            self.sms_limits['daily_count'] += 1
            return True

    def configure(self, messages_per_second: int, messages_per_day: int) -> None:
        with self._lock:
            self.sms_limits['messages_per_second'] = messages_per_second
            self.sms_limits['messages_per_day'] = messages_per_day

    def reset(self) -> None:
        with self._lock:
            self.sms_limits['last_message_time'] = None
            self.sms_limits['daily_count'] = 0
            self.sms_limits['last_daily_reset'] = datetime.now()


# Initialize Flask-Limiter with in-memory storage
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["1000 per day", "200 per hour"],
    storage_uri="memory://"
)

api_limiter = APIRateLimiter()


def rate_limit_sms():
    """Decorator for SMS sending with rate limiting."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            if api_limiter.check_sms_limit():
                return func(*args, **kwargs)

            logger.error("Daily outbound SMS rate limit reached")
            raise SMSRateLimitExceeded("Rate limit exceeded")

        return wrapper
    return decorator
