from datetime import datetime

from lumi.models.base import Record


class RateLimitCounter(Record):
    """Attempt counter; the id is the limiter key (e.g. verify_attempt_<ip>)."""
    attempts: int = 0
    last_attempt: datetime
