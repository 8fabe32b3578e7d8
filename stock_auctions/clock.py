"""
Injectable clock

Every time-driven rule (bid extension, payment deadline, ban expiry, sweep
cutoffs) reads "now" through a clock so tests can pin and advance time.
All values are naive UTC datetimes, which is what the database stores.
"""
from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class FrozenClock:
    """Clock that only moves when told to"""

    def __init__(self, now=None):
        self.now = now or utcnow()

    def __call__(self):
        return self.now

    def set(self, now):
        self.now = now

    def advance(self, delta):
        self.now = self.now + delta
        return self.now
