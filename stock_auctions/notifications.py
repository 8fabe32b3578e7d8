"""
Outcome notifications

State changes produce `NotificationEvent`s (template + recipient + payload).
They are handed to a dispatcher only after the owning transaction commits,
and delivery is best effort: a failing dispatcher is logged, never raised.
"""
from dataclasses import dataclass, field
from datetime import timedelta

import requests
from sqlalchemy.exc import IntegrityError

from stock_auctions import db
from stock_auctions.models import NotificationThrottle
import logging

logger = logging.getLogger(__name__)

# Template identifiers
OUTBID = 'auction-outbid'
AUCTION_WON = 'auction-won'
AUCTION_ENDED_NOT_WON = 'auction-ended-not-won'
PAYMENT_DEADLINE_EXCEEDED = 'payment-deadline-exceeded'
USER_BANNED = 'user-banned'
AUCTION_RELISTED = 'auction-relisted'
AUCTION_CANCELLED = 'auction-cancelled'


@dataclass
class NotificationEvent:
    template: str
    recipient_id: int
    data: dict = field(default_factory=dict)

    def to_dict(self):
        return {
            'template': self.template,
            'recipient_id': self.recipient_id,
            'data': self.data,
        }


class NotificationDispatcher:
    """Delivery interface; implementations may raise, callers never see it"""

    def send(self, event):
        raise NotImplementedError


class LoggingDispatcher(NotificationDispatcher):
    """Default dispatcher when no webhook is configured"""

    def send(self, event):
        logger.info(f"Notification {event.template} -> user {event.recipient_id}: {event.data}")


class WebhookDispatcher(NotificationDispatcher):
    """POSTs each event as JSON to the notification service"""

    def __init__(self, url, timeout=10):
        self.url = url
        self.timeout = timeout

    def send(self, event):
        logger.debug(f"Posting {event.template} notification to {self.url}")

        response = requests.post(self.url, json=event.to_dict(), timeout=self.timeout)

        logger.debug(f"Notification webhook response status: {response.status_code}")

        response.raise_for_status()


class RecordingDispatcher(NotificationDispatcher):
    """Keeps events in memory; used by tests and local tooling"""

    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(event)

    def templates(self):
        return [event.template for event in self.events]

    def for_user(self, user_id):
        return [event for event in self.events if event.recipient_id == user_id]

    def clear(self):
        self.events = []


def dispatcher_from_config(config):
    url = config.get('NOTIFICATION_WEBHOOK_URL')
    if url:
        return WebhookDispatcher(url, timeout=config.get('NOTIFICATION_TIMEOUT', 10))
    return LoggingDispatcher()


def dispatch_all(dispatcher, events):
    """Deliver events one by one; a failed delivery is logged and skipped"""
    delivered = 0
    for event in events:
        try:
            dispatcher.send(event)
            delivered += 1
        except Exception as e:
            logger.error(f"Failed to send {event.template} notification to user {event.recipient_id}: {str(e)}")
    return delivered


class NotificationThrottleStore:
    """
    Persisted "at most one per window" gate, shared by every instance that
    talks to the same database.
    """

    def try_acquire(self, key, now, window):
        """
        Claim `key` for `window` starting at `now`.

        Returns True if the caller may send, False while a previous claim is
        still live. Runs in its own short transaction.
        """
        expires_at = now + window
        try:
            # Take over an expired claim
            rows = NotificationThrottle.query.filter(
                NotificationThrottle.key == key,
                NotificationThrottle.expires_at <= now
            ).update({NotificationThrottle.expires_at: expires_at}, synchronize_session=False)

            if rows == 0:
                if db.session.get(NotificationThrottle, key) is not None:
                    db.session.rollback()
                    return False
                db.session.add(NotificationThrottle(key=key, expires_at=expires_at))

            db.session.commit()
            return True

        except IntegrityError:
            # Another instance inserted the same key first
            db.session.rollback()
            return False


class OutbidThrottle:
    """One outbid notification per user per window"""

    def __init__(self, store=None, window=timedelta(minutes=30)):
        self.store = store or NotificationThrottleStore()
        self.window = window

    def allow(self, user_id, now):
        return self.store.try_acquire(f"outbid:{user_id}", now, self.window)
