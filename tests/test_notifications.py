from datetime import timedelta

import pytest
import requests

from stock_auctions import notifications
from stock_auctions.models import AuctionStatus
from stock_auctions.notifications import (
    AUCTION_WON,
    LoggingDispatcher,
    NotificationDispatcher,
    NotificationEvent,
    NotificationThrottleStore,
    OutbidThrottle,
    RecordingDispatcher,
    WebhookDispatcher,
    dispatch_all,
    dispatcher_from_config,
)


class ExplodingDispatcher(NotificationDispatcher):

    def __init__(self):
        self.attempts = 0

    def send(self, event):
        self.attempts += 1
        raise ConnectionError("notification service down")


class FakeResponse:

    def __init__(self, status_code):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


def test_dispatch_all_is_best_effort():
    recording = RecordingDispatcher()
    events = [NotificationEvent(AUCTION_WON, 1, {'auction_id': 1}), NotificationEvent(AUCTION_WON, 2)]

    assert dispatch_all(recording, events) == 2
    assert recording.templates() == [AUCTION_WON, AUCTION_WON]

    exploding = ExplodingDispatcher()
    assert dispatch_all(exploding, events) == 0
    assert exploding.attempts == 2


def test_failed_delivery_does_not_undo_transition(services, monkeypatch, make_auction):
    auction = make_auction()
    services.bids.place_bid(auction.id, 2, 10000)

    monkeypatch.setattr(services.auctions, 'dispatcher', ExplodingDispatcher())
    services.auctions.end_auction(auction.id)

    assert auction.status == AuctionStatus.ENDED
    assert auction.winner_id == 2


def test_failed_delivery_does_not_fail_bid(services, monkeypatch, make_auction):
    auction = make_auction()
    services.bids.place_bid(auction.id, 2, 10000)

    monkeypatch.setattr(services.bids, 'dispatcher', ExplodingDispatcher())
    result = services.bids.place_bid(auction.id, 3, 11000)

    assert result['bid_amount'] == 11000
    assert auction.current_bid == 11000


def test_throttle_store_expiry(app, clock):
    store = NotificationThrottleStore()
    window = timedelta(minutes=30)

    assert store.try_acquire('outbid:1', clock.now, window) is True
    assert store.try_acquire('outbid:1', clock.now + timedelta(minutes=29), window) is False
    assert store.try_acquire('outbid:2', clock.now, window) is True

    assert store.try_acquire('outbid:1', clock.now + timedelta(minutes=30), window) is True
    assert store.try_acquire('outbid:1', clock.now + timedelta(minutes=59), window) is False


def test_outbid_throttle_keys_by_user(app, clock):
    throttle = OutbidThrottle(window=timedelta(minutes=10))

    assert throttle.allow(1, clock.now) is True
    assert throttle.allow(1, clock.now) is False
    assert throttle.allow(2, clock.now) is True
    assert throttle.allow(1, clock.now + timedelta(minutes=10)) is True


def test_webhook_dispatcher_posts_json(monkeypatch):
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append((url, json, timeout))
        return FakeResponse(204)

    monkeypatch.setattr(notifications.requests, 'post', fake_post)

    dispatcher = WebhookDispatcher('http://notify.local/events', timeout=3)
    dispatcher.send(NotificationEvent(AUCTION_WON, 4, {'auction_id': 9}))

    assert calls == [(
        'http://notify.local/events',
        {'template': AUCTION_WON, 'recipient_id': 4, 'data': {'auction_id': 9}},
        3,
    )]


def test_webhook_dispatcher_raises_on_error_status(monkeypatch):
    monkeypatch.setattr(notifications.requests, 'post', lambda url, json=None, timeout=None: FakeResponse(502))

    with pytest.raises(requests.HTTPError):
        WebhookDispatcher('http://notify.local/events').send(NotificationEvent(AUCTION_WON, 4))


def test_dispatcher_from_config():
    assert isinstance(dispatcher_from_config({'NOTIFICATION_WEBHOOK_URL': ''}), LoggingDispatcher)

    dispatcher = dispatcher_from_config({
        'NOTIFICATION_WEBHOOK_URL': 'http://notify.local/events',
        'NOTIFICATION_TIMEOUT': 5,
    })
    assert isinstance(dispatcher, WebhookDispatcher)
    assert dispatcher.timeout == 5
