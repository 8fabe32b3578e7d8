from datetime import timedelta

import pytest

from stock_auctions import db
from stock_auctions.errors import (
    ConcurrencyConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from stock_auctions.models import Auction, AuctionFailure, AuctionStatus, OrderStatus, UserAuctionStats
from stock_auctions.notifications import (
    AUCTION_CANCELLED,
    AUCTION_ENDED_NOT_WON,
    AUCTION_RELISTED,
    AUCTION_WON,
)


def failed_auction(services, clock, make_auction, variant=None, winner_id=2):
    """An auction won by `winner_id` whose payment deadline lapsed"""
    auction = make_auction(variant) if variant else make_auction()
    services.bids.place_bid(auction.id, 9, 10000)
    services.bids.place_bid(auction.id, winner_id, 11000)
    services.auctions.end_auction(auction.id)
    clock.advance(timedelta(hours=49))
    services.sweeps.detect_payment_failures()
    return auction


def test_create_reserves_stock(services, make_variant, make_auction):
    variant = make_variant(stock=10)
    auction = make_auction(variant, quantity=3)

    assert auction.status == AuctionStatus.ACTIVE
    assert auction.current_bid == auction.start_price == 10000
    assert auction.created_by == 1
    assert services.stock.get_stock(variant.id) == 7


def test_create_with_insufficient_stock(services, make_variant, make_auction):
    variant = make_variant(stock=1)

    with pytest.raises(ValidationError, match="Available: 1, Required: 2"):
        make_auction(variant)

    assert Auction.query.count() == 0
    assert services.stock.get_stock(variant.id) == 1


def test_create_requires_buyout_above_start(make_auction):
    with pytest.raises(ValidationError, match="Buy out price"):
        make_auction(start_price=20000, buy_out_price=20000)


def test_create_uses_default_increment(services, make_variant):
    variant = make_variant()
    auction = services.auctions.create(1, {
        'variant_id': variant.id,
        'quantity': 1,
        'start_price': 10000,
        'buy_out_price': 90000,
    })

    assert auction.min_increment == 10000


def test_create_for_unknown_variant(services):
    with pytest.raises(NotFoundError):
        services.auctions.create(1, {
            'variant_id': 404, 'quantity': 1, 'start_price': 10000, 'buy_out_price': 20000,
        })


def test_update_adjusts_prices_and_stock(services, make_variant, make_auction):
    variant = make_variant(stock=10)
    auction = make_auction(variant)

    services.auctions.update(1, auction.id, {'start_price': 15000, 'quantity': 5})
    assert auction.start_price == auction.current_bid == 15000
    assert auction.quantity == 5
    assert services.stock.get_stock(variant.id) == 5

    services.auctions.update(1, auction.id, {'quantity': 1})
    assert services.stock.get_stock(variant.id) == 9

    with pytest.raises(ValidationError, match="Insufficient stock"):
        services.auctions.update(1, auction.id, {'quantity': 11})

    with pytest.raises(ValidationError, match="Buy out price"):
        services.auctions.update(1, auction.id, {'buy_out_price': 15000})


def test_update_rejected_once_bid(services, make_auction):
    auction = make_auction()
    services.bids.place_bid(auction.id, 2, 10000)

    with pytest.raises(InvalidStateError, match="existing bids"):
        services.auctions.update(1, auction.id, {'start_price': 20000})


def test_end_with_bids_picks_highest_bidder(services, dispatcher, clock, make_auction):
    auction = make_auction()
    services.bids.place_bid(auction.id, 2, 10000)
    services.bids.place_bid(auction.id, 3, 11000)
    services.bids.place_bid(auction.id, 4, 12000)
    dispatcher.clear()

    services.auctions.end_auction(auction.id, ended_by=1)

    assert auction.status == AuctionStatus.ENDED
    assert auction.winner_id == 4
    assert auction.current_bid == 12000
    assert auction.payment_deadline == clock.now + timedelta(hours=48)
    assert services.stats.get_stats(4).total_won == 1

    assert [e.template for e in dispatcher.for_user(4)] == [AUCTION_WON]
    assert dispatcher.for_user(4)[0].data['payment_deadline'] == auction.payment_deadline.isoformat()
    for loser in (2, 3):
        assert [e.template for e in dispatcher.for_user(loser)] == [AUCTION_ENDED_NOT_WON]


def test_end_without_bids_cancels_and_releases(services, make_variant, make_auction):
    variant = make_variant(stock=10)
    auction = make_auction(variant)

    services.auctions.end_auction(auction.id)

    assert auction.status == AuctionStatus.CANCELLED
    assert auction.failure_reason == 'no_bids'
    assert auction.winner_id is None
    assert services.stock.get_stock(variant.id) == 10


def test_end_twice_only_first_wins(services, make_auction):
    auction = make_auction()
    services.bids.place_bid(auction.id, 2, 10000)

    services.auctions.end_auction(auction.id, ended_by=1)
    with pytest.raises(InvalidStateError):
        services.auctions.end_auction(auction.id)

    assert services.stats.get_stats(2).total_won == 1


def test_transition_reports_lost_race(services, make_auction):
    auction = make_auction()

    with pytest.raises(ConcurrencyConflictError):
        services.auctions.transition(auction.id, AuctionStatus.ACTIVE, {
            Auction.status: AuctionStatus.ENDED,
        }, expected_version=auction.version + 1)
    db.session.rollback()

    with pytest.raises(InvalidStateError, match="Auction is ACTIVE, expected ENDED"):
        services.auctions.transition(auction.id, AuctionStatus.ENDED, {
            Auction.status: AuctionStatus.PAYMENT_FAILED,
        })
    db.session.rollback()


def test_cancel_releases_stock_and_tells_bidders(services, dispatcher, make_variant, make_auction):
    variant = make_variant(stock=10)
    auction = make_auction(variant)
    services.bids.place_bid(auction.id, 2, 10000)
    services.bids.place_bid(auction.id, 3, 11000)
    dispatcher.clear()

    services.auctions.cancel(1, auction.id, "Item damaged")

    assert auction.status == AuctionStatus.CANCELLED
    assert auction.failure_reason == "Item damaged"
    assert services.stock.get_stock(variant.id) == 10
    assert sorted(e.recipient_id for e in dispatcher.events if e.template == AUCTION_CANCELLED) == [2, 3]

    with pytest.raises(InvalidStateError):
        services.auctions.cancel(1, auction.id, "again")


def test_buyout_ends_auction_at_buyout_price(services, dispatcher, clock, make_auction):
    auction = make_auction()
    services.bids.place_bid(auction.id, 2, 10000)
    services.bids.place_bid(auction.id, 3, 11000)

    with pytest.raises(ValidationError):
        services.bids.place_bid(auction.id, 4, 50000)

    dispatcher.clear()
    services.auctions.buy_out(4, auction.id)

    assert auction.status == AuctionStatus.ENDED
    assert auction.current_bid == 50000
    assert auction.winner_id == 4
    assert auction.payment_deadline == clock.now + timedelta(hours=48)
    assert services.stats.get_stats(4).total_won == 1
    assert dispatcher.for_user(4) == []
    assert {e.recipient_id for e in dispatcher.events if e.template == AUCTION_ENDED_NOT_WON} == {2, 3}

    with pytest.raises(InvalidStateError):
        services.auctions.buy_out(5, auction.id)


def test_banned_user_cannot_buy_out(services, clock, make_auction):
    auction = make_auction()
    db.session.add(UserAuctionStats(
        user_id=6, total_won=0, total_paid=0, total_failed=3,
        banned_until=clock.now + timedelta(days=3)
    ))
    db.session.commit()

    with pytest.raises(ForbiddenError):
        services.auctions.buy_out(6, auction.id)

    assert auction.status == AuctionStatus.ACTIVE


def test_relist_failed_auction(services, dispatcher, clock, make_variant, make_auction):
    variant = make_variant(stock=10)
    original = failed_auction(services, clock, make_auction, variant)
    assert original.status == AuctionStatus.PAYMENT_FAILED
    assert services.stock.get_stock(variant.id) == 10
    dispatcher.clear()

    relisted = services.auctions.relist(1, original.id, notify_previous_bidders=True, admin_note="second chance")

    assert relisted.status == AuctionStatus.ACTIVE
    assert relisted.is_relisted is True
    assert relisted.original_auction_id == original.id
    assert relisted.current_bid == original.start_price
    assert relisted.buy_out_price == original.buy_out_price
    assert original.status == AuctionStatus.RELISTED
    assert services.stock.get_stock(variant.id) == 8
    assert AuctionFailure.query.filter_by(auction_id=original.id).one().was_relisted is True
    assert sorted(e.recipient_id for e in dispatcher.events if e.template == AUCTION_RELISTED) == [2, 9]

    with pytest.raises(InvalidStateError):
        services.auctions.relist(1, original.id)


def test_relist_requires_payment_failed(services, make_auction):
    auction = make_auction()

    with pytest.raises(InvalidStateError, match="Only failed auctions"):
        services.auctions.relist(1, auction.id)


def test_relist_requires_stock(services, clock, make_variant, make_auction):
    variant = make_variant(stock=2)
    original = failed_auction(services, clock, make_auction, variant)
    variant.stock = 1
    db.session.commit()

    with pytest.raises(ValidationError, match="Insufficient stock"):
        services.auctions.relist(1, original.id)

    assert original.status == AuctionStatus.PAYMENT_FAILED


def test_get_and_list(services, make_variant, make_auction):
    variant = make_variant()
    first = make_auction(variant)
    second = make_auction(start_price=30000)
    services.bids.place_bid(first.id, 2, 10000)
    services.bids.place_bid(first.id, 3, 11000)
    services.bids.place_bid(first.id, 2, 12000)

    details = services.auctions.get(first.id)
    assert details['total_bids'] == 3
    assert details['unique_bidders'] == 2
    assert details['variant'] == {'id': variant.id, 'sku': variant.sku, 'stock': 8}

    assert {a['id'] for a in services.auctions.list_auctions()} == {first.id, second.id}
    assert [a['id'] for a in services.auctions.list_auctions(variant_id=variant.id)] == [first.id]
    assert [a['id'] for a in services.auctions.list_auctions(min_price=20000)] == [second.id]
    assert [a['id'] for a in services.auctions.list_auctions(max_price=20000)] == [first.id]
    assert services.auctions.list_auctions(status=AuctionStatus.ENDED) == []

    with pytest.raises(NotFoundError):
        services.auctions.get(999)


def test_checkout_candidates(services, make_auction):
    first = make_auction()
    second = make_auction()
    other = make_auction()
    services.bids.place_bid(first.id, 2, 10000)
    services.bids.place_bid(second.id, 2, 15000)
    services.bids.place_bid(other.id, 3, 10000)
    for auction in (first, second, other):
        services.auctions.end_auction(auction.id)

    result = services.auctions.checkout_candidates(2)
    assert {a.id for a in result['auctions']} == {first.id, second.id}
    assert result['subtotal'] == 25000
    assert result['payment_deadline'] == first.payment_deadline

    assert services.auctions.checkout_candidates(2, [second.id])['subtotal'] == 15000

    with pytest.raises(ValidationError, match="not available"):
        services.auctions.checkout_candidates(2, [first.id, other.id])
    with pytest.raises(NotFoundError):
        services.auctions.checkout_candidates(2, [other.id])


def test_link_unlink_and_pay(services, make_auction, make_order):
    first = make_auction()
    second = make_auction()
    for auction in (first, second):
        services.bids.place_bid(auction.id, 2, 10000)
        services.auctions.end_auction(auction.id)

    order = make_order(2)
    services.auctions.link_to_order(2, order.id, [first.id, second.id])

    assert first.order_id == second.order_id == order.id
    assert order.payment_deadline == first.payment_deadline
    assert services.auctions.checkout_candidates(2)['auctions'] == []

    assert services.auctions.unlink_from_order(order.id) == 2
    assert first.order_id is None

    services.auctions.link_to_order(2, order.id, [first.id, second.id])
    services.auctions.mark_order_paid(order.id)

    assert order.status == OrderStatus.CONFIRMED
    stats = services.stats.get_stats(2)
    assert stats.total_won == 2
    assert stats.total_paid == 2
    assert stats.success_rate() == 1.0

    with pytest.raises(InvalidStateError):
        services.auctions.mark_order_paid(order.id)


def test_link_guards(services, make_auction, make_order):
    auction = make_auction()
    services.bids.place_bid(auction.id, 2, 10000)
    services.auctions.end_auction(auction.id)

    with pytest.raises(NotFoundError):
        services.auctions.link_to_order(2, 999, [auction.id])

    with pytest.raises(ForbiddenError):
        services.auctions.link_to_order(2, make_order(3).id, [auction.id])

    with pytest.raises(InvalidStateError):
        services.auctions.link_to_order(2, make_order(2, status=OrderStatus.CONFIRMED).id, [auction.id])

    with pytest.raises(NotFoundError):
        services.auctions.link_to_order(3, make_order(3).id, [auction.id])

    assert auction.order_id is None


def test_paid_order_keeps_its_auctions(services, clock, make_variant, make_auction, make_order):
    variant = make_variant(stock=10)
    auction = make_auction(variant)
    services.bids.place_bid(auction.id, 2, 10000)
    services.auctions.end_auction(auction.id)

    order = make_order(2)
    services.auctions.link_to_order(2, order.id, [auction.id])
    services.auctions.mark_order_paid(order.id)

    with pytest.raises(InvalidStateError, match="CONFIRMED"):
        services.auctions.unlink_from_order(order.id)

    assert auction.order_id == order.id
    assert auction.status == AuctionStatus.ENDED

    clock.advance(timedelta(hours=49))
    assert services.sweeps.detect_payment_failures()['count'] == 0
    assert services.stock.get_stock(variant.id) == 8

    stats = services.stats.get_stats(2)
    assert stats.total_paid == 1
    assert stats.total_failed == 0


def test_unlink_from_cancelled_order(services, make_auction, make_order):
    auction = make_auction()
    services.bids.place_bid(auction.id, 2, 10000)
    services.auctions.end_auction(auction.id)

    order = make_order(2)
    services.auctions.link_to_order(2, order.id, [auction.id])
    order.status = OrderStatus.CANCELLED
    db.session.commit()

    assert services.auctions.unlink_from_order(order.id) == 1
    assert auction.order_id is None
    assert [a.id for a in services.bids.won_pending_payment(2)] == [auction.id]


def test_timestamps_follow_the_clock(services, clock, make_auction):
    created = clock.now
    auction = make_auction()

    assert auction.created_at == auction.updated_at == created

    services.bids.place_bid(auction.id, 2, 10000)
    ended = clock.advance(timedelta(hours=3))
    services.auctions.end_auction(auction.id)

    assert auction.created_at == created
    assert auction.updated_at == ended


def test_failed_payments_newest_first(services, clock, make_auction):
    first = make_auction()
    second = make_auction()
    services.bids.place_bid(first.id, 2, 10000)
    services.bids.place_bid(second.id, 2, 10000)

    services.auctions.end_auction(first.id)
    clock.advance(timedelta(hours=1))
    services.auctions.end_auction(second.id)

    clock.advance(timedelta(hours=47, minutes=30))
    assert services.sweeps.detect_payment_failures()['ids'] == [first.id]
    clock.advance(timedelta(hours=1))
    assert services.sweeps.detect_payment_failures()['ids'] == [second.id]

    assert [a.id for a in services.auctions.list_failed_payments()] == [second.id, first.id]
