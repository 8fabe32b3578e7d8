from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from stock_auctions import atomic, db
from stock_auctions.clock import utcnow
from stock_auctions.errors import (
    ConcurrencyConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from stock_auctions.models import Auction, AuctionStatus, Bid
from stock_auctions.notifications import (
    LoggingDispatcher,
    NotificationEvent,
    OUTBID,
    OutbidThrottle,
    dispatch_all,
)
import logging

logger = logging.getLogger(__name__)


class BidLedger:
    """Validates and records bids, and answers bidder-side queries"""

    def __init__(self, stats, dispatcher=None, throttle=None, clock=None):
        self.stats = stats
        self.dispatcher = dispatcher or LoggingDispatcher()
        self.throttle = throttle or OutbidThrottle()
        self.clock = clock or utcnow

    def leading_bid(self, auction_id):
        return Bid.query.filter_by(auction_id=auction_id).order_by(Bid.bid_amount.desc()).first()

    def minimum_bid(self, auction, leader):
        # The first bid may equal the start price; later ones must clear the increment
        if leader is None:
            return auction.start_price
        return auction.current_bid + auction.min_increment

    def place_bid(self, auction_id, user_id, amount):
        """
        Place a bid on an ACTIVE auction.

        Validation runs against a snapshot of the auction; the write is a
        conditional UPDATE on the snapshot's version, so if another bid (or a
        buyout/end) committed in between, nothing is written and
        ConcurrencyConflictError tells the caller to retry at the new price.

        Every accepted bid moves end_time to now + BID_EXTENSION_HOURS.
        """
        auction = db.session.get(Auction, auction_id)
        if auction is None:
            raise NotFoundError("Auction not found")

        if auction.status != AuctionStatus.ACTIVE:
            raise InvalidStateError("Auction is not active")

        # Snapshot the version the checks below are made against
        expected_version = auction.version
        now = self.clock()

        if self.stats.is_banned(user_id):
            banned_until = self.stats.get_stats(user_id).banned_until
            raise ForbiddenError(f"You are banned from bidding until {banned_until.isoformat()}")

        if amount >= auction.buy_out_price:
            raise ValidationError(
                f"Bid amount cannot be equal to or higher than buy out price ({auction.buy_out_price}). "
                f"Please use buy out option instead."
            )

        leader = self.leading_bid(auction_id)
        min_amount = self.minimum_bid(auction, leader)

        if amount < min_amount:
            raise ValidationError(f"Bid amount must be at least {min_amount}")

        if leader is not None and leader.user_id == user_id:
            raise ValidationError("You are already the highest bidder")

        previous_leader_id = leader.user_id if leader else None
        previous_amount = leader.bid_amount if leader else None
        new_end_time = now + timedelta(hours=current_app.config['BID_EXTENSION_HOURS'])

        logger.info(f"Placing bid: auction {auction_id}, user {user_id}, amount {amount}")

        bid = Bid(auction_id=auction_id, user_id=user_id, bid_amount=amount, bid_time=now)
        try:
            with atomic():
                rows = Auction.query.filter(
                    Auction.id == auction_id,
                    Auction.status == AuctionStatus.ACTIVE,
                    Auction.version == expected_version
                ).update({
                    Auction.current_bid: amount,
                    Auction.last_bid_time: now,
                    Auction.end_time: new_end_time,
                    Auction.version: expected_version + 1,
                    Auction.updated_at: now,
                }, synchronize_session=False)

                if rows == 0:
                    raise ConcurrencyConflictError("Auction changed while placing bid")

                db.session.add(bid)

        except (ConcurrencyConflictError, IntegrityError):
            current = db.session.get(Auction, auction_id)
            logger.info(f"Bid of {amount} on auction {auction_id} lost the race (now {current.current_bid}, {current.status})")
            if current.status != AuctionStatus.ACTIVE:
                raise InvalidStateError("Auction is not active")
            raise ConcurrencyConflictError(
                f"Another bid was accepted first. Current bid is {current.current_bid}, please bid again"
            )

        logger.info(f"Bid {bid.id} placed on auction {auction_id}, auction now ends {new_end_time.isoformat()}")

        if previous_leader_id is not None:
            self._notify_outbid(auction_id, previous_leader_id, previous_amount, amount, now)

        result = bid.to_dict()
        result['new_end_time'] = new_end_time.isoformat()
        return result

    def _notify_outbid(self, auction_id, user_id, your_bid, new_bid, now):
        try:
            if not self.throttle.allow(user_id, now):
                logger.info(f"Outbid notification throttled for user {user_id}")
                return
        except Exception as e:
            db.session.rollback()
            logger.error(f"Outbid throttle check failed for user {user_id}: {str(e)}")
            return

        dispatch_all(self.dispatcher, [NotificationEvent(OUTBID, user_id, {
            'auction_id': auction_id,
            'your_bid': your_bid,
            'new_highest_bid': new_bid,
            'auction_url': auction_url(auction_id),
        })])

    def history(self, auction_id):
        """Get bid history for auction, newest first"""
        if db.session.get(Auction, auction_id) is None:
            raise NotFoundError("Auction not found")

        return Bid.query.filter_by(auction_id=auction_id).order_by(
            Bid.bid_time.desc(), Bid.bid_amount.desc()
        ).all()

    def my_bids(self, user_id):
        """
        Get user's bids: one entry per auction (their latest bid there) with
        whether they currently lead it.
        """
        bids = Bid.query.filter_by(user_id=user_id).order_by(Bid.bid_time.desc(), Bid.id.desc()).all()

        results = []
        seen = set()
        for bid in bids:
            if bid.auction_id in seen:
                continue
            seen.add(bid.auction_id)

            auction = bid.auction
            leader = self.leading_bid(auction.id)
            results.append({
                'id': bid.id,
                'auction_id': auction.id,
                'auction': {
                    'id': auction.id,
                    'variant_id': auction.variant_id,
                    'current_bid': auction.current_bid,
                    'status': auction.status,
                    'end_time': auction.end_time.isoformat() if auction.end_time else None,
                },
                'my_bid': bid.bid_amount,
                'bid_time': bid.bid_time.isoformat(),
                'is_winning': leader is not None and leader.user_id == user_id,
            })

        return results

    def won_pending_payment(self, user_id):
        """Get user's won auctions not yet linked to an order"""
        return Auction.query.filter(
            Auction.winner_id == user_id,
            Auction.status == AuctionStatus.ENDED,
            Auction.order_id.is_(None)
        ).order_by(Auction.end_time.desc(), Auction.id.desc()).all()


def auction_url(auction_id):
    return f"{current_app.config['FRONTEND_URL']}/auctions/{auction_id}"
