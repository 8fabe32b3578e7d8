"""
Deadline sweeps

Three idempotent jobs driven by the DeadlineScheduler (or triggered by hand):

- auto_end_auctions: ACTIVE auctions with no bid for BID_EXTENSION_HOURS → ENDED
- detect_payment_failures: ENDED, unlinked auctions past their payment deadline → PAYMENT_FAILED
- cancel_unpaid_orders: orders past their payment deadline with linked auctions → CANCELLED,
  their auctions → PAYMENT_FAILED

Each selected row is processed in its own transaction. A row that fails is
logged and left in its qualifying state, so the next tick picks it up again;
the remaining rows are still processed.
"""
from datetime import timedelta

from flask import current_app

from stock_auctions import atomic, db
from stock_auctions.clock import utcnow
from stock_auctions.errors import InvalidStateError, NotFoundError
from stock_auctions.models import Auction, AuctionFailure, AuctionStatus, Order, OrderStatus
from stock_auctions.notifications import (
    LoggingDispatcher,
    NotificationEvent,
    PAYMENT_DEADLINE_EXCEEDED,
    dispatch_all,
)
import logging

logger = logging.getLogger(__name__)

PAYMENT_DEADLINE_EXCEEDED_REASON = 'payment_deadline_exceeded'


class DeadlineSweeps:

    def __init__(self, auctions, stock, stats, dispatcher=None, clock=None):
        self.auctions = auctions
        self.stock = stock
        self.stats = stats
        self.dispatcher = dispatcher or LoggingDispatcher()
        self.clock = clock or utcnow

    def auto_end_auctions(self):
        """
        End auctions whose last bid is at least BID_EXTENSION_HOURS old.

        The highest bidder wins (see AuctionStateMachine.end_auction). An
        auction selected here without any bid row breaks the "last_bid_time
        implies a bid" invariant; end_auction cancels it and releases stock.
        """
        now = self.clock()
        cutoff = now - timedelta(hours=current_app.config['BID_EXTENSION_HOURS'])

        logger.info(f"Checking for auctions to end (last bid before {cutoff.isoformat()})")

        auction_ids = [row[0] for row in db.session.query(Auction.id).filter(
            Auction.status == AuctionStatus.ACTIVE,
            Auction.last_bid_time.isnot(None),
            Auction.last_bid_time <= cutoff
        ).order_by(Auction.id).all()]

        logger.info(f"Found {len(auction_ids)} auctions to end")

        ended = []
        for auction_id in auction_ids:
            try:
                auction = self.auctions.end_auction(auction_id)
                if auction.status == AuctionStatus.CANCELLED:
                    logger.warning(f"Auction {auction_id} had a last bid time but no bids; cancelled instead")
                ended.append(auction_id)
            except InvalidStateError as e:
                # Ended by an admin (or another instance) since selection
                logger.info(f"Auction {auction_id} skipped by auto-end: {str(e)}")
            except Exception as e:
                db.session.rollback()
                logger.error(f"Failed to end auction {auction_id}: {str(e)}")

        return _summary(f"Ended {len(ended)} auctions", ended)

    def detect_payment_failures(self):
        """
        Fail ENDED auctions whose payment deadline passed without being linked
        to an order. Stock goes back, a failure is recorded and the winner's
        failure count goes up (which may ban them).
        """
        now = self.clock()

        logger.info(f"Checking for payment failures (deadline before {now.isoformat()})")

        auction_ids = [row[0] for row in db.session.query(Auction.id).filter(
            Auction.status == AuctionStatus.ENDED,
            Auction.payment_deadline <= now,
            Auction.winner_id.isnot(None),
            Auction.order_id.is_(None)
        ).order_by(Auction.id).all()]

        logger.info(f"Found {len(auction_ids)} failed auctions")

        failed = []
        for auction_id in auction_ids:
            try:
                self._fail_unlinked_auction(auction_id, now)
                failed.append(auction_id)
            except InvalidStateError as e:
                logger.info(f"Auction {auction_id} skipped by payment-failure check: {str(e)}")
            except Exception as e:
                db.session.rollback()
                logger.error(f"Failed to process auction {auction_id}: {str(e)}")

        return _summary(f"Detected {len(failed)} payment failures", failed)

    def cancel_unpaid_orders(self):
        """Cancel orders with linked auctions whose payment deadline has passed"""
        now = self.clock()

        logger.info(f"Checking for unpaid auction orders (deadline before {now.isoformat()})")

        order_ids = [row[0] for row in db.session.query(Order.id).filter(
            Order.payment_deadline.isnot(None),
            Order.payment_deadline <= now,
            Order.status.in_(OrderStatus.AWAITING_PAYMENT),
            Order.auctions.any()
        ).order_by(Order.id).all()]

        logger.info(f"Found {len(order_ids)} unpaid auction orders")

        cancelled = []
        for order_id in order_ids:
            try:
                self.fail_order(order_id, "Payment deadline exceeded", PAYMENT_DEADLINE_EXCEEDED_REASON)
                cancelled.append(order_id)
            except InvalidStateError as e:
                logger.info(f"Order {order_id} skipped by unpaid-order check: {str(e)}")
            except Exception as e:
                db.session.rollback()
                logger.error(f"Failed to cancel order {order_id}: {str(e)}")

        return _summary(f"Cancelled {len(cancelled)} unpaid auction orders", cancelled)

    def fail_order(self, order_id, cancellation_reason, failure_reason='payment_failed'):
        """
        Cancel an unpaid order and fail every auction linked to it.

        One transaction: order → CANCELLED, each linked ENDED auction →
        PAYMENT_FAILED and unlinked, its stock released and a failure
        recorded; the buyer's failure count goes up once for the whole order.
        """
        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")

        now = self.clock()
        user_id = order.user_id
        deadline = order.payment_deadline or now
        linked = Auction.query.filter_by(order_id=order_id, status=AuctionStatus.ENDED).order_by(Auction.id).all()
        linked = [(a.id, a.variant_id, a.quantity, a.current_bid) for a in linked]

        logger.info(f"Cancelling order {order_id} ({cancellation_reason})")

        events = []
        with atomic():
            rows = Order.query.filter(
                Order.id == order_id,
                Order.status.in_(OrderStatus.AWAITING_PAYMENT)
            ).update({
                Order.status: OrderStatus.CANCELLED,
                Order.cancellation_reason: cancellation_reason,
                Order.cancelled_at: now,
            }, synchronize_session=False)

            if rows == 0:
                raise InvalidStateError(f"Order {order_id} is no longer awaiting payment")

            for auction_id, variant_id, quantity, winning_bid in linked:
                self.auctions.transition(auction_id, AuctionStatus.ENDED, {
                    Auction.status: AuctionStatus.PAYMENT_FAILED,
                    Auction.failure_reason: failure_reason,
                    Auction.order_id: None,
                    Auction.version: Auction.version + 1,
                    Auction.updated_at: now,
                })
                self.stock.release(variant_id, quantity)
                db.session.add(AuctionFailure(
                    auction_id=auction_id,
                    winner_id=user_id,
                    winning_bid=winning_bid,
                    payment_deadline=deadline,
                    reason=failure_reason,
                    failed_at=now,
                ))

            if linked:
                self.stats.increment_failed(user_id, events)

        logger.info(f"Order {order_id} cancelled, {len(linked)} auctions failed and stock restored")

        if linked:
            events.insert(0, NotificationEvent(PAYMENT_DEADLINE_EXCEEDED, user_id, {
                'order_id': order_id,
                'payment_deadline': deadline.isoformat(),
                'item_count': len(linked),
                'auction_ids': [auction_id for auction_id, _, _, _ in linked],
            }))
        dispatch_all(self.dispatcher, events)

        return [auction_id for auction_id, _, _, _ in linked]

    def _fail_unlinked_auction(self, auction_id, now):
        auction = self.auctions.get_auction(auction_id)
        winner_id = auction.winner_id
        winning_bid = auction.current_bid
        deadline = auction.payment_deadline
        variant_id = auction.variant_id
        quantity = auction.quantity

        events = []
        with atomic():
            # Guard on order_id too: linking to an order resolves the deadline
            rows = Auction.query.filter(
                Auction.id == auction_id,
                Auction.status == AuctionStatus.ENDED,
                Auction.order_id.is_(None)
            ).update({
                Auction.status: AuctionStatus.PAYMENT_FAILED,
                Auction.failure_reason: PAYMENT_DEADLINE_EXCEEDED_REASON,
                Auction.version: Auction.version + 1,
                Auction.updated_at: now,
            }, synchronize_session=False)

            if rows == 0:
                raise InvalidStateError("Auction is no longer ended and unlinked")

            self.stock.release(variant_id, quantity)
            db.session.add(AuctionFailure(
                auction_id=auction_id,
                winner_id=winner_id,
                winning_bid=winning_bid,
                payment_deadline=deadline,
                reason=PAYMENT_DEADLINE_EXCEEDED_REASON,
                failed_at=now,
            ))
            self.stats.increment_failed(winner_id, events)

        logger.info(f"Auction {auction_id} marked as failed, stock restored: +{quantity}")

        events.insert(0, NotificationEvent(PAYMENT_DEADLINE_EXCEEDED, winner_id, {
            'auction_id': auction_id,
            'winning_bid': winning_bid,
            'payment_deadline': deadline.isoformat(),
        }))
        dispatch_all(self.dispatcher, events)


def _summary(message, ids):
    return {'message': message, 'count': len(ids), 'ids': ids}
