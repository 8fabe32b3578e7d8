from datetime import timedelta

from flask import current_app
from sqlalchemy import func

from stock_auctions import atomic, db
from stock_auctions.bids import auction_url
from stock_auctions.clock import utcnow
from stock_auctions.errors import (
    ConcurrencyConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from stock_auctions.models import Auction, AuctionFailure, AuctionStatus, Bid, Order, OrderStatus
from stock_auctions.notifications import (
    AUCTION_CANCELLED,
    AUCTION_ENDED_NOT_WON,
    AUCTION_RELISTED,
    AUCTION_WON,
    LoggingDispatcher,
    NotificationEvent,
    dispatch_all,
)
import logging

logger = logging.getLogger(__name__)


class AuctionStateMachine:
    """
    Auction lifecycle: create/update while ACTIVE, end by buyout, admin or
    sweep, cancel, relist after a payment failure, and linkage to orders.

    Every transition is a conditional UPDATE guarded by the status it leaves
    (and by `version` where a concurrent bid would change the outcome), issued
    in the same transaction as the stock movement that accompanies it.
    """

    def __init__(self, stock, stats, dispatcher=None, clock=None):
        self.stock = stock
        self.stats = stats
        self.dispatcher = dispatcher or LoggingDispatcher()
        self.clock = clock or utcnow

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_auction(self, auction_id):
        auction = db.session.get(Auction, auction_id)
        if auction is None:
            raise NotFoundError("Auction not found")
        return auction

    def get(self, auction_id):
        """Auction details with bid counts and the variant's remaining stock"""
        auction = self.get_auction(auction_id)
        data = auction.to_dict()
        data['variant'] = auction.variant.to_dict()
        data['total_bids'] = Bid.query.filter_by(auction_id=auction_id).count()
        data['unique_bidders'] = len(self._bidder_ids(auction_id))
        return data

    def list_auctions(self, status=None, variant_id=None, min_price=None, max_price=None):
        query = Auction.query

        if status:
            query = query.filter(Auction.status == status)
        if variant_id is not None:
            query = query.filter(Auction.variant_id == variant_id)
        if min_price is not None:
            query = query.filter(Auction.current_bid >= min_price)
        if max_price is not None:
            query = query.filter(Auction.current_bid <= max_price)

        auctions = query.order_by(Auction.created_at.desc(), Auction.id.desc()).all()
        counts = self._bid_counts([auction.id for auction in auctions])

        results = []
        for auction in auctions:
            data = auction.to_dict()
            data['total_bids'] = counts.get(auction.id, 0)
            results.append(data)
        return results

    def list_failed_payments(self):
        return Auction.query.filter_by(status=AuctionStatus.PAYMENT_FAILED).order_by(
            Auction.updated_at.desc(), Auction.id.desc()
        ).all()

    # ------------------------------------------------------------------
    # Admin transitions
    # ------------------------------------------------------------------

    def create(self, admin_id, data):
        """
        Create an ACTIVE auction and reserve its quantity from the variant.

        `data` is the validated payload: variant_id, quantity, start_price,
        buy_out_price and optionally min_increment.
        """
        variant = self.stock.get_variant(data['variant_id'])

        if variant.stock < data['quantity']:
            raise ValidationError(
                f"Insufficient stock. Available: {variant.stock}, Required: {data['quantity']}"
            )

        if data['buy_out_price'] <= data['start_price']:
            raise ValidationError("Buy out price must be higher than start price")

        now = self.clock()
        auction = Auction(
            variant_id=variant.id,
            quantity=data['quantity'],
            start_price=data['start_price'],
            buy_out_price=data['buy_out_price'],
            current_bid=data['start_price'],
            min_increment=data.get('min_increment') or current_app.config['DEFAULT_MIN_INCREMENT'],
            start_time=now,
            status=AuctionStatus.ACTIVE,
            created_by=admin_id,
            created_at=now,
            updated_at=now,
            version=0,
        )

        with atomic():
            db.session.add(auction)
            self.stock.reserve(variant.id, data['quantity'])

        logger.info(f"Created auction {auction.id} for variant {variant.id} x{auction.quantity}")
        return auction

    def update(self, admin_id, auction_id, data):
        """
        Adjust prices and/or quantity of an ACTIVE auction that has no bids.

        A quantity change reserves or releases the difference in the same
        transaction.
        """
        auction = self.get_auction(auction_id)

        if auction.status != AuctionStatus.ACTIVE:
            raise InvalidStateError("Only active auctions can be updated")

        if auction.last_bid_time is not None or Bid.query.filter_by(auction_id=auction_id).count() > 0:
            raise InvalidStateError(
                "Cannot update auction with existing bids. Please cancel and create a new auction instead."
            )

        new_start_price = data.get('start_price') or auction.start_price
        new_buy_out_price = data.get('buy_out_price') or auction.buy_out_price
        new_min_increment = data.get('min_increment') or auction.min_increment
        new_quantity = data.get('quantity') or auction.quantity

        if new_buy_out_price <= new_start_price:
            raise ValidationError("Buy out price must be higher than start price")

        # positive = reserve more, negative = release
        stock_delta = new_quantity - auction.quantity
        if stock_delta > 0:
            available = self.stock.get_stock(auction.variant_id)
            if available < stock_delta:
                raise ValidationError(
                    f"Insufficient stock. Available: {available}, Needed: {stock_delta} more"
                )

        expected_version = auction.version
        variant_id = auction.variant_id

        with atomic():
            rows = Auction.query.filter(
                Auction.id == auction_id,
                Auction.status == AuctionStatus.ACTIVE,
                Auction.version == expected_version,
                Auction.last_bid_time.is_(None)
            ).update({
                Auction.start_price: new_start_price,
                Auction.buy_out_price: new_buy_out_price,
                Auction.min_increment: new_min_increment,
                Auction.quantity: new_quantity,
                Auction.current_bid: new_start_price,
                Auction.version: expected_version + 1,
                Auction.updated_at: self.clock(),
            }, synchronize_session=False)

            if rows == 0:
                raise ConcurrencyConflictError("Auction changed while updating, please reload and retry")

            if stock_delta > 0:
                self.stock.reserve(variant_id, stock_delta)
            elif stock_delta < 0:
                self.stock.release(variant_id, -stock_delta)

        logger.info(f"Auction {auction_id} updated by admin {admin_id} (stock delta {stock_delta:+d})")
        return auction

    def end_auction(self, auction_id, ended_by=None):
        """
        End an ACTIVE auction now.

        With bids: ENDED, highest bidder wins, payment deadline starts, the
        winner's won-count goes up. Without bids: CANCELLED and the stock goes
        back. Used by the admin surface and by the auto-end sweep; whichever
        commits first wins, the other gets InvalidStateError.
        """
        auction = self.get_auction(auction_id)

        if auction.status != AuctionStatus.ACTIVE:
            raise InvalidStateError("Only active auctions can be ended")

        now = self.clock()
        expected_version = auction.version
        variant_id = auction.variant_id
        quantity = auction.quantity
        winner = Bid.query.filter_by(auction_id=auction_id).order_by(Bid.bid_amount.desc()).first()

        logger.info(f"Ending auction {auction_id} ({'sweep' if ended_by is None else f'admin {ended_by}'})")

        events = []
        with atomic():
            if winner is not None:
                payment_deadline = now + timedelta(hours=current_app.config['PAYMENT_WINDOW_HOURS'])
                values = {
                    Auction.status: AuctionStatus.ENDED,
                    Auction.end_time: now,
                    Auction.winner_id: winner.user_id,
                    Auction.current_bid: winner.bid_amount,
                    Auction.payment_deadline: payment_deadline,
                }
            else:
                values = {
                    Auction.status: AuctionStatus.CANCELLED,
                    Auction.end_time: now,
                    Auction.failure_reason: 'no_bids',
                }
            values[Auction.version] = expected_version + 1
            values[Auction.updated_at] = now

            self.transition(auction_id, AuctionStatus.ACTIVE, values, expected_version=expected_version)

            if winner is not None:
                self.stats.increment_won(winner.user_id)
                events.append(NotificationEvent(AUCTION_WON, winner.user_id, {
                    'auction_id': auction_id,
                    'winning_bid': winner.bid_amount,
                    'payment_deadline': payment_deadline.isoformat(),
                    'auction_url': auction_url(auction_id),
                }))
                events.extend(self._loser_events(auction_id, winner.user_id, winner.bid_amount))
            else:
                self.stock.release(variant_id, quantity)

        if winner is not None:
            logger.info(f"Auction {auction_id} ended. Winner: user {winner.user_id} at {winner.bid_amount}")
        else:
            logger.info(f"Auction {auction_id} had no bids, cancelled and stock released")

        dispatch_all(self.dispatcher, events)
        return auction

    def cancel(self, admin_id, auction_id, reason):
        """Cancel an ACTIVE auction, release its stock and tell every bidder"""
        auction = self.get_auction(auction_id)

        if auction.status != AuctionStatus.ACTIVE:
            raise InvalidStateError("Only active auctions can be cancelled")

        now = self.clock()
        variant_id = auction.variant_id
        quantity = auction.quantity

        with atomic():
            self.transition(auction_id, AuctionStatus.ACTIVE, {
                Auction.status: AuctionStatus.CANCELLED,
                Auction.failure_reason: reason,
                Auction.end_time: now,
                Auction.version: Auction.version + 1,
                Auction.updated_at: now,
            })
            self.stock.release(variant_id, quantity)

        logger.info(f"Auction {auction_id} cancelled by admin {admin_id}: {reason}")

        dispatch_all(self.dispatcher, [
            NotificationEvent(AUCTION_CANCELLED, user_id, {'auction_id': auction_id, 'reason': reason})
            for user_id in self._bidder_ids(auction_id)
        ])
        return auction

    def relist(self, admin_id, auction_id, notify_previous_bidders=False, admin_note=None):
        """
        Create a fresh ACTIVE auction from a PAYMENT_FAILED one with the same
        price terms, reserve stock for it and retire the source as RELISTED.
        """
        original = self.get_auction(auction_id)

        if original.status != AuctionStatus.PAYMENT_FAILED:
            raise InvalidStateError("Only failed auctions can be re-listed")

        available = self.stock.get_stock(original.variant_id)
        if available < original.quantity:
            raise ValidationError(
                f"Cannot re-list: Insufficient stock. Available: {available}, Required: {original.quantity}"
            )

        now = self.clock()
        relisted = Auction(
            variant_id=original.variant_id,
            quantity=original.quantity,
            start_price=original.start_price,
            buy_out_price=original.buy_out_price,
            current_bid=original.start_price,
            min_increment=original.min_increment,
            start_time=now,
            status=AuctionStatus.ACTIVE,
            is_relisted=True,
            original_auction_id=original.id,
            created_by=admin_id,
            created_at=now,
            updated_at=now,
            version=0,
        )

        with atomic():
            self.transition(auction_id, AuctionStatus.PAYMENT_FAILED, {
                Auction.status: AuctionStatus.RELISTED,
                Auction.version: Auction.version + 1,
                Auction.updated_at: now,
            })
            db.session.add(relisted)
            self.stock.reserve(original.variant_id, original.quantity)
            AuctionFailure.query.filter_by(auction_id=auction_id).update(
                {AuctionFailure.was_relisted: True}, synchronize_session=False
            )

        logger.info(f"Auction {auction_id} re-listed as {relisted.id}" + (f" ({admin_note})" if admin_note else ""))

        if notify_previous_bidders:
            dispatch_all(self.dispatcher, [
                NotificationEvent(AUCTION_RELISTED, user_id, {
                    'auction_id': relisted.id,
                    'start_price': relisted.start_price,
                    'buy_out_price': relisted.buy_out_price,
                    'auction_url': auction_url(relisted.id),
                })
                for user_id in self._bidder_ids(auction_id)
            ])

        return relisted

    # ------------------------------------------------------------------
    # Bidder transitions
    # ------------------------------------------------------------------

    def buy_out(self, user_id, auction_id):
        """
        End an ACTIVE auction immediately at the buyout price.

        Skips the increment and leader rules of normal bids; other bidders are
        told they lost.
        """
        auction = self.get_auction(auction_id)

        if auction.status != AuctionStatus.ACTIVE:
            raise InvalidStateError("Auction is not active")

        if self.stats.is_banned(user_id):
            banned_until = self.stats.get_stats(user_id).banned_until
            raise ForbiddenError(f"You are banned from auctions until {banned_until.isoformat()}")

        now = self.clock()
        buy_out_price = auction.buy_out_price
        payment_deadline = now + timedelta(hours=current_app.config['PAYMENT_WINDOW_HOURS'])

        logger.info(f"User {user_id} buying out auction {auction_id}")

        with atomic():
            self.transition(auction_id, AuctionStatus.ACTIVE, {
                Auction.status: AuctionStatus.ENDED,
                Auction.end_time: now,
                Auction.current_bid: buy_out_price,
                Auction.winner_id: user_id,
                Auction.payment_deadline: payment_deadline,
                Auction.version: Auction.version + 1,
                Auction.updated_at: now,
            })
            self.stats.increment_won(user_id)

        logger.info(f"Auction {auction_id} bought out by user {user_id} at {buy_out_price}")

        dispatch_all(self.dispatcher, self._loser_events(auction_id, user_id, buy_out_price))
        return auction

    # ------------------------------------------------------------------
    # Order linkage (called by the order subsystem)
    # ------------------------------------------------------------------

    def checkout_candidates(self, user_id, auction_ids=None):
        """
        The user's ENDED auctions not yet linked to an order, with their
        subtotal and the earliest payment deadline among them.
        """
        query = Auction.query.filter(
            Auction.winner_id == user_id,
            Auction.status == AuctionStatus.ENDED,
            Auction.order_id.is_(None)
        )
        if auction_ids is not None:
            query = query.filter(Auction.id.in_(auction_ids))

        auctions = query.order_by(Auction.payment_deadline.asc(), Auction.id.asc()).all()

        if auction_ids is not None:
            if not auctions:
                raise NotFoundError("No valid auctions found")
            if len(auctions) != len(set(auction_ids)):
                raise ValidationError("Some auctions are not available for checkout")

        deadlines = [auction.payment_deadline for auction in auctions if auction.payment_deadline]
        return {
            'auctions': auctions,
            'subtotal': sum(auction.current_bid for auction in auctions),
            'payment_deadline': min(deadlines) if deadlines else None,
        }

    def link_to_order(self, user_id, order_id, auction_ids):
        """Attach the user's ENDED, unlinked auctions to a payable order"""
        if not auction_ids:
            raise ValidationError("At least 1 auction must be selected")

        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.user_id != user_id:
            raise ForbiddenError("Order belongs to another user")
        if order.status not in OrderStatus.AWAITING_PAYMENT:
            raise InvalidStateError(f"Order is {order.status}, auctions can no longer be linked")

        wanted = set(auction_ids)
        candidates = self.checkout_candidates(user_id, list(wanted))

        with atomic():
            rows = Auction.query.filter(
                Auction.id.in_(wanted),
                Auction.winner_id == user_id,
                Auction.status == AuctionStatus.ENDED,
                Auction.order_id.is_(None)
            ).update({
                Auction.order_id: order_id,
                Auction.version: Auction.version + 1,
                Auction.updated_at: self.clock(),
            }, synchronize_session=False)

            if rows != len(wanted):
                raise ConcurrencyConflictError("Some auctions were linked or failed meanwhile, please retry")

            if order.payment_deadline is None:
                order.payment_deadline = candidates['payment_deadline']

        logger.info(f"Linked auctions {sorted(wanted)} to order {order_id}")
        return order

    def unlink_from_order(self, order_id):
        """
        Detach every ENDED auction from an order being cancelled by its owner.

        Refused once the order is CONFIRMED: paid auctions stay linked, so the
        payment-failure sweep never sees them again.
        """
        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")

        if order.status not in OrderStatus.UNLINKABLE:
            raise InvalidStateError(f"Order is {order.status}, its auctions can no longer be unlinked")

        # Re-checked in the UPDATE so a payment confirmed meanwhile wins
        unlinkable = db.session.query(Order.id).filter(
            Order.id == order_id,
            Order.status.in_(OrderStatus.UNLINKABLE)
        ).exists()

        with atomic():
            rows = Auction.query.filter(
                Auction.order_id == order_id,
                Auction.status == AuctionStatus.ENDED,
                unlinkable
            ).update({
                Auction.order_id: None,
                Auction.version: Auction.version + 1,
                Auction.updated_at: self.clock(),
            }, synchronize_session=False)

        logger.info(f"Unlinked {rows} auctions from order {order_id}")
        return rows

    def mark_order_paid(self, order_id):
        """Payment completed: confirm the order and credit the buyer's paid count"""
        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")

        linked = Auction.query.filter_by(order_id=order_id, status=AuctionStatus.ENDED).count()
        user_id = order.user_id

        with atomic():
            rows = Order.query.filter(
                Order.id == order_id,
                Order.status.in_(OrderStatus.AWAITING_PAYMENT)
            ).update({Order.status: OrderStatus.CONFIRMED}, synchronize_session=False)

            if rows == 0:
                raise InvalidStateError(f"Order {order_id} is not awaiting payment")

            if linked:
                self.stats.increment_paid(user_id, count=linked)

        logger.info(f"Order {order_id} paid, {linked} auctions settled for user {user_id}")
        return order

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def transition(self, auction_id, from_status, values, expected_version=None):
        """
        Apply `values` only if the auction is still in `from_status` (and at
        `expected_version` when given). Must run inside a unit of work.
        """
        query = Auction.query.filter(Auction.id == auction_id, Auction.status == from_status)
        if expected_version is not None:
            query = query.filter(Auction.version == expected_version)

        rows = query.update(values, synchronize_session=False)
        if rows:
            return

        current = db.session.get(Auction, auction_id)
        db.session.refresh(current)
        if current.status == from_status:
            raise ConcurrencyConflictError("Auction changed concurrently, please retry")
        raise InvalidStateError(f"Auction is {current.status}, expected {from_status}")

    def _bidder_ids(self, auction_id):
        rows = db.session.query(Bid.user_id).filter(Bid.auction_id == auction_id).distinct().all()
        return sorted(row[0] for row in rows)

    def _bid_counts(self, auction_ids):
        if not auction_ids:
            return {}
        rows = db.session.query(Bid.auction_id, func.count(Bid.id)).filter(
            Bid.auction_id.in_(auction_ids)
        ).group_by(Bid.auction_id).all()
        return dict(rows)

    def _loser_events(self, auction_id, winner_id, final_price):
        return [
            NotificationEvent(AUCTION_ENDED_NOT_WON, user_id, {
                'auction_id': auction_id,
                'final_price': final_price,
            })
            for user_id in self._bidder_ids(auction_id)
            if user_id != winner_id
        ]
