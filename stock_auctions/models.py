from stock_auctions import db
from stock_auctions.clock import utcnow


class AuctionStatus:
    ACTIVE = 'ACTIVE'
    ENDED = 'ENDED'
    PAYMENT_FAILED = 'PAYMENT_FAILED'
    CANCELLED = 'CANCELLED'
    RELISTED = 'RELISTED'

    ALL = (ACTIVE, ENDED, PAYMENT_FAILED, CANCELLED, RELISTED)


class OrderStatus:
    PENDING = 'PENDING'
    WAITING_FOR_CONFIRMATION = 'WAITING_FOR_CONFIRMATION'
    CONFIRMED = 'CONFIRMED'
    CANCELLED = 'CANCELLED'

    # Orders still waiting on the buyer's money
    AWAITING_PAYMENT = (PENDING, WAITING_FOR_CONFIRMATION)

    # Orders whose auctions may go back to checkout; a CONFIRMED order keeps them
    UNLINKABLE = (PENDING, WAITING_FOR_CONFIRMATION, CANCELLED)


def _iso(value):
    return value.isoformat() if value else None


class Variant(db.Model):
    """Catalog variant; this service only ever touches `stock`"""
    __tablename__ = 'variants'

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    stock = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.CheckConstraint('stock >= 0', name='variant_stock_non_negative'),
    )

    def to_dict(self):
        return {'id': self.id, 'sku': self.sku, 'stock': self.stock}

    def __repr__(self):
        return f'<Variant {self.id}: {self.sku} (stock {self.stock})>'


class Order(db.Model):
    """Payable order as seen by the auction core (owned by the order subsystem)"""
    __tablename__ = 'orders'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False, default=OrderStatus.PENDING)
    payment_deadline = db.Column(db.DateTime, nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    auctions = db.relationship('Auction', backref='order', lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'status': self.status,
            'payment_deadline': _iso(self.payment_deadline),
            'cancellation_reason': self.cancellation_reason,
            'cancelled_at': _iso(self.cancelled_at),
            'auction_ids': [auction.id for auction in self.auctions],
        }

    def __repr__(self):
        return f'<Order {self.id}: user {self.user_id} ({self.status})>'


class Auction(db.Model):
    __tablename__ = 'auctions'

    id = db.Column(db.Integer, primary_key=True)
    variant_id = db.Column(db.Integer, db.ForeignKey('variants.id'), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    start_price = db.Column(db.BigInteger, nullable=False)
    buy_out_price = db.Column(db.BigInteger, nullable=False)
    current_bid = db.Column(db.BigInteger, nullable=False)
    min_increment = db.Column(db.BigInteger, nullable=False)
    start_time = db.Column(db.DateTime, nullable=False)
    last_bid_time = db.Column(db.DateTime, nullable=True)
    end_time = db.Column(db.DateTime, nullable=True)
    payment_deadline = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=AuctionStatus.ACTIVE, index=True)
    winner_id = db.Column(db.Integer, nullable=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=True, index=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    is_relisted = db.Column(db.Boolean, nullable=False, default=False)
    original_auction_id = db.Column(db.Integer, db.ForeignKey('auctions.id'), nullable=True)
    created_by = db.Column(db.Integer, nullable=False)
    # Bumped by every write; conditional updates compare against it
    version = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    variant = db.relationship('Variant', lazy=True)
    bids = db.relationship('Bid', backref='auction', lazy=True, cascade='all, delete-orphan')

    def to_dict(self):
        """Convert auction to dictionary for API responses"""
        return {
            'id': self.id,
            'variant_id': self.variant_id,
            'quantity': self.quantity,
            'start_price': self.start_price,
            'buy_out_price': self.buy_out_price,
            'current_bid': self.current_bid,
            'min_increment': self.min_increment,
            'start_time': _iso(self.start_time),
            'last_bid_time': _iso(self.last_bid_time),
            'end_time': _iso(self.end_time),
            'payment_deadline': _iso(self.payment_deadline),
            'status': self.status,
            'winner_id': self.winner_id,
            'order_id': self.order_id,
            'failure_reason': self.failure_reason,
            'is_relisted': self.is_relisted,
            'original_auction_id': self.original_auction_id,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<Auction {self.id}: variant {self.variant_id} x{self.quantity} ({self.status})>'


class Bid(db.Model):
    __tablename__ = 'bids'

    id = db.Column(db.Integer, primary_key=True)
    auction_id = db.Column(db.Integer, db.ForeignKey('auctions.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    bid_amount = db.Column(db.BigInteger, nullable=False)
    bid_time = db.Column(db.DateTime, nullable=False)

    # Accepted bids are strictly increasing, so no two can share an amount
    __table_args__ = (
        db.UniqueConstraint('auction_id', 'bid_amount', name='unique_auction_bid_amount'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'auction_id': self.auction_id,
            'user_id': self.user_id,
            'bid_amount': self.bid_amount,
            'bid_time': _iso(self.bid_time),
        }

    def __repr__(self):
        return f'<Bid {self.id}: auction {self.auction_id}, {self.bid_amount} by {self.user_id}>'


class UserAuctionStats(db.Model):
    __tablename__ = 'user_auction_stats'

    user_id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    total_won = db.Column(db.Integer, nullable=False, default=0)
    total_paid = db.Column(db.Integer, nullable=False, default=0)
    total_failed = db.Column(db.Integer, nullable=False, default=0)
    last_failed_at = db.Column(db.DateTime, nullable=True)
    banned_until = db.Column(db.DateTime, nullable=True)

    def is_banned(self, now):
        return self.banned_until is not None and self.banned_until > now

    def success_rate(self):
        if not self.total_won:
            return 0.0
        return round(self.total_paid / self.total_won, 4)

    def to_dict(self, now):
        return {
            'user_id': self.user_id,
            'total_won': self.total_won or 0,
            'total_paid': self.total_paid or 0,
            'total_failed': self.total_failed or 0,
            'success_rate': self.success_rate(),
            'last_failed_at': _iso(self.last_failed_at),
            'banned_until': _iso(self.banned_until),
            'is_banned': self.is_banned(now),
        }

    def __repr__(self):
        return f'<UserAuctionStats {self.user_id}: won {self.total_won}, failed {self.total_failed}>'


class AuctionFailure(db.Model):
    """Immutable record of a winner missing their payment"""
    __tablename__ = 'auction_failures'

    id = db.Column(db.Integer, primary_key=True)
    auction_id = db.Column(db.Integer, db.ForeignKey('auctions.id'), nullable=False, index=True)
    winner_id = db.Column(db.Integer, nullable=False, index=True)
    winning_bid = db.Column(db.BigInteger, nullable=False)
    payment_deadline = db.Column(db.DateTime, nullable=False)
    reason = db.Column(db.String(64), nullable=False)
    failed_at = db.Column(db.DateTime, nullable=False)
    was_relisted = db.Column(db.Boolean, nullable=False, default=False)

    auction = db.relationship('Auction', lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'auction_id': self.auction_id,
            'winner_id': self.winner_id,
            'winning_bid': self.winning_bid,
            'payment_deadline': _iso(self.payment_deadline),
            'reason': self.reason,
            'failed_at': _iso(self.failed_at),
            'was_relisted': self.was_relisted,
        }

    def __repr__(self):
        return f'<AuctionFailure {self.id}: auction {self.auction_id} ({self.reason})>'


class NotificationThrottle(db.Model):
    """Shared keyed expiry store; a key is held until `expires_at`"""
    __tablename__ = 'notification_throttles'

    key = db.Column(db.String(128), primary_key=True)
    expires_at = db.Column(db.DateTime, nullable=False)

    def __repr__(self):
        return f'<NotificationThrottle {self.key} until {self.expires_at}>'
