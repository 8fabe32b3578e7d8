from datetime import timedelta

from flask import current_app
from sqlalchemy import or_

from stock_auctions import db
from stock_auctions.clock import utcnow
from stock_auctions.models import AuctionFailure, UserAuctionStats
from stock_auctions.notifications import NotificationEvent, USER_BANNED
import logging

logger = logging.getLogger(__name__)


class FailureTracker:
    """
    Per-user won/paid/failed counters and the temporary bidding ban derived
    from them.

    Increments join the caller's transaction; nothing here commits except
    `get_stats` creating a missing row.
    """

    def __init__(self, clock=None):
        self.clock = clock or utcnow

    def get_stats(self, user_id):
        """Get user auction stats, creating the zero row on first read"""
        stats = db.session.get(UserAuctionStats, user_id)
        if stats is None:
            self._ensure_row(user_id)
            db.session.commit()
            stats = db.session.get(UserAuctionStats, user_id)
        return stats

    def is_banned(self, user_id):
        stats = db.session.get(UserAuctionStats, user_id)
        return stats is not None and stats.is_banned(self.clock())

    def can_bid(self, user_id):
        stats = self.get_stats(user_id)
        now = self.clock()
        result = {'allowed': True, 'stats': stats.to_dict(now)}
        if stats.is_banned(now):
            result['allowed'] = False
            result['reason'] = f"Banned from bidding until {stats.banned_until.isoformat()}"
        return result

    def increment_won(self, user_id):
        self._increment(user_id, {UserAuctionStats.total_won: UserAuctionStats.total_won + 1})
        logger.info(f"User {user_id}: total_won +1")

    def increment_paid(self, user_id, count=1):
        self._increment(user_id, {UserAuctionStats.total_paid: UserAuctionStats.total_paid + count})
        logger.info(f"User {user_id}: total_paid +{count}")

    def increment_failed(self, user_id, events=None):
        """
        Count a payment failure and apply the ban policy.

        When the failure count reaches the threshold and no ban is currently
        active, the user is banned for BAN_DAYS and a ban notification is
        appended to `events` for delivery after commit.
        """
        now = self.clock()
        self._increment(user_id, {
            UserAuctionStats.total_failed: UserAuctionStats.total_failed + 1,
            UserAuctionStats.last_failed_at: now,
        })

        stats = db.session.get(UserAuctionStats, user_id)
        db.session.refresh(stats)
        logger.info(f"User {user_id}: total_failed now {stats.total_failed}")

        threshold = current_app.config['BAN_THRESHOLD']
        if stats.total_failed < threshold:
            return stats

        banned_until = now + timedelta(days=current_app.config['BAN_DAYS'])
        rows = UserAuctionStats.query.filter(
            UserAuctionStats.user_id == user_id,
            or_(UserAuctionStats.banned_until.is_(None), UserAuctionStats.banned_until <= now)
        ).update({UserAuctionStats.banned_until: banned_until}, synchronize_session=False)

        db.session.refresh(stats)

        if rows:
            logger.warning(f"User {user_id} banned until {banned_until.isoformat()}")
            if events is not None:
                events.append(NotificationEvent(USER_BANNED, user_id, {
                    'failure_count': stats.total_failed,
                    'banned_until': banned_until.isoformat(),
                }))

        return stats

    def list_failures(self, user_id=None):
        """Get all failures, newest first"""
        query = AuctionFailure.query
        if user_id is not None:
            query = query.filter_by(winner_id=user_id)
        return query.order_by(AuctionFailure.failed_at.desc(), AuctionFailure.id.desc()).all()

    def _increment(self, user_id, values):
        stats = self._ensure_row(user_id)
        UserAuctionStats.query.filter_by(user_id=user_id).update(values, synchronize_session=False)
        db.session.expire(stats)

    def _ensure_row(self, user_id):
        stats = db.session.get(UserAuctionStats, user_id)
        if stats is None:
            # A concurrent insert of the same user surfaces as IntegrityError
            # and fails the caller's unit, which is retried as a whole
            stats = UserAuctionStats(user_id=user_id, total_won=0, total_paid=0, total_failed=0)
            db.session.add(stats)
            db.session.flush()
        return stats
