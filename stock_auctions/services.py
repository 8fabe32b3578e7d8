from datetime import timedelta

from stock_auctions.auctions import AuctionStateMachine
from stock_auctions.bids import BidLedger
from stock_auctions.clock import utcnow
from stock_auctions.notifications import OutbidThrottle, dispatcher_from_config
from stock_auctions.stats import FailureTracker
from stock_auctions.stock import StockLedger
from stock_auctions.sweeps import DeadlineSweeps


class AuctionServices:
    """The cooperating services of one app, sharing a clock and a dispatcher"""

    def __init__(self, clock, dispatcher, outbid_window):
        self.clock = clock
        self.dispatcher = dispatcher
        self.stock = StockLedger()
        self.stats = FailureTracker(clock=clock)
        self.bids = BidLedger(
            self.stats,
            dispatcher=dispatcher,
            throttle=OutbidThrottle(window=outbid_window),
            clock=clock,
        )
        self.auctions = AuctionStateMachine(self.stock, self.stats, dispatcher=dispatcher, clock=clock)
        self.sweeps = DeadlineSweeps(self.auctions, self.stock, self.stats, dispatcher=dispatcher, clock=clock)


def build_services(app, clock=None, dispatcher=None):
    return AuctionServices(
        clock=clock or utcnow,
        dispatcher=dispatcher or dispatcher_from_config(app.config),
        outbid_window=timedelta(minutes=app.config['OUTBID_THROTTLE_MINUTES']),
    )
