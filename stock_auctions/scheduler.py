from apscheduler.schedulers.background import BackgroundScheduler
import logging

logger = logging.getLogger(__name__)


class DeadlineScheduler:
    """Background timers that run the deadline sweeps"""

    def __init__(self, app=None):
        self.scheduler = None
        self.app = app

    def init_app(self, app):
        """Initialize scheduling with Flask app"""
        self.app = app

    def jobs(self):
        """(job id, description, sweep name, interval in minutes) for every sweep"""
        config = self.app.config
        return [
            ('auto_end_auctions', 'End auctions with no bid inside the extension window',
             'auto_end_auctions', config['AUTO_END_INTERVAL_MINUTES']),
            ('cancel_unpaid_orders', 'Cancel auction orders past their payment deadline',
             'cancel_unpaid_orders', config['UNPAID_ORDER_INTERVAL_MINUTES']),
            ('detect_payment_failures', 'Fail ended auctions whose winner never paid',
             'detect_payment_failures', config['PAYMENT_FAILURE_INTERVAL_MINUTES']),
        ]

    def start(self, run_initial=True):
        """Start the background sweep tasks"""
        if self.scheduler is not None:
            logger.warning("Scheduler already running")
            return

        self.scheduler = BackgroundScheduler()

        for job_id, name, sweep_name, minutes in self.jobs():
            self.every(minutes, self._sweep_job(sweep_name), job_id=job_id, name=name)

        self.scheduler.start()
        logger.info("Deadline sweeps started")

        if not run_initial:
            return

        # Run every sweep once on startup
        # This catches deadlines that lapsed while the server was down
        logger.info("Running initial sweeps on startup...")
        for job_id, _, sweep_name, _ in self.jobs():
            try:
                self._run_sweep(sweep_name)
                logger.info(f"✓ Initial {job_id} sweep completed")
            except Exception as e:
                logger.error(f"Initial {job_id} sweep failed: {str(e)}")

        logger.info("Initial sweeps completed")

    def every(self, minutes, func, job_id, name=None):
        """Run an idempotent `func` every `minutes` minutes"""
        self.scheduler.add_job(
            func=func,
            trigger='interval',
            minutes=minutes,
            id=job_id,
            name=name or job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

    def stop(self):
        """Stop the background sweep tasks"""
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            logger.info("Deadline sweeps stopped")

    def _sweep_job(self, sweep_name):
        def job():
            try:
                self._run_sweep(sweep_name)
            except Exception as e:
                logger.error(f"Error in {sweep_name} sweep: {str(e)}")
        return job

    def _run_sweep(self, sweep_name):
        with self.app.app_context():
            sweeps = self.app.extensions['stock_auctions'].sweeps
            result = getattr(sweeps, sweep_name)()
            logger.info(f"{sweep_name}: {result['message']}")
            return result


# Global instance
deadline_scheduler = DeadlineScheduler()
