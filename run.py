#!/usr/bin/env python3
"""
Main entry point for the stock auction service
"""
import os
import logging
from config import Config
from stock_auctions import create_app, db
from stock_auctions.scheduler import deadline_scheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

# Ensure database directory exists before the engine touches it
db_dir = os.path.dirname(Config.DATABASE_PATH)
if db_dir and not os.path.exists(db_dir):
    os.makedirs(db_dir, exist_ok=True)
    logger.info(f"Created database directory: {db_dir}")

# Create Flask app
app = create_app()

# Initialize sweeps with app context
deadline_scheduler.init_app(app)

with app.app_context():
    # Create tables if they don't exist
    db.create_all()
    logger.info("Database tables created/verified")

if app.config['SCHEDULER_ENABLED']:
    deadline_scheduler.start()
    logger.info("Deadline sweeps scheduled")
else:
    logger.info("Scheduler disabled, sweeps only run via /api/cron/trigger")

if __name__ == '__main__':
    try:
        port = int(os.getenv('FLASK_PORT', 5000))
        host = os.getenv('FLASK_HOST', '0.0.0.0')

        logger.info(f"Starting stock auction service on {host}:{port}")

        # The reloader would start a second scheduler in the child process
        app.run(
            host=host,
            port=port,
            debug=app.config['DEBUG'],
            use_reloader=False
        )
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {str(e)}")
        raise
    finally:
        deadline_scheduler.stop()
