import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default):
    return os.getenv(name, default).lower() == 'true'


class Config:
    # API Configuration
    API_KEY = os.getenv('API_KEY', 'change-me-in-production')

    # Flask Configuration
    SECRET_KEY = os.getenv('SECRET_KEY', os.urandom(24))
    DEBUG = _env_bool('FLASK_DEBUG', 'False')

    # Database Configuration
    DATABASE_PATH = os.getenv('DATABASE_PATH', './data/auctions.db')
    # Convert to absolute path for SQLAlchemy
    _db_path_absolute = os.path.abspath(DATABASE_PATH)
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', f'sqlite:///{_db_path_absolute}')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Notification Configuration (empty URL = log-only dispatcher)
    NOTIFICATION_WEBHOOK_URL = os.getenv('NOTIFICATION_WEBHOOK_URL', '')
    NOTIFICATION_TIMEOUT = int(os.getenv('NOTIFICATION_TIMEOUT', '10'))  # seconds
    FRONTEND_URL = os.getenv('FRONTEND_URL', 'http://localhost:3000')

    # Auction Rules
    DEFAULT_MIN_INCREMENT = int(os.getenv('DEFAULT_MIN_INCREMENT', '10000'))
    MIN_PRICE = int(os.getenv('MIN_PRICE', '1000'))
    BID_EXTENSION_HOURS = int(os.getenv('BID_EXTENSION_HOURS', '24'))
    PAYMENT_WINDOW_HOURS = int(os.getenv('PAYMENT_WINDOW_HOURS', '48'))
    OUTBID_THROTTLE_MINUTES = int(os.getenv('OUTBID_THROTTLE_MINUTES', '30'))

    # Ban Policy
    BAN_THRESHOLD = int(os.getenv('BAN_THRESHOLD', '3'))  # payment failures
    BAN_DAYS = int(os.getenv('BAN_DAYS', '30'))

    # Sweep Configuration
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', 'True')
    AUTO_END_INTERVAL_MINUTES = int(os.getenv('AUTO_END_INTERVAL_MINUTES', '5'))
    UNPAID_ORDER_INTERVAL_MINUTES = int(os.getenv('UNPAID_ORDER_INTERVAL_MINUTES', '10'))
    PAYMENT_FAILURE_INTERVAL_MINUTES = int(os.getenv('PAYMENT_FAILURE_INTERVAL_MINUTES', '60'))
