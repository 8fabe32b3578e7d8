from contextlib import contextmanager

from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from config import Config

db = SQLAlchemy()


@contextmanager
def atomic():
    """Commit the session on success, roll it back on any exception."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def create_app(config_class=Config, clock=None, dispatcher=None):
    app = Flask(__name__)
    app.config.from_object(config_class)

    # Enable CORS for all routes
    CORS(app)

    db.init_app(app)

    with app.app_context():
        # Import models
        from stock_auctions import models

        # Create database tables
        db.create_all()

        # Wire services
        from stock_auctions.services import build_services
        app.extensions['stock_auctions'] = build_services(app, clock=clock, dispatcher=dispatcher)

        # Register routes
        from stock_auctions.routes import bp as routes_bp
        app.register_blueprint(routes_bp)

    return app
