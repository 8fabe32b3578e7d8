from flask import Blueprint, request, jsonify, current_app, g
from functools import wraps
from stock_auctions import db
from stock_auctions.errors import AuctionError
from stock_auctions.models import AuctionStatus
from stock_auctions.validators import (
    validate_auction_ids,
    validate_bid,
    validate_cancel,
    validate_create_auction,
    validate_relist,
    validate_update_auction,
)
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('api', __name__, url_prefix='/api')


def services():
    return current_app.extensions['stock_auctions']


def handle_errors(f):
    """Decorator mapping service errors to JSON responses"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except AuctionError as e:
            db.session.rollback()
            logger.warning(f"{request.method} {request.path} rejected: {str(e)}")
            return jsonify({'error': str(e)}), e.status_code
        except Exception as e:
            db.session.rollback()
            logger.error(f"Error handling {request.method} {request.path}: {str(e)}", exc_info=True)
            return jsonify({'error': f'Internal server error: {str(e)}'}), 500

    return decorated_function


def require_user(f):
    """Decorator reading the caller's id set by the authentication layer"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = request.headers.get('X-User-Id', type=int)

        if not user_id:
            return jsonify({'error': 'Authentication required'}), 401

        g.user_id = user_id
        return f(*args, **kwargs)

    return decorated_function


def require_api_key(f):
    """Decorator to require API key authentication"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        api_key = request.headers.get('X-API-Key')

        if not api_key:
            return jsonify({'error': 'API key required'}), 401

        if api_key != current_app.config['API_KEY']:
            return jsonify({'error': 'Invalid API key'}), 401

        return f(*args, **kwargs)

    return decorated_function


# ----------------------------------------------------------------------
# Public
# ----------------------------------------------------------------------

@bp.route('/auctions', methods=['GET'])
@handle_errors
def list_auctions():
    """
    List auctions, newest first

    Query params:
    - status: ACTIVE, ENDED, PAYMENT_FAILED, CANCELLED, RELISTED
    - variant_id, min_price, max_price: integers
    """
    status_filter = request.args.get('status')

    if status_filter and status_filter not in AuctionStatus.ALL:
        return jsonify({'error': 'Invalid status filter'}), 400

    auctions = services().auctions.list_auctions(
        status=status_filter,
        variant_id=request.args.get('variant_id', type=int),
        min_price=request.args.get('min_price', type=int),
        max_price=request.args.get('max_price', type=int),
    )

    return jsonify({
        'success': True,
        'count': len(auctions),
        'auctions': auctions
    }), 200


@bp.route('/auctions/<int:auction_id>', methods=['GET'])
@handle_errors
def get_auction(auction_id):
    return jsonify({
        'success': True,
        'auction': services().auctions.get(auction_id)
    }), 200


@bp.route('/auctions/<int:auction_id>/bids', methods=['GET'])
@handle_errors
def get_bid_history(auction_id):
    """Bid history for an auction, newest first"""
    bids = services().bids.history(auction_id)

    return jsonify({
        'success': True,
        'count': len(bids),
        'bids': [bid.to_dict() for bid in bids]
    }), 200


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------

@bp.route('/auctions', methods=['POST'])
@require_api_key
@require_user
@handle_errors
def create_auction():
    """
    Create a new auction

    Required JSON fields:
    - variant_id: integer
    - quantity: integer
    - start_price: integer
    - buy_out_price: integer (greater than start_price)
    Optional:
    - min_increment: integer
    """
    validated_data = validate_create_auction(request.get_json(silent=True))
    auction = services().auctions.create(g.user_id, validated_data)

    return jsonify({
        'success': True,
        'auction_id': auction.id,
        'message': 'Auction created successfully',
        'auction': auction.to_dict()
    }), 201


@bp.route('/auctions/<int:auction_id>', methods=['PATCH'])
@require_api_key
@require_user
@handle_errors
def update_auction(auction_id):
    """Update prices/quantity of an auction that has no bids yet"""
    validated_data = validate_update_auction(request.get_json(silent=True))
    auction = services().auctions.update(g.user_id, auction_id, validated_data)

    return jsonify({
        'success': True,
        'message': 'Auction updated successfully',
        'auction': auction.to_dict()
    }), 200


@bp.route('/auctions/<int:auction_id>/end', methods=['POST'])
@require_api_key
@require_user
@handle_errors
def end_auction(auction_id):
    auction = services().auctions.end_auction(auction_id, ended_by=g.user_id)

    return jsonify({
        'success': True,
        'message': f'Auction {auction.status.lower()}',
        'auction': auction.to_dict()
    }), 200


@bp.route('/auctions/<int:auction_id>/cancel', methods=['POST'])
@require_api_key
@require_user
@handle_errors
def cancel_auction(auction_id):
    validated_data = validate_cancel(request.get_json(silent=True))
    auction = services().auctions.cancel(g.user_id, auction_id, validated_data['reason'])

    return jsonify({
        'success': True,
        'message': 'Auction cancelled successfully',
        'auction': auction.to_dict()
    }), 200


@bp.route('/auctions/<int:auction_id>/relist', methods=['POST'])
@require_api_key
@require_user
@handle_errors
def relist_auction(auction_id):
    validated_data = validate_relist(request.get_json(silent=True))
    auction = services().auctions.relist(
        g.user_id,
        auction_id,
        notify_previous_bidders=validated_data['notify_previous_bidders'],
        admin_note=validated_data['admin_note']
    )

    return jsonify({
        'success': True,
        'message': 'Auction re-listed successfully',
        'auction': auction.to_dict()
    }), 201


@bp.route('/auctions/admin/failed-payments', methods=['GET'])
@require_api_key
@handle_errors
def get_failed_payments():
    auctions = services().auctions.list_failed_payments()

    return jsonify({
        'success': True,
        'count': len(auctions),
        'auctions': [auction.to_dict() for auction in auctions]
    }), 200


@bp.route('/auctions/admin/failures', methods=['GET'])
@require_api_key
@handle_errors
def get_failures():
    """Payment failure records; optional ?user_id= filter"""
    failures = services().stats.list_failures(user_id=request.args.get('user_id', type=int))

    return jsonify({
        'success': True,
        'count': len(failures),
        'failures': [failure.to_dict() for failure in failures]
    }), 200


@bp.route('/users/<int:user_id>/auction-stats', methods=['GET'])
@require_api_key
@handle_errors
def get_user_stats(user_id):
    svc = services()
    stats = svc.stats.get_stats(user_id)

    return jsonify({
        'success': True,
        'stats': stats.to_dict(svc.clock())
    }), 200


# ----------------------------------------------------------------------
# Bidders
# ----------------------------------------------------------------------

@bp.route('/bids/<int:auction_id>', methods=['POST'])
@require_user
@handle_errors
def place_bid(auction_id):
    """
    Place a bid

    Required JSON fields:
    - bid_amount: integer
    """
    validated_data = validate_bid(request.get_json(silent=True))
    bid = services().bids.place_bid(auction_id, g.user_id, validated_data['bid_amount'])

    return jsonify({
        'success': True,
        'message': 'Bid placed successfully',
        'bid': bid
    }), 201


@bp.route('/auctions/<int:auction_id>/buyout', methods=['POST'])
@require_user
@handle_errors
def buy_out(auction_id):
    auction = services().auctions.buy_out(g.user_id, auction_id)

    return jsonify({
        'success': True,
        'message': 'Auction bought out successfully',
        'auction': auction.to_dict()
    }), 200


@bp.route('/bids/my-bids', methods=['GET'])
@require_user
@handle_errors
def my_bids():
    bids = services().bids.my_bids(g.user_id)

    return jsonify({
        'success': True,
        'count': len(bids),
        'bids': bids
    }), 200


@bp.route('/bids/won-auctions', methods=['GET'])
@require_user
@handle_errors
def won_auctions():
    """Won auctions waiting for checkout"""
    auctions = services().bids.won_pending_payment(g.user_id)

    return jsonify({
        'success': True,
        'count': len(auctions),
        'auctions': [auction.to_dict() for auction in auctions]
    }), 200


@bp.route('/bids/can-bid', methods=['GET'])
@require_user
@handle_errors
def can_bid():
    result = services().stats.can_bid(g.user_id)
    return jsonify({'success': True, **result}), 200


# ----------------------------------------------------------------------
# Order subsystem
# ----------------------------------------------------------------------

@bp.route('/orders/checkout-candidates', methods=['GET'])
@require_api_key
@require_user
@handle_errors
def checkout_candidates():
    """
    Ended, unlinked auctions of the user, for building an order

    Query params:
    - auction_ids: comma separated subset to validate (optional)
    """
    raw_ids = request.args.get('auction_ids')
    auction_ids = None
    if raw_ids:
        try:
            auction_ids = [int(part) for part in raw_ids.split(',') if part.strip()]
        except ValueError:
            return jsonify({'error': 'auction_ids must be comma separated integers'}), 400

    result = services().auctions.checkout_candidates(g.user_id, auction_ids)
    deadline = result['payment_deadline']

    return jsonify({
        'success': True,
        'auctions': [auction.to_dict() for auction in result['auctions']],
        'subtotal': result['subtotal'],
        'payment_deadline': deadline.isoformat() if deadline else None
    }), 200


@bp.route('/orders/<int:order_id>/link', methods=['POST'])
@require_api_key
@require_user
@handle_errors
def link_order(order_id):
    auction_ids = validate_auction_ids(request.get_json(silent=True))
    order = services().auctions.link_to_order(g.user_id, order_id, auction_ids)

    return jsonify({
        'success': True,
        'order': order.to_dict()
    }), 200


@bp.route('/orders/<int:order_id>/unlink', methods=['POST'])
@require_api_key
@handle_errors
def unlink_order(order_id):
    count = services().auctions.unlink_from_order(order_id)

    return jsonify({
        'success': True,
        'count': count
    }), 200


@bp.route('/orders/<int:order_id>/paid', methods=['POST'])
@require_api_key
@handle_errors
def order_paid(order_id):
    order = services().auctions.mark_order_paid(order_id)

    return jsonify({
        'success': True,
        'order': order.to_dict()
    }), 200


@bp.route('/orders/<int:order_id>/payment-failed', methods=['POST'])
@require_api_key
@handle_errors
def order_payment_failed(order_id):
    """Payment provider reported the order's payment as expired or failed"""
    data = request.get_json(silent=True) or {}
    reason = data.get('reason') or 'Payment failed'
    if not isinstance(reason, str):
        return jsonify({'error': 'reason must be a string'}), 400

    failed = services().sweeps.fail_order(order_id, reason)

    return jsonify({
        'success': True,
        'failed_auction_ids': failed
    }), 200


# ----------------------------------------------------------------------
# Sweeps
# ----------------------------------------------------------------------

SWEEPS = {
    'auto-end-auctions': 'auto_end_auctions',
    'detect-payment-failures': 'detect_payment_failures',
    'cancel-unpaid-auction-orders': 'cancel_unpaid_orders',
}


@bp.route('/cron/trigger/<job>', methods=['POST'])
@require_api_key
@handle_errors
def trigger_sweep(job):
    """Manually run one of the deadline sweeps"""
    if job not in SWEEPS:
        return jsonify({'error': f'Unknown job: {job}'}), 404

    result = getattr(services().sweeps, SWEEPS[job])()

    return jsonify({
        'success': True,
        **result
    }), 200


@bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    try:
        db.session.execute(db.text('SELECT 1'))
        return jsonify({
            'status': 'healthy',
            'database': 'connected'
        }), 200

    except Exception as e:
        return jsonify({
            'status': 'unhealthy',
            'error': str(e)
        }), 500
