import logging
from flask import current_app
from stock_auctions.errors import ValidationError

logger = logging.getLogger(__name__)


def _is_int(value):
    # bool is an int subclass; JSON true/false are not quantities
    return isinstance(value, int) and not isinstance(value, bool)


def validate_positive_int(data, field, minimum=1):
    """
    Validate that data[field] is an integer >= minimum

    Args:
        data: Request payload dict
        field: Key to check
        minimum: Smallest accepted value

    Returns:
        The integer value

    Raises:
        ValidationError if missing, not an integer or too small
    """
    if field not in data or data[field] is None:
        raise ValidationError(f"Missing required field: {field}")

    value = data[field]
    if not _is_int(value):
        raise ValidationError(f"{field} must be an integer")

    if value < minimum:
        raise ValidationError(f"{field} must be at least {minimum}")

    return value


def validate_price(data, field):
    """Prices are whole currency units with a configured floor"""
    return validate_positive_int(data, field, minimum=current_app.config['MIN_PRICE'])


def validate_create_auction(data):
    """
    Validate auction creation payload

    Required: variant_id, quantity, start_price, buy_out_price
    Optional: min_increment

    Returns:
        dict with validated data

    Raises:
        ValidationError if any validation fails
    """
    if not data:
        raise ValidationError("No data provided")

    validated = {
        'variant_id': validate_positive_int(data, 'variant_id'),
        'quantity': validate_positive_int(data, 'quantity'),
        'start_price': validate_price(data, 'start_price'),
        'buy_out_price': validate_price(data, 'buy_out_price'),
    }

    if data.get('min_increment') is not None:
        validated['min_increment'] = validate_positive_int(data, 'min_increment')

    if validated['buy_out_price'] <= validated['start_price']:
        raise ValidationError("Buy out price must be higher than start price")

    logger.info(f"Validated auction for variant {validated['variant_id']} x{validated['quantity']}")

    return validated


def validate_update_auction(data):
    """
    Validate auction update payload; every field is optional but at least
    one must be present
    """
    if not data:
        raise ValidationError("No data provided")

    validated = {}
    for field in ('start_price', 'buy_out_price'):
        if data.get(field) is not None:
            validated[field] = validate_price(data, field)

    if data.get('min_increment') is not None:
        validated['min_increment'] = validate_positive_int(data, 'min_increment')

    if data.get('quantity') is not None:
        validated['quantity'] = validate_positive_int(data, 'quantity')

    if not validated:
        raise ValidationError("Nothing to update")

    return validated


def validate_bid(data):
    """Validate bid payload: bid_amount"""
    if not data:
        raise ValidationError("No data provided")

    return {'bid_amount': validate_positive_int(data, 'bid_amount')}


def validate_cancel(data):
    """A cancellation carries a free-text reason shown to bidders"""
    reason = (data or {}).get('reason') or 'Cancelled by administrator'

    if not isinstance(reason, str):
        raise ValidationError("reason must be a string")

    if len(reason) > 255:
        raise ValidationError("reason must be at most 255 characters")

    return {'reason': reason}


def validate_relist(data):
    """Validate relist payload: notify_previous_bidders (bool), admin_note (str)"""
    data = data or {}

    notify = data.get('notify_previous_bidders', False)
    if not isinstance(notify, bool):
        raise ValidationError("notify_previous_bidders must be a boolean")

    note = data.get('admin_note')
    if note is not None and not isinstance(note, str):
        raise ValidationError("admin_note must be a string")

    return {'notify_previous_bidders': notify, 'admin_note': note}


def validate_auction_ids(data):
    """
    Validate a list of auction ids (checkout / order linkage)

    Returns:
        List of unique ids, in the order given

    Raises:
        ValidationError if missing, empty or containing non-integers
    """
    if not data or 'auction_ids' not in data:
        raise ValidationError("Missing required field: auction_ids")

    auction_ids = data['auction_ids']
    if not isinstance(auction_ids, list) or len(auction_ids) == 0:
        raise ValidationError("At least 1 auction must be selected")

    for i, auction_id in enumerate(auction_ids):
        if not _is_int(auction_id) or auction_id <= 0:
            raise ValidationError(f"auction_ids[{i}] must be a positive integer")

    return list(dict.fromkeys(auction_ids))
