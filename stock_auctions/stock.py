from stock_auctions import db
from stock_auctions.errors import NotFoundError, ValidationError
from stock_auctions.models import Variant
import logging

logger = logging.getLogger(__name__)


class StockLedger:
    """
    Reserve/release of a variant's available stock.

    Neither method commits: both join the caller's unit of work so the stock
    counter and the auction status change together or not at all.
    """

    def get_variant(self, variant_id):
        variant = db.session.get(Variant, variant_id)
        if variant is None:
            raise NotFoundError(f"Variant {variant_id} not found")
        return variant

    def get_stock(self, variant_id):
        return self.get_variant(variant_id).stock

    def reserve(self, variant_id, qty):
        """
        Take `qty` out of available stock.

        The decrement is a single conditional UPDATE guarded by `stock >= qty`,
        so two concurrent reservations can never drive the counter negative.
        """
        if qty <= 0:
            raise ValidationError("Quantity to reserve must be positive")

        rows = Variant.query.filter(
            Variant.id == variant_id,
            Variant.stock >= qty
        ).update({Variant.stock: Variant.stock - qty}, synchronize_session=False)

        if rows == 0:
            available = self.get_stock(variant_id)
            raise ValidationError(f"Insufficient stock. Available: {available}, Required: {qty}")

        self._expire(variant_id)
        logger.info(f"Stock reserved for variant {variant_id}: -{qty}")

    def release(self, variant_id, qty):
        """Put `qty` back into available stock"""
        if qty <= 0:
            raise ValidationError("Quantity to release must be positive")

        rows = Variant.query.filter(
            Variant.id == variant_id
        ).update({Variant.stock: Variant.stock + qty}, synchronize_session=False)

        if rows == 0:
            raise NotFoundError(f"Variant {variant_id} not found")

        self._expire(variant_id)
        logger.info(f"Stock released for variant {variant_id}: +{qty}")

    def _expire(self, variant_id):
        # Bulk updates bypass the identity map; drop any cached copy
        variant = db.session.identity_map.get(db.session.identity_key(Variant, variant_id))
        if variant is not None:
            db.session.expire(variant)
