# Overview: Default post-commit receivers; log completed sales and low stock.

from __future__ import annotations

from ..signals import sale_completed, stock_low


def _log_sale_completed(app, sale_id=None, client_transaction_id=None, total_cents=None, **extra):
    app.logger.debug("Sale %s completed (%s), total %s cents", sale_id, client_transaction_id, total_cents)


def _log_stock_low(app, product_id=None, quantity=None, reorder_level=None, **extra):
    app.logger.warning(
        "Product %s is low on stock: %s on hand, reorder level %s",
        product_id, quantity, reorder_level,
    )


def connect_default_receivers(app) -> None:
    """Connect the logging receivers for signals sent by this app."""
    sale_completed.connect(_log_sale_completed, sender=app, weak=False)
    stock_low.connect(_log_stock_low, sender=app, weak=False)
