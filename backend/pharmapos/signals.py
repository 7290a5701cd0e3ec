# backend/pharmapos/signals.py
"""
Post-commit notifications.

Receivers run after the settlement transaction has committed; nothing they do
can undo or delay a sale. Sender is the Flask app object.

- sale_completed(app, sale_id, client_transaction_id, total_cents)
- stock_low(app, product_id, quantity, reorder_level)
"""

from blinker import Namespace

_signals = Namespace()

sale_completed = _signals.signal("sale-completed")
stock_low = _signals.signal("stock-low")
