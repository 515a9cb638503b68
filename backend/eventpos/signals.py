# Overview: Domain events emitted by the order core after commit (blinker signals).

"""
Receivers are owned by the push gateway and the automation engine; the core
only sends. Every signal is sent with the organization id as sender and the
payload as keyword arguments.
"""

from blinker import Namespace

_signals = Namespace()

order_created = _signals.signal("order.created")
order_updated = _signals.signal("order.updated")
order_item_status_changed = _signals.signal("order.item.status_changed")
payment_received = _signals.signal("payment.received")
automation_trigger = _signals.signal("automation.trigger")

SIGNALS_BY_NAME = {
    "order.created": order_created,
    "order.updated": order_updated,
    "order.item.status_changed": order_item_status_changed,
    "payment.received": payment_received,
    "automation.trigger": automation_trigger,
}

# Automation trigger types
TRIGGER_ORDER_CREATED = "order_created"
TRIGGER_ORDER_COMPLETED = "order_completed"
TRIGGER_PAYMENT_RECEIVED = "payment_received"
TRIGGER_LOW_STOCK = "low_stock"
