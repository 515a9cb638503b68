# Overview: Post-commit fan-out of domain events; failures are logged, never raised.

from __future__ import annotations

import logging

from flask import current_app

from ..signals import SIGNALS_BY_NAME, TRIGGER_LOW_STOCK


logger = logging.getLogger(__name__)


class Outbox:
    """
    Events collected while a unit of work runs.

    Services append to it inside the transaction and call publish() only after
    db.session.commit() has returned.
    """

    def __init__(self, organization_id: int):
        self.organization_id = organization_id
        self.events: list[tuple[str, dict]] = []

    def clear(self) -> None:
        self.events = []

    def add(self, name: str, **payload) -> None:
        self.events.append((name, payload))

    def trigger(self, event_type: str, payload: dict) -> None:
        self.add(
            "automation.trigger",
            organization_id=self.organization_id,
            event_type=event_type,
            payload=payload,
        )

    def publish(self) -> None:
        events, self.events = self.events, []
        for name, payload in events:
            publish(name, self.organization_id, **payload)


def publish(name: str, sender: int, **payload) -> None:
    """
    Send one event to its receivers. A failing receiver never reaches the caller.

    sender is the organization id; payloads may carry their own organization_id key.
    """
    signal = SIGNALS_BY_NAME.get(name)
    if signal is None:
        logger.error("Unknown event %s dropped", name)
        return

    try:
        signal.send(sender, **payload)
    except Exception:
        logger.exception("Delivery of %s for organization %s failed", name, sender)


def note_low_stock(outbox: Outbox, movement) -> None:
    """Queue a low_stock trigger if the movement crossed the configured threshold."""
    threshold = current_app.config.get("LOW_STOCK_THRESHOLD", 0)
    if movement is not None and movement.crossed_low_stock(threshold):
        outbox.trigger(
            TRIGGER_LOW_STOCK,
            {
                "product_id": movement.product_id,
                "sales_context_id": movement.sales_context_id,
                "stock_quantity": movement.quantity_after,
                "threshold": threshold,
            },
        )
