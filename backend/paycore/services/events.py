# Overview: In-process domain event dispatch between the checkout core and its consumers.

"""
Domain events

WHY: The checkout orchestrator must not know about subscriptions, but a
completed checkout has to become a subscription. The orchestrator emits
CHECKOUT_COMPLETED exactly once per session (after the state change is
committed) and the subscription ledger registers itself as a handler in
create_app.

Handlers run synchronously in the emitting request. A failing handler is
logged and does not undo the committed checkout; the CheckoutEvent audit
trail still shows COMPLETED, so the work can be replayed.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable

from flask import current_app

from ..extensions import db


CHECKOUT_COMPLETED = "checkout.completed"

_handlers: dict[str, list[Callable[[Any], Any]]] = defaultdict(list)


def subscribe(event_type: str, handler: Callable[[Any], Any]) -> None:
    """Register handler for event_type. Registering the same handler twice is a no-op."""
    if handler not in _handlers[event_type]:
        _handlers[event_type].append(handler)


def unsubscribe(event_type: str, handler: Callable[[Any], Any]) -> None:
    if handler in _handlers[event_type]:
        _handlers[event_type].remove(handler)


def emit(event_type: str, subject: Any) -> list[Any]:
    """
    Deliver subject to every handler of event_type.

    Returns the handlers' results in registration order (None for a handler
    that raised).
    """
    results = []
    for handler in list(_handlers[event_type]):
        try:
            results.append(handler(subject))
        except Exception:
            db.session.rollback()
            current_app.logger.exception(
                "Event handler %s failed for %s", getattr(handler, "__name__", handler), event_type
            )
            results.append(None)
    return results
