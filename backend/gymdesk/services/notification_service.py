# Overview: Best-effort hand-off of enrollment and payment notifications to an external dispatcher.

"""
Notification Hand-off

WHY: Email/SMS/WhatsApp delivery lives outside the billing core. The core
only hands off a small payload after its transaction has committed; a broken
dispatcher must never undo a committed enrollment or payment.

The dispatcher is app.config["NOTIFICATION_DISPATCHER"]: any callable taking
(kind, payload). When unset, the payload is only logged.
"""

from __future__ import annotations

import logging

from flask import current_app

logger = logging.getLogger(__name__)

NOTIFY_MEMBER_ENROLLED = "MEMBER_ENROLLED"
NOTIFY_PAYMENT_RECEIVED = "PAYMENT_RECEIVED"


def build_payload(*, member_id, invoice_number, amount_cents, plan_name=None, valid_until=None) -> dict:
    return {
        "member_id": member_id,
        "invoice_number": invoice_number,
        "amount_cents": amount_cents,
        "plan_name": plan_name,
        "valid_until": valid_until,
    }


def dispatch(kind: str, payload: dict) -> bool:
    """
    Hand off one notification. Returns True if the dispatcher accepted it.

    Never raises: failures are logged with traceback and reported as False.
    """
    dispatcher = current_app.config.get("NOTIFICATION_DISPATCHER")
    try:
        if dispatcher is None:
            logger.info("Notification %s: %s", kind, payload)
            return True
        dispatcher(kind, payload)
        return True
    except Exception:
        logger.warning("Notification hand-off failed for %s", kind, exc_info=True)
        return False
