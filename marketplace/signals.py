"""
Outbound events of the transaction engine.

Notifications and chat live outside the engine; they subscribe to these
signals. Events are sent only after the surrounding transaction commits, so a
receiver never sees a change that was rolled back, and a failing receiver
never rolls back the change that produced the event.
"""

import logging
from functools import partial

from django.db import transaction
from django.dispatch import Signal, receiver

logger = logging.getLogger(__name__)

# kwargs: ref, order_id, old_status, new_status, actor_role, reason
order_status_changed = Signal()

# kwargs: payment_id, order_id, ref, old_status, new_status
payment_status_changed = Signal()

# kwargs: case_id, reason, payment_id, amount
reconciliation_required = Signal()


def _send(signal, sender, kwargs):
    results = signal.send_robust(sender=sender, **kwargs)
    for receiver_func, result in results:
        if isinstance(result, Exception):
            logger.error(
                f"Receiver {getattr(receiver_func, '__name__', receiver_func)} failed "
                f"for {sender.__name__} event: {result}",
                exc_info=result,
            )


def emit_on_commit(signal, sender, **kwargs):
    """Send signal once the current transaction commits (immediately outside one)."""
    transaction.on_commit(partial(_send, signal, sender, kwargs))


@receiver(order_status_changed)
def log_order_status_change(sender, ref, order_id, old_status, new_status, actor_role=None, reason='', **kwargs):
    logger.info(
        f"Order {order_id} ({ref.kind} #{ref.id}) status changed: "
        f"{old_status} -> {new_status} by {actor_role or 'unknown'}"
        + (f", reason: {reason}" if reason else '')
    )


@receiver(payment_status_changed)
def log_payment_status_change(sender, order_id, old_status, new_status, **kwargs):
    logger.info(f"Payment {order_id} status changed: {old_status} -> {new_status}")


@receiver(reconciliation_required)
def log_reconciliation_case(sender, case_id, reason, payment_id, amount, **kwargs):
    logger.warning(
        f"Reconciliation case {case_id} opened: reason={reason}, "
        f"payment={payment_id}, amount={amount}"
    )
