"""
Public Python API of the transaction engine.

Views, management commands and other apps call the engine through these
names.
"""

from .availability import can_book_rental, can_order_sale, check_availability
from .commission import calculate_commission, compute_commission, schedule_commission_rate
from .orders import (
    SYSTEM,
    Actor,
    accept_counter_offer,
    counter_offer,
    create_rental_booking,
    create_sale_order,
    mark_documents_transferred,
    transition_order,
)
from .payments import apply_gateway_event, create_payment, refund_payment
from .ratings import recalculate_vehicle_rating, set_review_visibility, submit_review, update_review
from .refs import RentalRef, SaleRef, order_ref
from .settlement import (
    get_seller_balance,
    get_seller_earnings,
    process_withdrawal,
    promote_to_available,
    request_withdrawal,
)
from .sweep import run_sweep
from .testdrives import request_test_drive, respond_test_drive

record_gateway_event = apply_gateway_event

__all__ = [
    'SYSTEM',
    'Actor',
    'RentalRef',
    'SaleRef',
    'accept_counter_offer',
    'apply_gateway_event',
    'calculate_commission',
    'can_book_rental',
    'can_order_sale',
    'check_availability',
    'compute_commission',
    'counter_offer',
    'create_payment',
    'create_rental_booking',
    'create_sale_order',
    'get_seller_balance',
    'get_seller_earnings',
    'mark_documents_transferred',
    'order_ref',
    'process_withdrawal',
    'promote_to_available',
    'recalculate_vehicle_rating',
    'record_gateway_event',
    'refund_payment',
    'request_test_drive',
    'request_withdrawal',
    'respond_test_drive',
    'run_sweep',
    'schedule_commission_rate',
    'set_review_visibility',
    'submit_review',
    'transition_order',
    'update_review',
]
