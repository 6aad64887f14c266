"""
Typed references to the two kinds of marketplace orders.

Payments and reviews point at exactly one order, either a rental booking or a
sale order. Storage keeps two nullable foreign keys plus a type tag; in code the
reference is one of ``RentalRef`` or ``SaleRef`` so the "exactly one,
tag matches" rule holds from the moment the reference is built.
"""

from dataclasses import dataclass

from django.core.exceptions import ValidationError


@dataclass(frozen=True)
class OrderRef:
    """Base class for order references. Use ``RentalRef`` or ``SaleRef``."""

    id: int

    kind = None

    def __post_init__(self):
        if self.kind is None:
            raise TypeError('OrderRef is abstract; use RentalRef or SaleRef.')
        if isinstance(self.id, bool) or not isinstance(self.id, int) or self.id <= 0:
            raise ValidationError(
                f'{self.kind} order reference must be a positive integer id, got {self.id!r}.'
            )

    @property
    def model(self):
        from .models import RentalBooking, SaleOrder

        return RentalBooking if self.kind == 'rental' else SaleOrder

    @property
    def field_name(self):
        """Name of the foreign key that carries this reference on payments and reviews."""
        return 'rental_booking' if self.kind == 'rental' else 'sale_order'

    def filter_kwargs(self):
        return {f'{self.field_name}_id': self.id}


@dataclass(frozen=True)
class RentalRef(OrderRef):
    kind = 'rental'


@dataclass(frozen=True)
class SaleRef(OrderRef):
    kind = 'sale'


REF_TYPES = {
    'rental': RentalRef,
    'sale': SaleRef,
}


def order_ref(kind, order_id):
    """
    Build a reference from a kind string and an id.

    Raises:
        ValidationError: If the kind is unknown or the id is invalid
    """
    try:
        ref_type = REF_TYPES[kind]
    except KeyError:
        raise ValidationError({'order_kind': f'Unknown order kind "{kind}". Expected "rental" or "sale".'})
    try:
        order_id = int(order_id)
    except (TypeError, ValueError):
        raise ValidationError({'order_id': f'Invalid order id {order_id!r}.'})
    return ref_type(order_id)


def ref_for_order(order):
    """Return the reference for a saved RentalBooking or SaleOrder instance."""
    return order_ref(order.ORDER_KIND, order.pk)
