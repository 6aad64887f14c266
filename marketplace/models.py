"""
Models for the Vehicle Marketplace transaction engine.

Vehicles are listed either for rent or for sale. Rentals go through
RentalBooking, sales through SaleOrder; both are paid through Payment rows,
and every successful payment is recorded in the append-only TransactionLog and
credited to the seller's SellerBalance.
"""

import uuid
from decimal import Decimal

from django.contrib.auth.models import AbstractUser
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from .exceptions import InvalidTransitionError
from .refs import order_ref

ZERO = Decimal('0.00')


def money_field(verbose_name, **kwargs):
    """DecimalField configured for rupiah amounts."""
    kwargs.setdefault('max_digits', 14)
    kwargs.setdefault('decimal_places', 2)
    return models.DecimalField(verbose_name, **kwargs)


def generate_order_number(prefix):
    """
    Generate a human readable order number.

    Format: {prefix}-{YYYYMMDD}-{8 hex chars}, e.g. SAL-20250101-9F2C11AB
    """
    return f'{prefix}-{timezone.now():%Y%m%d}-{uuid.uuid4().hex[:8].upper()}'


class User(AbstractUser):
    """
    Marketplace account.

    Authentication itself is handled outside the engine; the engine only needs
    to know who the caller is and which role they act in.
    """

    ROLE_CHOICES = [
        ('customer', 'Customer'),
        ('seller', 'Seller'),
        ('admin', 'Administrator'),
    ]

    email = models.EmailField(
        _('email address'),
        unique=True,
        blank=False,
        null=False,
        error_messages={
            'unique': _('A user with that email already exists.'),
        },
    )

    phone_number = models.CharField(
        _('phone number'),
        max_length=20,
        blank=True,
        default='',
    )

    role = models.CharField(
        _('role'),
        max_length=10,
        choices=ROLE_CHOICES,
        default='customer',
        help_text=_('Customer, seller or platform administrator.')
    )

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)
    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('user')
        verbose_name_plural = _('users')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['role']),
        ]

    def __str__(self):
        return self.email or self.username

    def is_seller(self):
        return self.role == 'seller'

    def is_customer(self):
        return self.role == 'customer'

    def is_platform_admin(self):
        return self.role == 'admin' or self.is_staff

    def save(self, *args, **kwargs):
        if self.email:
            self.email = self.email.lower()
        super().save(*args, **kwargs)


class Vehicle(models.Model):
    """
    Vehicle listing.

    Fields:
    - seller: Owner of the listing
    - listing_kind: 'rental' or 'sale'
    - status: available, pending_sale or sold. Written only by the order
      state machine, never edited directly.
    - price: Daily price for rentals, asking price for sales
    - rating / review_count: Aggregates maintained by the rating aggregator
    """

    KIND_CHOICES = [
        ('rental', 'Rental'),
        ('sale', 'Sale'),
    ]

    STATUS_CHOICES = [
        ('available', 'Available'),
        ('pending_sale', 'Pending Sale'),
        ('sold', 'Sold'),
    ]

    seller = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='vehicles',
        help_text=_('Seller who owns this listing')
    )

    title = models.CharField(_('title'), max_length=255)

    listing_kind = models.CharField(
        _('listing kind'),
        max_length=10,
        choices=KIND_CHOICES,
    )

    status = models.CharField(
        _('status'),
        max_length=20,
        choices=STATUS_CHOICES,
        default='available',
    )

    price = money_field(
        _('price'),
        help_text=_('Price per day for rentals, asking price for sales')
    )

    rating = models.DecimalField(
        _('rating'),
        max_digits=3,
        decimal_places=2,
        default=ZERO,
        validators=[
            MinValueValidator(ZERO, message=_('Rating cannot be negative.')),
            MaxValueValidator(Decimal('5.00'), message=_('Rating cannot exceed 5.00.'))
        ],
    )

    review_count = models.PositiveIntegerField(_('review count'), default=0)

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)
    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('vehicle')
        verbose_name_plural = _('vehicles')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['seller']),
            models.Index(fields=['listing_kind', 'status']),
        ]

    def __str__(self):
        return self.title

    def clean(self):
        """
        Validate model fields.

        Ensures:
        - Seller has the seller role
        - Price is greater than 0
        - Title is not blank
        """
        super().clean()

        if self.seller_id and not self.seller.is_seller():
            raise ValidationError({
                'seller': _('Only users with role="seller" can list vehicles.')
            })

        if self.price is not None and self.price <= 0:
            raise ValidationError({
                'price': _('Price must be greater than 0.')
            })

        if not self.title or not self.title.strip():
            raise ValidationError({
                'title': _('Title cannot be empty.')
            })

    def save(self, *args, **kwargs):
        self.full_clean()
        super().save(*args, **kwargs)


# ============================================================================
# Orders
# ============================================================================

class OrderQuerySet(models.QuerySet):
    """QuerySet that refuses bulk deletion of orders that were ever paid."""

    def delete(self):
        protected = [order for order in self if order.was_paid()]
        if protected:
            raise InvalidTransitionError(
                f'Cannot delete {protected[0].ORDER_KIND} order {protected[0].order_id}: '
                f'it has been paid.'
            )
        return super().delete()


class MarketplaceOrder(models.Model):
    """
    Behaviour shared by rental bookings and sale orders.

    Subclasses define STATUS_CHOICES, VALID_TRANSITIONS, TERMINAL_STATUSES,
    ACTIVE_STATUSES and PAID_STATUSES.
    """

    ORDER_KIND = None
    ORDER_PREFIX = None
    VALID_TRANSITIONS = {}
    TERMINAL_STATUSES = ()
    ACTIVE_STATUSES = ()
    PAID_STATUSES = ()

    objects = OrderQuerySet.as_manager()

    class Meta:
        abstract = True

    @property
    def ref(self):
        return order_ref(self.ORDER_KIND, self.pk)

    @property
    def payable_amount(self):
        raise NotImplementedError

    @property
    def customer_party_id(self):
        raise NotImplementedError

    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def was_paid(self):
        """True if the order has ever reached a paid state."""
        return self.paid_at is not None or self.status in self.PAID_STATUSES

    def can_transition_to(self, new_status, current_time=None):
        """
        Validate if the order can move to new_status.

        Returns:
            tuple: (is_valid: bool, error_message: str or None)
        """
        current_status = self.status

        if current_status == new_status:
            return True, None

        if current_status in self.TERMINAL_STATUSES:
            return False, f'Cannot modify a {current_status} {self.ORDER_KIND} order.'

        if new_status not in self.VALID_TRANSITIONS.get(current_status, []):
            return False, f'Invalid status transition from {current_status} to {new_status}.'

        return True, None

    def _validate_stored_transition(self):
        """Reject saves that jump over the state machine."""
        if self.pk is None:
            return
        try:
            old_status = type(self).objects.values_list('status', flat=True).get(pk=self.pk)
        except type(self).DoesNotExist:
            return
        if old_status != self.status and self.status not in self.VALID_TRANSITIONS.get(old_status, []):
            raise ValidationError({
                'status': _(f'Invalid status transition from {old_status} to {self.status}.')
            })

    def save(self, *args, **kwargs):
        if not self.order_id:
            self.order_id = generate_order_number(self.ORDER_PREFIX)
        self.full_clean()
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        """Orders that reached a paid state are kept for the financial audit trail."""
        if self.was_paid():
            raise InvalidTransitionError(
                f'Cannot delete {self.ORDER_KIND} order {self.order_id}: it has been paid.'
            )
        return super().delete(*args, **kwargs)


class RentalBooking(MarketplaceOrder):
    """
    Rental of a vehicle for the half-open window [pickup_date, return_date).

    Status flow:
    pending_payment -> paid -> akan_datang (upcoming) -> berjalan (in progress)
    -> selesai (done); any state before berjalan may be cancelled.
    """

    ORDER_KIND = 'rental'
    ORDER_PREFIX = 'RNT'

    STATUS_CHOICES = [
        ('pending_payment', 'Pending Payment'),
        ('paid', 'Paid'),
        ('akan_datang', 'Upcoming'),
        ('berjalan', 'In Progress'),
        ('selesai', 'Done'),
        ('cancelled', 'Cancelled'),
    ]

    VALID_TRANSITIONS = {
        'pending_payment': ['paid', 'cancelled'],
        'paid': ['akan_datang', 'cancelled'],
        'akan_datang': ['berjalan', 'cancelled'],
        'berjalan': ['selesai'],
        'selesai': [],
        'cancelled': [],
    }

    TERMINAL_STATUSES = ('selesai', 'cancelled')
    ACTIVE_STATUSES = ('pending_payment', 'paid', 'akan_datang', 'berjalan')
    PAID_STATUSES = ('paid', 'akan_datang', 'berjalan', 'selesai')

    order_id = models.CharField(_('order id'), max_length=50, unique=True, blank=True)

    vehicle = models.ForeignKey(
        Vehicle,
        on_delete=models.PROTECT,
        related_name='rental_bookings',
    )

    customer = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name='rental_bookings',
    )

    seller = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name='rental_sales',
    )

    pickup_date = models.DateTimeField(_('pickup date'))
    return_date = models.DateTimeField(_('return date'))
    actual_pickup_at = models.DateTimeField(_('actual pickup at'), null=True, blank=True)
    actual_return_at = models.DateTimeField(_('actual return at'), null=True, blank=True)

    total_days = models.PositiveIntegerField(_('total days'))
    price_per_day = money_field(_('price per day'))
    total_price = money_field(_('total price'))
    notes = models.TextField(_('notes'), blank=True, default='')

    status = models.CharField(
        _('status'),
        max_length=30,
        choices=STATUS_CHOICES,
        default='pending_payment',
    )

    cancel_reason = models.TextField(_('cancel reason'), blank=True, default='')

    paid_at = models.DateTimeField(_('paid at'), null=True, blank=True)
    completed_at = models.DateTimeField(_('completed at'), null=True, blank=True)
    cancelled_at = models.DateTimeField(_('cancelled at'), null=True, blank=True)
    created_at = models.DateTimeField(_('created at'), auto_now_add=True)
    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('rental booking')
        verbose_name_plural = _('rental bookings')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['vehicle', 'status']),
            models.Index(fields=['customer', 'status']),
            models.Index(fields=['seller', 'status']),
            models.Index(fields=['pickup_date', 'return_date']),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(return_date__gt=F('pickup_date')),
                name='rental_return_after_pickup',
                violation_error_message=_('Return date must be after pickup date.'),
            ),
        ]

    def __str__(self):
        return f'{self.order_id} ({self.status})'

    @property
    def payable_amount(self):
        return self.total_price

    @property
    def customer_party_id(self):
        return self.customer_id

    def clean(self):
        """
        Validate model fields.

        Ensures:
        - Return date is after pickup date
        - Vehicle is listed for rent
        - Seller is the vehicle's seller and differs from the customer
        - Status change (on update) follows VALID_TRANSITIONS
        """
        super().clean()

        if self.pickup_date and self.return_date and self.return_date <= self.pickup_date:
            raise ValidationError({
                'return_date': _('Return date must be after pickup date.')
            })

        if self.vehicle_id:
            if self.vehicle.listing_kind != 'rental':
                raise ValidationError({
                    'vehicle': _('Only vehicles listed for rent can be booked.')
                })
            if self.seller_id and self.seller_id != self.vehicle.seller_id:
                raise ValidationError({
                    'seller': _('Booking seller must match the vehicle seller.')
                })

        if self.customer_id and self.customer_id == self.seller_id:
            raise ValidationError({
                'customer': _('Sellers cannot rent their own vehicles.')
            })

        self._validate_stored_transition()

    def can_transition_to(self, new_status, current_time=None):
        """
        Validate rental transitions.

        Besides the transition table, a rental can only start (berjalan) once
        the scheduled pickup time has been reached.
        """
        is_valid, message = super().can_transition_to(new_status, current_time)
        if not is_valid or new_status == self.status:
            return is_valid, message

        if current_time is None:
            current_time = timezone.now()

        if new_status == 'berjalan' and current_time < self.pickup_date:
            return False, 'Cannot start a rental before the scheduled pickup time.'

        return True, None


class SaleOrder(MarketplaceOrder):
    """
    Purchase of a vehicle listed for sale.

    Status flow:
    pending_confirmation -> pending_payment -> paid -> document_processing
    -> completed. Before payment the seller may reject and the buyer may
    cancel. Completion requires all four document transfer flags.
    """

    ORDER_KIND = 'sale'
    ORDER_PREFIX = 'SAL'

    STATUS_CHOICES = [
        ('pending_confirmation', 'Pending Confirmation'),
        ('pending_payment', 'Pending Payment'),
        ('paid', 'Paid'),
        ('document_processing', 'Document Processing'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
        ('rejected', 'Rejected'),
    ]

    VALID_TRANSITIONS = {
        'pending_confirmation': ['pending_payment', 'rejected', 'cancelled'],
        'pending_payment': ['paid', 'rejected', 'cancelled'],
        # Cancelling after payment is only reachable through a refund
        'paid': ['document_processing', 'cancelled'],
        'document_processing': ['completed', 'cancelled'],
        'completed': [],
        'cancelled': [],
        'rejected': [],
    }

    TERMINAL_STATUSES = ('completed', 'cancelled', 'rejected')
    ACTIVE_STATUSES = ('pending_confirmation', 'pending_payment', 'paid', 'document_processing')
    PAID_STATUSES = ('paid', 'document_processing', 'completed')

    DOCUMENT_FIELDS = (
        'title_transferred',
        'registration_transferred',
        'invoice_transferred',
        'tax_transferred',
    )

    order_id = models.CharField(_('order id'), max_length=50, unique=True, blank=True)

    vehicle = models.ForeignKey(
        Vehicle,
        on_delete=models.PROTECT,
        related_name='sale_orders',
    )

    buyer = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name='purchases',
    )

    seller = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name='sales',
    )

    testdrive_booking = models.ForeignKey(
        'TestDriveBooking',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='sale_orders',
    )

    asking_price = money_field(_('asking price'))
    offer_price = money_field(_('offer price'), null=True, blank=True)
    counter_offer_price = money_field(_('counter offer price'), null=True, blank=True)
    final_price = money_field(_('final price'))

    status = models.CharField(
        _('status'),
        max_length=30,
        choices=STATUS_CHOICES,
        default='pending_confirmation',
    )

    # Ownership title (BPKB), registration (STNK), purchase invoice, tax receipt
    title_transferred = models.BooleanField(_('title transferred'), default=False)
    registration_transferred = models.BooleanField(_('registration transferred'), default=False)
    invoice_transferred = models.BooleanField(_('invoice transferred'), default=False)
    tax_transferred = models.BooleanField(_('tax transferred'), default=False)

    confirmation_deadline = models.DateTimeField(
        _('confirmation deadline'),
        null=True,
        blank=True,
        help_text=_('The order is cancelled if the seller has not confirmed by then')
    )

    buyer_notes = models.TextField(_('buyer notes'), blank=True, default='')
    seller_notes = models.TextField(_('seller notes'), blank=True, default='')
    cancel_reason = models.TextField(_('cancel reason'), blank=True, default='')
    reject_reason = models.TextField(_('reject reason'), blank=True, default='')

    confirmed_at = models.DateTimeField(_('confirmed at'), null=True, blank=True)
    paid_at = models.DateTimeField(_('paid at'), null=True, blank=True)
    document_transfer_started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(_('completed at'), null=True, blank=True)
    cancelled_at = models.DateTimeField(_('cancelled at'), null=True, blank=True)
    rejected_at = models.DateTimeField(_('rejected at'), null=True, blank=True)
    created_at = models.DateTimeField(_('created at'), auto_now_add=True)
    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('sale order')
        verbose_name_plural = _('sale orders')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['vehicle', 'status']),
            models.Index(fields=['buyer', 'status']),
            models.Index(fields=['seller', 'status']),
        ]

    def __str__(self):
        return f'{self.order_id} ({self.status})'

    @property
    def payable_amount(self):
        return self.final_price

    @property
    def customer_party_id(self):
        return self.buyer_id

    def documents_complete(self):
        return all(getattr(self, field) for field in self.DOCUMENT_FIELDS)

    def missing_documents(self):
        return [field for field in self.DOCUMENT_FIELDS if not getattr(self, field)]

    def clean(self):
        """
        Validate model fields.

        Ensures:
        - Vehicle is listed for sale and the seller owns it
        - Buyer and seller are different users
        - Prices are positive
        - Completion only with all documents transferred
        - Status change (on update) follows VALID_TRANSITIONS
        """
        super().clean()

        if self.vehicle_id:
            if self.vehicle.listing_kind != 'sale':
                raise ValidationError({
                    'vehicle': _('Only vehicles listed for sale can be ordered.')
                })
            if self.seller_id and self.seller_id != self.vehicle.seller_id:
                raise ValidationError({
                    'seller': _('Order seller must match the vehicle seller.')
                })

        if self.buyer_id and self.buyer_id == self.seller_id:
            raise ValidationError({
                'buyer': _('Sellers cannot buy their own vehicles.')
            })

        for field in ('asking_price', 'offer_price', 'counter_offer_price', 'final_price'):
            value = getattr(self, field)
            if value is not None and value <= 0:
                raise ValidationError({field: _('Price must be greater than 0.')})

        if self.status == 'completed' and not self.documents_complete():
            raise ValidationError({
                'status': _('All documents must be transferred before the order is completed.')
            })

        self._validate_stored_transition()

    def can_transition_to(self, new_status, current_time=None):
        """Validate sale transitions, including the document gate for completion."""
        is_valid, message = super().can_transition_to(new_status, current_time)
        if not is_valid or new_status == self.status:
            return is_valid, message

        if new_status == 'completed' and not self.documents_complete():
            missing = ', '.join(self.missing_documents())
            return False, f'Cannot complete sale order before all documents are transferred (missing: {missing}).'

        return True, None


class TestDriveBooking(models.Model):
    """
    Test drive request for a vehicle listed for sale.

    The seller has until timeout_at to respond; after that the background
    sweep marks the request as timed out.
    """

    STATUS_CHOICES = [
        ('menunggu_konfirmasi', 'Awaiting Confirmation'),
        ('seller_reschedule', 'Seller Rescheduled'),
        ('diterima', 'Accepted'),
        ('selesai', 'Done'),
        ('cancelled', 'Cancelled'),
        ('timeout', 'Timed Out'),
    ]

    VALID_TRANSITIONS = {
        'menunggu_konfirmasi': ['diterima', 'seller_reschedule', 'cancelled', 'timeout'],
        'seller_reschedule': ['diterima', 'cancelled', 'timeout'],
        'diterima': ['selesai', 'cancelled'],
        'selesai': [],
        'cancelled': [],
        'timeout': [],
    }

    AWAITING_STATUSES = ('menunggu_konfirmasi', 'seller_reschedule')

    vehicle = models.ForeignKey(Vehicle, on_delete=models.CASCADE, related_name='test_drives')
    customer = models.ForeignKey(User, on_delete=models.CASCADE, related_name='test_drives')
    seller = models.ForeignKey(User, on_delete=models.CASCADE, related_name='test_drive_requests')

    requested_date = models.DateTimeField(_('requested date'))
    notes = models.TextField(_('notes'), blank=True, default='')

    status = models.CharField(
        _('status'),
        max_length=40,
        choices=STATUS_CHOICES,
        default='menunggu_konfirmasi',
    )

    timeout_at = models.DateTimeField(_('timeout at'), null=True, blank=True)
    cancel_reason = models.TextField(_('cancel reason'), blank=True, default='')
    cancelled_at = models.DateTimeField(_('cancelled at'), null=True, blank=True)
    created_at = models.DateTimeField(_('created at'), auto_now_add=True)
    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('test drive booking')
        verbose_name_plural = _('test drive bookings')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'timeout_at']),
        ]

    def __str__(self):
        return f'Test drive {self.pk} for {self.vehicle_id} ({self.status})'

    def can_transition_to(self, new_status):
        current_status = self.status
        return new_status == current_status or new_status in self.VALID_TRANSITIONS.get(current_status, [])


# ============================================================================
# Payments and ledger
# ============================================================================

class Payment(models.Model):
    """
    Payment attempt for exactly one order.

    order_id is the idempotency key shared with the payment gateway. It is
    unique across all payments, whichever kind of order they are for.
    """

    FOR_TYPE_CHOICES = [
        ('rental', 'Rental'),
        ('sale', 'Sale'),
    ]

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('success', 'Success'),
        ('failed', 'Failed'),
        ('expired', 'Expired'),
        ('refunded', 'Refunded'),
    ]

    VALID_TRANSITIONS = {
        'pending': ['success', 'failed', 'expired'],
        'success': ['refunded'],
        'failed': [],
        'expired': [],
        'refunded': [],
    }

    # Statuses that gateway events can no longer change
    SETTLED_STATUSES = ('success', 'failed', 'expired', 'refunded')

    order_id = models.CharField(_('order id'), max_length=50, unique=True)

    payment_for_type = models.CharField(
        _('payment for'),
        max_length=20,
        choices=FOR_TYPE_CHOICES,
    )

    rental_booking = models.ForeignKey(
        RentalBooking,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='payments',
    )

    sale_order = models.ForeignKey(
        SaleOrder,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='payments',
    )

    transaction_id = models.CharField(_('gateway transaction id'), max_length=255, blank=True, default='')
    payment_type = models.CharField(_('payment type'), max_length=50, blank=True, default='')

    gross_amount = money_field(_('gross amount'))

    status = models.CharField(
        _('status'),
        max_length=20,
        choices=STATUS_CHOICES,
        default='pending',
    )

    refund_amount = money_field(_('refund amount'), null=True, blank=True)
    refund_reason = models.TextField(_('refund reason'), blank=True, default='')

    paid_at = models.DateTimeField(_('paid at'), null=True, blank=True)
    expired_at = models.DateTimeField(_('expired at'), null=True, blank=True)
    refunded_at = models.DateTimeField(_('refunded at'), null=True, blank=True)
    created_at = models.DateTimeField(_('created at'), auto_now_add=True)
    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('payment')
        verbose_name_plural = _('payments')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['payment_for_type', 'status']),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(rental_booking__isnull=False, sale_order__isnull=True, payment_for_type='rental')
                    | Q(rental_booking__isnull=True, sale_order__isnull=False, payment_for_type='sale')
                ),
                name='payment_reference_check',
            ),
            models.CheckConstraint(
                condition=Q(gross_amount__gt=0),
                name='payment_gross_amount_positive',
            ),
        ]

    def __str__(self):
        return f'{self.order_id} ({self.status})'

    @classmethod
    def for_order(cls, ref, **kwargs):
        """Build an unsaved payment whose tag and foreign key both come from ref."""
        return cls(payment_for_type=ref.kind, **ref.filter_kwargs(), **kwargs)

    @property
    def target(self):
        """Order reference this payment belongs to."""
        if self.payment_for_type == 'rental':
            return order_ref('rental', self.rental_booking_id)
        return order_ref('sale', self.sale_order_id)

    @property
    def order(self):
        return self.rental_booking if self.payment_for_type == 'rental' else self.sale_order

    def validate_reference(self):
        """
        Ensure exactly one order reference is set and it matches the tag.

        Raises:
            ValidationError: If the polymorphic reference is inconsistent
        """
        has_rental = self.rental_booking_id is not None
        has_sale = self.sale_order_id is not None
        if has_rental == has_sale:
            raise ValidationError(_('A payment must reference exactly one order.'))
        expected = 'rental' if has_rental else 'sale'
        if self.payment_for_type != expected:
            raise ValidationError({
                'payment_for_type': _(f'Payment type "{self.payment_for_type}" does not match its {expected} order.')
            })

    def save(self, *args, **kwargs):
        # full_clean() is not used here so that the unique order_id is
        # reported by the database as IntegrityError.
        self.validate_reference()
        super().save(*args, **kwargs)


class LedgerQuerySet(models.QuerySet):
    def delete(self):
        raise ValidationError(_('Transaction log entries cannot be deleted.'))


class TransactionLog(models.Model):
    """
    Append-only ledger entry.

    Only status and notes may change after the entry is written; entries are
    never deleted.
    """

    TYPE_CHOICES = [
        ('rental_payment', 'Rental Payment'),
        ('rental_refund', 'Rental Refund'),
        ('sale_payment', 'Sale Payment'),
        ('sale_refund', 'Sale Refund'),
        ('seller_credit', 'Seller Credit'),
        ('seller_withdrawal', 'Seller Withdrawal'),
        ('commission_deduction', 'Commission Deduction'),
    ]

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
        ('reversed', 'Reversed'),
    ]

    VALID_TRANSITIONS = {
        'pending': ['completed', 'failed', 'reversed'],
        'completed': [],
        'failed': [],
        'reversed': [],
    }

    PAYMENT_TYPES = {
        'rental': 'rental_payment',
        'sale': 'sale_payment',
    }

    REFUND_TYPES = {
        'rental': 'rental_refund',
        'sale': 'sale_refund',
    }

    MUTABLE_FIELDS = frozenset({'status', 'notes'})

    transaction_type = models.CharField(_('transaction type'), max_length=50, choices=TYPE_CHOICES)

    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        related_name='transaction_logs',
        help_text=_('Seller whose balance the entry affects')
    )
    rental_booking = models.ForeignKey(
        RentalBooking, on_delete=models.SET_NULL, null=True, blank=True, related_name='transaction_logs'
    )
    sale_order = models.ForeignKey(
        SaleOrder, on_delete=models.SET_NULL, null=True, blank=True, related_name='transaction_logs'
    )
    payment = models.ForeignKey(
        Payment, on_delete=models.SET_NULL, null=True, blank=True, related_name='transaction_logs'
    )
    withdrawal = models.ForeignKey(
        'Withdrawal', on_delete=models.SET_NULL, null=True, blank=True, related_name='transaction_logs'
    )

    amount = money_field(_('amount'))
    commission_rate = models.DecimalField(_('commission rate'), max_digits=5, decimal_places=2, null=True, blank=True)
    commission_amount = money_field(_('commission amount'), null=True, blank=True)
    net_amount = money_field(_('net amount'), null=True, blank=True)

    status = models.CharField(_('status'), max_length=20, choices=STATUS_CHOICES, default='pending')

    metadata = models.JSONField(_('metadata'), default=dict, blank=True)
    notes = models.TextField(_('notes'), blank=True, default='')

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    objects = LedgerQuerySet.as_manager()

    class Meta:
        verbose_name = _('transaction log')
        verbose_name_plural = _('transaction logs')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['transaction_type', 'user']),
            models.Index(fields=['status']),
            models.Index(fields=['created_at']),
        ]

    def __str__(self):
        return f'{self.transaction_type} {self.amount} ({self.status})'

    def save(self, *args, **kwargs):
        if self.pk is not None:
            update_fields = kwargs.get('update_fields')
            if update_fields is None or not set(update_fields) <= self.MUTABLE_FIELDS:
                raise ValidationError(_('Transaction log entries are append-only; only status and notes can change.'))
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError(_('Transaction log entries cannot be deleted.'))

    def set_status(self, new_status, note=''):
        """Promote the entry to a new status, appending an optional note."""
        if new_status not in self.VALID_TRANSITIONS.get(self.status, []):
            raise ValidationError({
                'status': _(f'Invalid ledger status transition from {self.status} to {new_status}.')
            })
        self.status = new_status
        if note:
            self.notes = f'{self.notes} | {note}' if self.notes else note
        self.save(update_fields=['status', 'notes'])


class SellerBalance(models.Model):
    """
    Funds owed to a seller.

    pending_balance holds credits for orders that are not finished yet,
    available_balance holds funds that can be withdrawn. Rows are only
    changed by the settlement ledger while holding a row lock.
    """

    seller = models.OneToOneField(User, on_delete=models.CASCADE, related_name='balance')

    available_balance = money_field(_('available balance'), default=ZERO)
    pending_balance = money_field(_('pending balance'), default=ZERO)
    total_earned = money_field(_('total earned'), default=ZERO)

    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('seller balance')
        verbose_name_plural = _('seller balances')
        constraints = [
            models.CheckConstraint(condition=Q(available_balance__gte=0), name='seller_available_non_negative'),
            models.CheckConstraint(condition=Q(pending_balance__gte=0), name='seller_pending_non_negative'),
            models.CheckConstraint(condition=Q(total_earned__gte=0), name='seller_total_earned_non_negative'),
        ]

    def __str__(self):
        return f'Balance of {self.seller_id}: {self.available_balance} available, {self.pending_balance} pending'


class CommissionSetting(models.Model):
    """
    Platform commission rate for one transaction kind over a time window.

    Windows are half-open: [effective_from, effective_until). An empty
    effective_until means the rate applies until a newer setting replaces it.
    Active windows of the same kind never overlap.
    """

    TYPE_CHOICES = [
        ('rental', 'Rental'),
        ('sale', 'Sale'),
    ]

    transaction_type = models.CharField(_('transaction type'), max_length=20, choices=TYPE_CHOICES)

    commission_percentage = models.DecimalField(
        _('commission percentage'),
        max_digits=5,
        decimal_places=2,
        validators=[
            MinValueValidator(ZERO),
            MaxValueValidator(Decimal('100.00')),
        ],
        help_text=_('5.00 means 5%')
    )

    min_commission = money_field(_('minimum commission'), null=True, blank=True, validators=[MinValueValidator(ZERO)])
    max_commission = money_field(_('maximum commission'), null=True, blank=True, validators=[MinValueValidator(ZERO)])

    effective_from = models.DateTimeField(_('effective from'))
    effective_until = models.DateTimeField(_('effective until'), null=True, blank=True)

    is_active = models.BooleanField(_('active'), default=True)
    description = models.TextField(_('description'), blank=True, default='')

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)
    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('commission setting')
        verbose_name_plural = _('commission settings')
        ordering = ['transaction_type', '-effective_from']
        indexes = [
            models.Index(fields=['transaction_type', 'is_active', 'effective_from']),
        ]

    def __str__(self):
        return f'{self.transaction_type} {self.commission_percentage}% from {self.effective_from:%Y-%m-%d}'

    def applies_at(self, moment):
        return self.effective_from <= moment and (self.effective_until is None or moment < self.effective_until)

    def overlaps(self, other):
        self_end = self.effective_until
        other_end = other.effective_until
        starts_before_other_ends = other_end is None or self.effective_from < other_end
        other_starts_before_self_ends = self_end is None or other.effective_from < self_end
        return starts_before_other_ends and other_starts_before_self_ends

    def clean(self):
        """
        Validate model fields.

        Ensures:
        - effective_until is after effective_from
        - max_commission is not below min_commission
        - No other active setting of the same kind overlaps this window
        """
        super().clean()

        if self.effective_until and self.effective_from and self.effective_until <= self.effective_from:
            raise ValidationError({
                'effective_until': _('effective_until must be after effective_from.')
            })

        if (
            self.min_commission is not None
            and self.max_commission is not None
            and self.max_commission < self.min_commission
        ):
            raise ValidationError({
                'max_commission': _('Maximum commission cannot be lower than minimum commission.')
            })

        if self.is_active and self.transaction_type and self.effective_from:
            others = CommissionSetting.objects.filter(
                transaction_type=self.transaction_type,
                is_active=True,
            ).exclude(pk=self.pk)
            for other in others:
                if self.overlaps(other):
                    raise ValidationError({
                        'effective_from': _(
                            f'Overlaps the active {self.transaction_type} commission setting #{other.pk}.'
                        )
                    })

    def save(self, *args, **kwargs):
        self.full_clean()
        super().save(*args, **kwargs)


class Withdrawal(models.Model):
    """Payout of available funds to a seller's bank account."""

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('processing', 'Processing'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
    ]

    VALID_TRANSITIONS = {
        'pending': ['processing', 'failed'],
        'processing': ['completed', 'failed'],
        'completed': [],
        'failed': [],
    }

    seller = models.ForeignKey(User, on_delete=models.CASCADE, related_name='withdrawals')

    amount = money_field(_('amount'))

    bank_name = models.CharField(_('bank name'), max_length=100)
    account_number = models.CharField(_('account number'), max_length=50)
    account_holder_name = models.CharField(_('account holder name'), max_length=255)

    status = models.CharField(_('status'), max_length=20, choices=STATUS_CHOICES, default='pending')
    failure_reason = models.TextField(_('failure reason'), blank=True, default='')

    requested_at = models.DateTimeField(_('requested at'), auto_now_add=True)
    processed_at = models.DateTimeField(_('processed at'), null=True, blank=True)
    completed_at = models.DateTimeField(_('completed at'), null=True, blank=True)

    class Meta:
        verbose_name = _('withdrawal')
        verbose_name_plural = _('withdrawals')
        ordering = ['-requested_at']
        indexes = [
            models.Index(fields=['seller', 'status']),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name='withdrawal_amount_positive'),
        ]

    def __str__(self):
        return f'Withdrawal {self.pk} of {self.amount} ({self.status})'


class ReconciliationCase(models.Model):
    """
    Operational review queue entry.

    Opened when money moved in a way the engine must not resolve on its own,
    e.g. a refund requested after the seller's funds were already released.
    """

    REASON_CHOICES = [
        ('refund_after_settlement', 'Refund After Settlement'),
        ('payment_for_inactive_order', 'Payment For Inactive Order'),
    ]

    STATUS_CHOICES = [
        ('open', 'Open'),
        ('resolved', 'Resolved'),
    ]

    payment = models.ForeignKey(Payment, on_delete=models.PROTECT, related_name='reconciliation_cases')
    seller = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, related_name='reconciliation_cases')
    reason = models.CharField(_('reason'), max_length=40, choices=REASON_CHOICES)
    amount = money_field(_('amount'))
    status = models.CharField(_('status'), max_length=20, choices=STATUS_CHOICES, default='open')
    notes = models.TextField(_('notes'), blank=True, default='')
    created_at = models.DateTimeField(_('created at'), auto_now_add=True)
    resolved_at = models.DateTimeField(_('resolved at'), null=True, blank=True)

    class Meta:
        verbose_name = _('reconciliation case')
        verbose_name_plural = _('reconciliation cases')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'reason']),
        ]

    def __str__(self):
        return f'{self.reason} for {self.payment_id} ({self.status})'


# ============================================================================
# Reviews
# ============================================================================

class Review(models.Model):
    """
    Review of a finished rental or sale, one per order.

    Like Payment it references exactly one order; vehicle, seller and
    customer are copied from that order.
    """

    FOR_TYPE_CHOICES = [
        ('rental', 'Rental'),
        ('sale', 'Sale'),
    ]

    RATING_VALIDATORS = [
        MinValueValidator(1, message=_('Rating must be at least 1.')),
        MaxValueValidator(5, message=_('Rating must be at most 5.')),
    ]

    review_for_type = models.CharField(_('review for'), max_length=20, choices=FOR_TYPE_CHOICES)

    rental_booking = models.ForeignKey(
        RentalBooking, on_delete=models.CASCADE, null=True, blank=True, related_name='reviews'
    )
    sale_order = models.ForeignKey(
        SaleOrder, on_delete=models.CASCADE, null=True, blank=True, related_name='reviews'
    )

    vehicle = models.ForeignKey(Vehicle, on_delete=models.CASCADE, related_name='reviews')
    seller = models.ForeignKey(User, on_delete=models.CASCADE, related_name='reviews_received')
    customer = models.ForeignKey(User, on_delete=models.CASCADE, related_name='reviews_given')

    overall_rating = models.PositiveSmallIntegerField(_('overall rating'), validators=RATING_VALIDATORS)
    vehicle_condition_rating = models.PositiveSmallIntegerField(null=True, blank=True, validators=RATING_VALIDATORS)
    accuracy_rating = models.PositiveSmallIntegerField(null=True, blank=True, validators=RATING_VALIDATORS)
    service_rating = models.PositiveSmallIntegerField(null=True, blank=True, validators=RATING_VALIDATORS)

    comment = models.TextField(_('comment'), blank=True, default='')
    is_visible = models.BooleanField(_('visible'), default=True)

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)
    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('review')
        verbose_name_plural = _('reviews')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['vehicle', 'is_visible']),
            models.Index(fields=['seller', 'is_visible']),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(rental_booking__isnull=False, sale_order__isnull=True, review_for_type='rental')
                    | Q(rental_booking__isnull=True, sale_order__isnull=False, review_for_type='sale')
                ),
                name='review_reference_check',
            ),
            models.UniqueConstraint(
                fields=['rental_booking'],
                condition=Q(rental_booking__isnull=False),
                name='unique_review_per_rental',
            ),
            models.UniqueConstraint(
                fields=['sale_order'],
                condition=Q(sale_order__isnull=False),
                name='unique_review_per_sale',
            ),
        ]

    def __str__(self):
        return f'Review {self.pk} for vehicle {self.vehicle_id} - {self.overall_rating}'

    @property
    def target(self):
        if self.review_for_type == 'rental':
            return order_ref('rental', self.rental_booking_id)
        return order_ref('sale', self.sale_order_id)

    def save(self, *args, **kwargs):
        has_rental = self.rental_booking_id is not None
        has_sale = self.sale_order_id is not None
        if has_rental == has_sale:
            raise ValidationError(_('A review must reference exactly one order.'))
        if self.review_for_type != ('rental' if has_rental else 'sale'):
            raise ValidationError({'review_for_type': _('Review type does not match its order.')})
        for field in ('overall_rating', 'vehicle_condition_rating', 'accuracy_rating', 'service_rating'):
            value = getattr(self, field)
            if value is not None and not 1 <= value <= 5:
                raise ValidationError({field: _('Rating must be between 1 and 5.')})
        super().save(*args, **kwargs)
