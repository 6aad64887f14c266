"""
Serializers for the Vehicle Marketplace API.

Input serializers only validate request shape; the engine functions in
``marketplace.services`` enforce the business rules. Output serializers are
read-only ModelSerializers.
"""

from rest_framework import serializers

from .models import (
    Payment,
    RentalBooking,
    Review,
    SaleOrder,
    TestDriveBooking,
    TransactionLog,
    Vehicle,
    Withdrawal,
)

MONEY = {'max_digits': 14, 'decimal_places': 2}


# ============================================================================
# Vehicles and availability
# ============================================================================

class VehicleSerializer(serializers.ModelSerializer):
    class Meta:
        model = Vehicle
        fields = ['id', 'seller', 'title', 'listing_kind', 'status', 'price', 'rating', 'review_count']
        read_only_fields = fields


class AvailabilityQuerySerializer(serializers.Serializer):
    """
    Query parameters of the availability endpoint.

    pickup_date and return_date are required for rental vehicles and ignored
    for vehicles on sale.
    """

    pickup_date = serializers.DateTimeField(required=False)
    return_date = serializers.DateTimeField(required=False)

    def validate(self, attrs):
        pickup_date = attrs.get('pickup_date')
        return_date = attrs.get('return_date')
        if (pickup_date is None) != (return_date is None):
            raise serializers.ValidationError('Provide both pickup_date and return_date, or neither.')
        if pickup_date and return_date <= pickup_date:
            raise serializers.ValidationError({'return_date': 'Return date must be after pickup date.'})
        return attrs


# ============================================================================
# Orders
# ============================================================================

class RentalBookingSerializer(serializers.ModelSerializer):
    class Meta:
        model = RentalBooking
        fields = [
            'id', 'order_id', 'vehicle', 'customer', 'seller', 'pickup_date', 'return_date',
            'actual_pickup_at', 'actual_return_at', 'total_days', 'price_per_day', 'total_price',
            'status', 'notes', 'cancel_reason', 'paid_at', 'completed_at', 'cancelled_at',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields


class RentalBookingCreateSerializer(serializers.Serializer):
    """
    Request body for creating a rental booking.

    Fields:
    - vehicle: Required, ID of a vehicle listed for rent
    - pickup_date / return_date: Required, return must be after pickup
    - notes: Optional
    """

    vehicle = serializers.IntegerField(min_value=1)
    pickup_date = serializers.DateTimeField()
    return_date = serializers.DateTimeField()
    notes = serializers.CharField(required=False, allow_blank=True, default='')

    def validate(self, attrs):
        if attrs['return_date'] <= attrs['pickup_date']:
            raise serializers.ValidationError({'return_date': 'Return date must be after pickup date.'})
        return attrs


class SaleOrderSerializer(serializers.ModelSerializer):
    documents_complete = serializers.SerializerMethodField()

    class Meta:
        model = SaleOrder
        fields = [
            'id', 'order_id', 'vehicle', 'buyer', 'seller', 'testdrive_booking',
            'asking_price', 'offer_price', 'counter_offer_price', 'final_price', 'status',
            'title_transferred', 'registration_transferred', 'invoice_transferred', 'tax_transferred',
            'documents_complete', 'confirmation_deadline', 'buyer_notes', 'seller_notes',
            'cancel_reason', 'reject_reason', 'confirmed_at', 'paid_at',
            'document_transfer_started_at', 'completed_at', 'cancelled_at', 'rejected_at',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields

    def get_documents_complete(self, obj):
        return obj.documents_complete()


class SaleOrderCreateSerializer(serializers.Serializer):
    vehicle = serializers.IntegerField(min_value=1)
    offer_price = serializers.DecimalField(required=False, allow_null=True, min_value=0, **MONEY)
    buyer_notes = serializers.CharField(required=False, allow_blank=True, default='')
    testdrive_booking = serializers.IntegerField(required=False, allow_null=True, min_value=1)

    def validate_offer_price(self, value):
        if value is not None and value <= 0:
            raise serializers.ValidationError('Offer price must be greater than 0.')
        return value


class OrderTransitionSerializer(serializers.Serializer):
    """
    Request body for a status change.

    Fields:
    - status: Required, target status
    - reason: Required by the engine for cancelled and rejected
    """

    status = serializers.CharField(max_length=30)
    reason = serializers.CharField(required=False, allow_blank=True, default='')


class CounterOfferSerializer(serializers.Serializer):
    price = serializers.DecimalField(**MONEY)
    notes = serializers.CharField(required=False, allow_blank=True, default='')


class DocumentTransferSerializer(serializers.Serializer):
    documents = serializers.ListField(
        child=serializers.ChoiceField(choices=SaleOrder.DOCUMENT_FIELDS),
        allow_empty=False,
    )


# ============================================================================
# Payments
# ============================================================================

class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = [
            'id', 'order_id', 'payment_for_type', 'rental_booking', 'sale_order', 'transaction_id',
            'payment_type', 'gross_amount', 'status', 'paid_at', 'expired_at', 'refund_amount',
            'refund_reason', 'refunded_at', 'created_at',
        ]
        read_only_fields = fields


class PaymentCreateSerializer(serializers.Serializer):
    order_kind = serializers.ChoiceField(choices=['rental', 'sale'])
    order = serializers.IntegerField(min_value=1)
    gross_amount = serializers.DecimalField(**MONEY)


class GatewayNotificationSerializer(serializers.Serializer):
    """
    Payment gateway HTTP notification.

    Field names follow the gateway's notification payload; unknown fields
    are ignored.
    """

    order_id = serializers.CharField(max_length=50)
    transaction_status = serializers.CharField(max_length=30)
    gross_amount = serializers.DecimalField(required=False, allow_null=True, **MONEY)
    transaction_id = serializers.CharField(required=False, allow_blank=True, default='')
    payment_type = serializers.CharField(required=False, allow_blank=True, default='')
    settlement_time = serializers.DateTimeField(
        required=False,
        allow_null=True,
        input_formats=['iso-8601', '%Y-%m-%d %H:%M:%S'],
    )


class RefundSerializer(serializers.Serializer):
    amount = serializers.DecimalField(**MONEY)
    reason = serializers.CharField()


# ============================================================================
# Seller balance, withdrawals and ledger
# ============================================================================

class BalanceSerializer(serializers.Serializer):
    available = serializers.DecimalField(read_only=True, **MONEY)
    pending = serializers.DecimalField(read_only=True, **MONEY)
    total_earned = serializers.DecimalField(read_only=True, **MONEY)


class WithdrawalSerializer(serializers.ModelSerializer):
    class Meta:
        model = Withdrawal
        fields = [
            'id', 'amount', 'bank_name', 'account_number', 'account_holder_name', 'status',
            'failure_reason', 'requested_at', 'processed_at', 'completed_at',
        ]
        read_only_fields = fields


class WithdrawalCreateSerializer(serializers.Serializer):
    amount = serializers.DecimalField(**MONEY)
    bank_name = serializers.CharField(max_length=100)
    account_number = serializers.RegexField(r'^[0-9]{5,30}$', max_length=50)
    account_holder_name = serializers.CharField(max_length=255)


class TransactionLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = TransactionLog
        fields = [
            'id', 'transaction_type', 'rental_booking', 'sale_order', 'payment', 'withdrawal',
            'amount', 'commission_rate', 'commission_amount', 'net_amount', 'status', 'notes',
            'created_at',
        ]
        read_only_fields = fields


# ============================================================================
# Reviews
# ============================================================================

class ReviewSerializer(serializers.ModelSerializer):
    class Meta:
        model = Review
        fields = [
            'id', 'review_for_type', 'rental_booking', 'sale_order', 'vehicle', 'seller', 'customer',
            'overall_rating', 'vehicle_condition_rating', 'accuracy_rating', 'service_rating',
            'comment', 'is_visible', 'created_at',
        ]
        read_only_fields = fields


class ReviewCreateSerializer(serializers.Serializer):
    """
    Request body for reviewing a finished order.

    Fields:
    - order_kind / order: Required, the rental or sale being reviewed
    - overall_rating: Required, integer from 1-5
    - vehicle_condition_rating, accuracy_rating, service_rating: Optional, 1-5
    - comment: Optional
    """

    order_kind = serializers.ChoiceField(choices=['rental', 'sale'])
    order = serializers.IntegerField(min_value=1)
    overall_rating = serializers.IntegerField(min_value=1, max_value=5)
    vehicle_condition_rating = serializers.IntegerField(min_value=1, max_value=5, required=False)
    accuracy_rating = serializers.IntegerField(min_value=1, max_value=5, required=False)
    service_rating = serializers.IntegerField(min_value=1, max_value=5, required=False)
    comment = serializers.CharField(required=False, allow_blank=True, default='')


# ============================================================================
# Test drives
# ============================================================================

class TestDriveSerializer(serializers.ModelSerializer):
    class Meta:
        model = TestDriveBooking
        fields = [
            'id', 'vehicle', 'customer', 'seller', 'requested_date', 'notes', 'status',
            'timeout_at', 'cancel_reason', 'cancelled_at', 'created_at',
        ]
        read_only_fields = fields


class TestDriveCreateSerializer(serializers.Serializer):
    vehicle = serializers.IntegerField(min_value=1)
    requested_date = serializers.DateTimeField()
    notes = serializers.CharField(required=False, allow_blank=True, default='')


class TestDriveRespondSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=['diterima', 'seller_reschedule', 'selesai', 'cancelled'])
    requested_date = serializers.DateTimeField(required=False)
    reason = serializers.CharField(required=False, allow_blank=True, default='')
