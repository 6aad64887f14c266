"""
API views for the Vehicle Marketplace transaction engine.

Views validate the request shape, build an Actor from the authenticated
user and call the engine in ``marketplace.services``. Engine errors are
rendered by ``marketplace.exceptions.exception_handler``.
"""

import logging

from django.shortcuts import get_object_or_404
from rest_framework import status
from rest_framework.exceptions import PermissionDenied
from rest_framework.generics import ListAPIView
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from . import services
from .models import Payment, TransactionLog, Vehicle, Withdrawal
from .payments import verify_webhook_signature
from .permissions import IsCustomer, IsPlatformAdmin, IsSeller
from .serializers import (
    AvailabilityQuerySerializer,
    BalanceSerializer,
    CounterOfferSerializer,
    DocumentTransferSerializer,
    GatewayNotificationSerializer,
    OrderTransitionSerializer,
    PaymentCreateSerializer,
    PaymentSerializer,
    RefundSerializer,
    RentalBookingCreateSerializer,
    RentalBookingSerializer,
    ReviewCreateSerializer,
    ReviewSerializer,
    SaleOrderCreateSerializer,
    SaleOrderSerializer,
    TestDriveCreateSerializer,
    TestDriveRespondSerializer,
    TestDriveSerializer,
    TransactionLogSerializer,
    VehicleSerializer,
    WithdrawalCreateSerializer,
    WithdrawalSerializer,
)

logger = logging.getLogger(__name__)

WEBHOOK_SIGNATURE_HEADER = 'HTTP_X_CALLBACK_SIGNATURE'


def get_client_ip(request):
    """
    Get client IP address from request.
    Handles proxy headers for accurate IP detection.
    """
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


def order_serializer_for(order):
    if order.ORDER_KIND == 'rental':
        return RentalBookingSerializer(order)
    return SaleOrderSerializer(order)


# ============================================================================
# Availability
# ============================================================================

class VehicleAvailabilityView(APIView):
    """
    Check whether a vehicle can be booked or ordered.

    Public endpoint - no authentication required.

    GET /api/vehicles/<id>/availability/?pickup_date=...&return_date=...

    Success response (200):
    {
        "vehicle": {...},
        "available": true
    }

    Error responses:
    - 400: Rental vehicle without a date window, or return before pickup
    - 404: Vehicle not found
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, pk):
        vehicle = get_object_or_404(Vehicle, pk=pk)

        query = AvailabilityQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)

        window = None
        if query.validated_data.get('pickup_date'):
            window = (query.validated_data['pickup_date'], query.validated_data['return_date'])

        available = services.check_availability(vehicle.pk, vehicle.listing_kind, window=window)

        return Response({
            'vehicle': VehicleSerializer(vehicle).data,
            'available': available,
        })


# ============================================================================
# Orders
# ============================================================================

class RentalBookingCreateView(APIView):
    """
    Create a rental booking.

    POST /api/rentals/
    Headers: Authorization: Bearer <access_token>
    Request body: {
        "vehicle": 1,
        "pickup_date": "2025-12-10T09:00:00Z",
        "return_date": "2025-12-12T09:00:00Z"
    }

    Error responses:
    - 400: Invalid data
    - 403: Caller is not a customer
    - 409: Vehicle already booked for an overlapping window (code "unavailable")
    """
    permission_classes = [IsAuthenticated, IsCustomer]

    def post(self, request):
        serializer = RentalBookingCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        booking = services.create_rental_booking(
            customer_id=request.user.pk,
            vehicle_id=data['vehicle'],
            pickup_date=data['pickup_date'],
            return_date=data['return_date'],
            notes=data['notes'],
        )

        logger.info(
            f"Rental booking {booking.order_id} created via API by {request.user.email}, "
            f"IP: {get_client_ip(request)}"
        )
        return Response(RentalBookingSerializer(booking).data, status=status.HTTP_201_CREATED)


class SaleOrderCreateView(APIView):
    """
    Place a purchase order on a vehicle listed for sale.

    POST /api/sales/
    Request body: {"vehicle": 1, "offer_price": "95000000.00"}

    Error responses:
    - 400: Invalid data
    - 403: Caller is not a customer
    - 409: Vehicle not available or already has an order in progress
    """
    permission_classes = [IsAuthenticated, IsCustomer]

    def post(self, request):
        serializer = SaleOrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order = services.create_sale_order(
            buyer_id=request.user.pk,
            vehicle_id=data['vehicle'],
            offer_price=data.get('offer_price'),
            buyer_notes=data['buyer_notes'],
            testdrive_booking_id=data.get('testdrive_booking'),
        )

        logger.info(
            f"Sale order {order.order_id} created via API by {request.user.email}, "
            f"IP: {get_client_ip(request)}"
        )
        return Response(SaleOrderSerializer(order).data, status=status.HTTP_201_CREATED)


class OrderTransitionView(APIView):
    """
    Change the status of a rental booking or sale order.

    POST /api/orders/<kind>/<id>/transition/
    Request body: {"status": "cancelled", "reason": "Plans changed"}

    Error responses:
    - 400: Missing reason
    - 403: Caller may not set this status on this order
    - 404: Order not found
    - 409: Status not reachable from the current status
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, kind, pk):
        serializer = OrderTransitionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        ref = services.order_ref(kind, pk)
        order = services.transition_order(
            ref,
            serializer.validated_data['status'],
            services.Actor.from_user(request.user),
            reason=serializer.validated_data['reason'],
        )
        return Response(order_serializer_for(order).data)


class SaleCounterOfferView(APIView):
    """POST /api/sales/<id>/counter-offer/ - seller proposes a new price for the buyer to accept."""
    permission_classes = [IsAuthenticated]

    def post(self, request, pk):
        serializer = CounterOfferSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        order = services.counter_offer(
            pk,
            services.Actor.from_user(request.user),
            serializer.validated_data['price'],
            notes=serializer.validated_data['notes'],
        )
        return Response(SaleOrderSerializer(order).data)


class SaleAcceptCounterOfferView(APIView):
    """POST /api/sales/<id>/accept-counter-offer/ - buyer takes the counter price and moves on to payment."""
    permission_classes = [IsAuthenticated]

    def post(self, request, pk):
        order = services.accept_counter_offer(pk, services.Actor.from_user(request.user))
        return Response(SaleOrderSerializer(order).data)


class SaleDocumentsView(APIView):
    """
    Record transferred documents of a sale.

    POST /api/sales/<id>/documents/
    Request body: {"documents": ["title_transferred", "registration_transferred"]}
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, pk):
        serializer = DocumentTransferSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        order = services.mark_documents_transferred(
            pk,
            services.Actor.from_user(request.user),
            serializer.validated_data['documents'],
        )
        return Response(SaleOrderSerializer(order).data)


# ============================================================================
# Test drives
# ============================================================================

class TestDriveCreateView(APIView):
    """POST /api/test-drives/ - request a test drive of a vehicle on sale."""
    permission_classes = [IsAuthenticated, IsCustomer]

    def post(self, request):
        serializer = TestDriveCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        booking = services.request_test_drive(
            serializer.validated_data['vehicle'],
            request.user.pk,
            serializer.validated_data['requested_date'],
            notes=serializer.validated_data['notes'],
        )
        return Response(TestDriveSerializer(booking).data, status=status.HTTP_201_CREATED)


class TestDriveRespondView(APIView):
    """POST /api/test-drives/<id>/respond/ - accept, reschedule, finish or cancel."""
    permission_classes = [IsAuthenticated]

    def post(self, request, pk):
        serializer = TestDriveRespondSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        booking = services.respond_test_drive(
            pk,
            services.Actor.from_user(request.user),
            serializer.validated_data['status'],
            requested_date=serializer.validated_data.get('requested_date'),
            reason=serializer.validated_data['reason'],
        )
        return Response(TestDriveSerializer(booking).data)


# ============================================================================
# Payments
# ============================================================================

class PaymentCreateView(APIView):
    """
    Open a payment for an order awaiting payment.

    POST /api/payments/
    Request body: {"order_kind": "sale", "order": 12, "gross_amount": "95000000.00"}

    Error responses:
    - 400: Amount does not match the order total
    - 403: Caller is not the order's customer
    - 409: Order not awaiting payment, or a payment is already open
    """
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = PaymentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        ref = services.order_ref(data['order_kind'], data['order'])
        order = get_object_or_404(ref.model, pk=ref.id)
        if order.customer_party_id != request.user.pk:
            logger.warning(
                f"User {request.user.email} tried to pay for {order.order_id} they do not own, "
                f"IP: {get_client_ip(request)}"
            )
            raise PermissionDenied('You can only pay for your own orders.')

        payment = services.create_payment(ref, data['gross_amount'])
        return Response(PaymentSerializer(payment).data, status=status.HTTP_201_CREATED)


class PaymentWebhookView(APIView):
    """
    Payment gateway notification endpoint.

    The gateway signs each notification: the X-Callback-Signature header
    carries base64(HMAC-SHA512(server key, order_id + raw body)).
    Redelivered notifications are acknowledged with 200 and change nothing.

    POST /api/payments/webhook/
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        # The raw body must be read before request.data consumes the stream
        raw_body = request.body

        serializer = GatewayNotificationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        signature = request.META.get(WEBHOOK_SIGNATURE_HEADER, '')
        if not verify_webhook_signature(data['order_id'], raw_body, signature):
            logger.warning(
                f"Rejected payment notification with invalid signature for {data['order_id']}, "
                f"IP: {get_client_ip(request)}"
            )
            raise PermissionDenied('Invalid signature.')

        payment = services.record_gateway_event(
            data['order_id'],
            data['transaction_status'],
            paid_at=data.get('settlement_time'),
            amount=data.get('gross_amount'),
            transaction_id=data['transaction_id'] or None,
            payment_type=data['payment_type'] or None,
        )
        return Response({'order_id': payment.order_id, 'status': payment.status})


class PaymentRefundView(APIView):
    """
    Refund a successful payment (administrators only).

    POST /api/payments/<id>/refund/
    Request body: {"amount": "95000000.00", "reason": "Vehicle damaged"}

    Error responses:
    - 409 with "reconciliation_case": funds were already released to the seller
    """
    permission_classes = [IsAuthenticated, IsPlatformAdmin]

    def post(self, request, pk):
        serializer = RefundSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        payment = services.refund_payment(
            pk,
            serializer.validated_data['amount'],
            serializer.validated_data['reason'],
            services.Actor.from_user(request.user),
        )

        logger.info(
            f"Refund of {serializer.validated_data['amount']} on {payment.order_id} "
            f"by {request.user.email}, IP: {get_client_ip(request)}"
        )
        return Response(PaymentSerializer(payment).data)


# ============================================================================
# Seller balance
# ============================================================================

class SellerBalanceView(APIView):
    """GET /api/seller/balance/ - current available, pending and total earned amounts."""
    permission_classes = [IsAuthenticated, IsSeller]

    def get(self, request):
        snapshot = services.get_seller_balance(request.user.pk)
        data = BalanceSerializer(snapshot).data
        data['earnings'] = {
            key: str(value) if key != 'count' else value
            for key, value in services.get_seller_earnings(request.user.pk).items()
        }
        return Response(data)


class SellerWithdrawalView(ListAPIView):
    """
    List or request withdrawals.

    GET /api/seller/withdrawals/
    POST /api/seller/withdrawals/
    Request body: {
        "amount": "100000.00",
        "bank_name": "BCA",
        "account_number": "1234567890",
        "account_holder_name": "Budi"
    }

    Error responses:
    - 400: Below minimum amount, or insufficient available balance
      (response includes "available", "requested" and "shortfall")
    """
    permission_classes = [IsAuthenticated, IsSeller]
    serializer_class = WithdrawalSerializer

    def get_queryset(self):
        return Withdrawal.objects.filter(seller=self.request.user).order_by('-requested_at')

    def post(self, request):
        serializer = WithdrawalCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        amount = data.pop('amount')

        withdrawal = services.request_withdrawal(request.user.pk, amount, data)

        logger.info(
            f"Withdrawal {withdrawal.pk} of {amount} requested by {request.user.email}, "
            f"IP: {get_client_ip(request)}"
        )
        return Response(WithdrawalSerializer(withdrawal).data, status=status.HTTP_201_CREATED)


class SellerTransactionsView(ListAPIView):
    """GET /api/seller/transactions/?type=sale_payment - the seller's ledger entries."""
    permission_classes = [IsAuthenticated, IsSeller]
    serializer_class = TransactionLogSerializer

    def get_queryset(self):
        queryset = TransactionLog.objects.filter(user=self.request.user).order_by('-created_at', '-pk')
        transaction_type = self.request.query_params.get('type')
        if transaction_type:
            queryset = queryset.filter(transaction_type=transaction_type)
        return queryset


# ============================================================================
# Reviews
# ============================================================================

class ReviewCreateView(APIView):
    """
    Review a finished rental or sale.

    POST /api/reviews/
    Request body: {"order_kind": "rental", "order": 3, "overall_rating": 5, "comment": "Great car"}

    Error responses:
    - 403: Caller is not the order's customer
    - 409: Order not finished, or already reviewed
    """
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = ReviewCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)

        ref = services.order_ref(data.pop('order_kind'), data.pop('order'))
        review = services.submit_review(
            services.Actor.from_user(request.user),
            ref,
            data.pop('overall_rating'),
            **data,
        )
        return Response(ReviewSerializer(review).data, status=status.HTTP_201_CREATED)


class PaymentDetailView(APIView):
    """GET /api/payments/<id>/ - payment of one of the caller's orders."""
    permission_classes = [IsAuthenticated]

    def get(self, request, pk):
        payment = get_object_or_404(Payment, pk=pk)
        order = payment.order
        allowed = {order.customer_party_id, order.seller_id}
        if request.user.pk not in allowed and not request.user.is_platform_admin():
            raise PermissionDenied('You do not have access to this payment.')
        return Response(PaymentSerializer(payment).data)
