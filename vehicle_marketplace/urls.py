"""
URL configuration for vehicle_marketplace project.

Authentication tokens are issued by simplejwt; everything under /api/ other
than the token endpoints belongs to the transaction engine.
"""
from django.contrib import admin
from django.urls import path
from rest_framework_simplejwt.views import (
    TokenObtainPairView,
    TokenRefreshView,
    TokenVerifyView,
)
from marketplace.views import (
    OrderTransitionView,
    PaymentCreateView,
    PaymentDetailView,
    PaymentRefundView,
    PaymentWebhookView,
    RentalBookingCreateView,
    ReviewCreateView,
    SaleAcceptCounterOfferView,
    SaleCounterOfferView,
    SaleDocumentsView,
    SaleOrderCreateView,
    SellerBalanceView,
    SellerTransactionsView,
    SellerWithdrawalView,
    TestDriveCreateView,
    TestDriveRespondView,
    VehicleAvailabilityView,
)


urlpatterns = [
    path('admin/', admin.site.urls),

    # Availability
    path('api/vehicles/<int:pk>/availability/', VehicleAvailabilityView.as_view(), name='vehicle_availability'),

    # Orders
    path('api/rentals/', RentalBookingCreateView.as_view(), name='rental_create'),
    path('api/sales/', SaleOrderCreateView.as_view(), name='sale_create'),
    path('api/sales/<int:pk>/counter-offer/', SaleCounterOfferView.as_view(), name='sale_counter_offer'),
    path('api/sales/<int:pk>/accept-counter-offer/', SaleAcceptCounterOfferView.as_view(), name='sale_accept_counter_offer'),
    path('api/sales/<int:pk>/documents/', SaleDocumentsView.as_view(), name='sale_documents'),
    path('api/orders/<str:kind>/<int:pk>/transition/', OrderTransitionView.as_view(), name='order_transition'),

    # Test drives
    path('api/test-drives/', TestDriveCreateView.as_view(), name='testdrive_create'),
    path('api/test-drives/<int:pk>/respond/', TestDriveRespondView.as_view(), name='testdrive_respond'),

    # Payments
    path('api/payments/', PaymentCreateView.as_view(), name='payment_create'),
    path('api/payments/webhook/', PaymentWebhookView.as_view(), name='payment_webhook'),
    path('api/payments/<int:pk>/', PaymentDetailView.as_view(), name='payment_detail'),
    path('api/payments/<int:pk>/refund/', PaymentRefundView.as_view(), name='payment_refund'),

    # Seller balance
    path('api/seller/balance/', SellerBalanceView.as_view(), name='seller_balance'),
    path('api/seller/withdrawals/', SellerWithdrawalView.as_view(), name='seller_withdrawals'),
    path('api/seller/transactions/', SellerTransactionsView.as_view(), name='seller_transactions'),

    # Reviews
    path('api/reviews/', ReviewCreateView.as_view(), name='review_create'),

    # JWT Authentication endpoints
    path('api/token/', TokenObtainPairView.as_view(), name='token_obtain_pair'),
    path('api/token/refresh/', TokenRefreshView.as_view(), name='token_refresh'),
    path('api/token/verify/', TokenVerifyView.as_view(), name='token_verify'),
]
