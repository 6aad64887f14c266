"""
Django admin configuration for the Vehicle Marketplace.

Order and vehicle statuses and all ledger rows are read-only here: statuses
change only through the engine, and ledger entries are append-only.
"""

from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from django.utils.translation import gettext_lazy as _

from .models import (
    CommissionSetting,
    Payment,
    ReconciliationCase,
    RentalBooking,
    Review,
    SaleOrder,
    SellerBalance,
    TestDriveBooking,
    TransactionLog,
    User,
    Vehicle,
    Withdrawal,
)


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """
    Custom admin interface for User model.

    Extends Django's UserAdmin with the marketplace role.
    """

    list_display = ['email', 'username', 'role', 'is_staff', 'is_active', 'created_at']
    list_filter = ['role', 'is_staff', 'is_superuser', 'is_active', 'created_at']
    search_fields = ['email', 'username', 'first_name', 'last_name', 'phone_number']
    ordering = ['-created_at']

    fieldsets = (
        (None, {
            'fields': ('username', 'password')
        }),
        (_('Personal Info'), {
            'fields': ('first_name', 'last_name', 'email', 'phone_number')
        }),
        (_('Role'), {
            'fields': ('role',)
        }),
        (_('Permissions'), {
            'fields': ('is_active', 'is_staff', 'is_superuser', 'groups', 'user_permissions'),
            'classes': ('collapse',),
        }),
        (_('Important Dates'), {
            'fields': ('last_login', 'date_joined', 'created_at', 'updated_at'),
            'classes': ('collapse',),
        }),
    )

    add_fieldsets = (
        (None, {
            'classes': ('wide',),
            'fields': ('username', 'email', 'password1', 'password2', 'role'),
        }),
    )

    readonly_fields = ['created_at', 'updated_at', 'last_login', 'date_joined']
    list_per_page = 25


@admin.register(Vehicle)
class VehicleAdmin(admin.ModelAdmin):
    list_display = ['id', 'title', 'seller', 'listing_kind', 'status', 'price', 'rating', 'review_count']
    list_filter = ['listing_kind', 'status']
    search_fields = ['title', 'seller__email']
    readonly_fields = ['status', 'rating', 'review_count', 'created_at', 'updated_at']
    raw_id_fields = ['seller']


class OrderAdmin(admin.ModelAdmin):
    """Orders can be inspected but their status only changes through the engine."""

    list_filter = ['status', 'created_at']
    search_fields = ['order_id']
    date_hierarchy = 'created_at'
    list_per_page = 25

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        if obj is not None and obj.was_paid():
            return False
        return super().has_delete_permission(request, obj)


@admin.register(RentalBooking)
class RentalBookingAdmin(OrderAdmin):
    list_display = ['order_id', 'vehicle', 'customer', 'seller', 'pickup_date', 'return_date', 'status', 'total_price']


@admin.register(SaleOrder)
class SaleOrderAdmin(OrderAdmin):
    list_display = ['order_id', 'vehicle', 'buyer', 'seller', 'final_price', 'status', 'documents_complete']

    @admin.display(boolean=True, description=_('documents'))
    def documents_complete(self, obj):
        return obj.documents_complete()


@admin.register(TestDriveBooking)
class TestDriveBookingAdmin(admin.ModelAdmin):
    list_display = ['id', 'vehicle', 'customer', 'requested_date', 'status', 'timeout_at']
    list_filter = ['status']
    raw_id_fields = ['vehicle', 'customer', 'seller']


class ReadOnlyAdmin(admin.ModelAdmin):
    """Admin for ledger tables: no adding, editing or deleting."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Payment)
class PaymentAdmin(ReadOnlyAdmin):
    list_display = ['order_id', 'payment_for_type', 'gross_amount', 'status', 'paid_at', 'refunded_at']
    list_filter = ['payment_for_type', 'status']
    search_fields = ['order_id', 'transaction_id']


@admin.register(TransactionLog)
class TransactionLogAdmin(ReadOnlyAdmin):
    list_display = ['id', 'transaction_type', 'user', 'amount', 'commission_amount', 'net_amount', 'status', 'created_at']
    list_filter = ['transaction_type', 'status']
    search_fields = ['user__email', 'notes']
    date_hierarchy = 'created_at'


@admin.register(SellerBalance)
class SellerBalanceAdmin(ReadOnlyAdmin):
    list_display = ['seller', 'available_balance', 'pending_balance', 'total_earned', 'updated_at']
    search_fields = ['seller__email']


@admin.register(Withdrawal)
class WithdrawalAdmin(ReadOnlyAdmin):
    list_display = ['id', 'seller', 'amount', 'bank_name', 'status', 'requested_at', 'completed_at']
    list_filter = ['status']


@admin.register(CommissionSetting)
class CommissionSettingAdmin(admin.ModelAdmin):
    list_display = ['transaction_type', 'commission_percentage', 'min_commission', 'max_commission',
                    'effective_from', 'effective_until', 'is_active']
    list_filter = ['transaction_type', 'is_active']


@admin.register(ReconciliationCase)
class ReconciliationCaseAdmin(admin.ModelAdmin):
    list_display = ['id', 'reason', 'payment', 'seller', 'amount', 'status', 'created_at']
    list_filter = ['reason', 'status']
    readonly_fields = ['payment', 'seller', 'reason', 'amount', 'created_at']


@admin.register(Review)
class ReviewAdmin(admin.ModelAdmin):
    list_display = ['id', 'vehicle', 'customer', 'overall_rating', 'is_visible', 'created_at']
    list_filter = ['is_visible', 'overall_rating']
    readonly_fields = [
        'review_for_type', 'rental_booking', 'sale_order', 'vehicle', 'seller', 'customer',
        'overall_rating', 'vehicle_condition_rating', 'accuracy_rating', 'service_rating', 'comment',
    ]
