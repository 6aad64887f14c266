"""
Custom permission classes for the Vehicle Marketplace API.

Per-order authorization (who may move which order to which status) lives in
the engine itself; these classes only gate whole endpoints by role.
"""

from rest_framework import permissions


class IsSeller(permissions.BasePermission):
    """
    Permission class that allows only sellers to access the endpoint.

    Usage:
        class MyView(APIView):
            permission_classes = [IsAuthenticated, IsSeller]
    """

    message = 'Only sellers can access this endpoint.'

    def has_permission(self, request, view):
        """
        Check if user is authenticated and has role='seller'.

        Returns:
            bool: True if user is a seller, False otherwise
        """
        if not request.user or not request.user.is_authenticated:
            return False

        return getattr(request.user, 'role', None) == 'seller'


class IsCustomer(permissions.BasePermission):
    """Permission class that allows only customers (renters and buyers)."""

    message = 'Only customers can place orders.'

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False

        return getattr(request.user, 'role', None) == 'customer'


class IsPlatformAdmin(permissions.BasePermission):
    """
    Permission class for platform administrators.

    Staff users count as administrators as well, so Django admin accounts
    can use the API.
    """

    message = 'You do not have permission to perform this action. Administrator privileges required.'

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False

        return request.user.is_platform_admin()
