from rest_framework import permissions

from a_users.models import LEDGER_OPERATOR_ROLES


class IsLedgerOperatorOrTenantReadOnly(permissions.BasePermission):
    """
    Admins, landlords and property managers operate the ledger.
    Tenants may only read, and only their own records.
    """

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False

        if request.user.role in LEDGER_OPERATOR_ROLES:
            return True

        if request.user.role == 'tenant':
            return request.method in permissions.SAFE_METHODS

        return False

    def has_object_permission(self, request, view, obj):
        user = request.user

        if user.role == 'admin':
            return True

        tenant = getattr(obj, 'tenant', None)

        if user.role in ('landlord', 'property_manager'):
            if tenant is None:
                rental_property = getattr(obj, 'rental_property', None)
                return rental_property is not None and user in (rental_property.manager, rental_property.landlord)
            return self._manages_tenant_property(user, tenant)

        if user.role == 'tenant':
            return tenant is not None and tenant.user_id == user.pk

        return False

    def _manages_tenant_property(self, user, tenant):
        rental_property = tenant.rental_property
        if rental_property is None:
            return False
        return user in (rental_property.manager, rental_property.landlord)


class IsLedgerOperator(permissions.BasePermission):
    """Privileged operations: allocation, reversal, triage, disbursement."""

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False
        return request.user.can_operate_ledger
