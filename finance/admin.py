from django.contrib import admin
from django.utils.translation import gettext_lazy as _

from .models import DepositRefund, Invoice, InvoiceLineItem, JobLock, Payment, PaymentAllocation, UnmatchedPayment


class InvoiceLineItemInline(admin.TabularInline):
    model = InvoiceLineItem
    extra = 0
    readonly_fields = ['line_total']


class PaymentAllocationInline(admin.TabularInline):
    """Allocations are posted by the ledger services only."""
    model = PaymentAllocation
    extra = 0
    can_delete = False
    readonly_fields = ['payment', 'invoice', 'amount', 'created_by', 'created_at',
                       'voided_at', 'voided_by', 'void_reason']

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = [
        'invoice_number',
        'tenant',
        'period_start',
        'due_date',
        'amount',
        'balance',
        'status',
    ]
    list_filter = ['status', 'due_date', 'rental_property']
    search_fields = [
        'invoice_number',
        'tenant__user__first_name',
        'tenant__user__last_name',
        'tenant__user__email',
    ]
    readonly_fields = [
        'invoice_number',
        'amount',
        'balance',
        'status',
        'voided_at',
        'created_at',
        'updated_at',
    ]
    inlines = [InvoiceLineItemInline, PaymentAllocationInline]

    fieldsets = (
        (_('Invoice'), {
            'fields': ('invoice_number', 'tenant', 'unit', 'rental_property', 'landlord')
        }),
        (_('Period'), {
            'fields': ('period_start', 'period_end', 'issue_date', 'due_date')
        }),
        (_('Amounts'), {
            'fields': ('amount', 'opening_balance', 'balance', 'status')
        }),
        (_('Voiding'), {
            'fields': ('voided_at', 'void_reason'),
            'classes': ('collapse',)
        }),
        (_('Notes'), {
            'fields': ('notes', 'created_by', 'created_at', 'updated_at')
        }),
    )


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = [
        'external_reference',
        'tenant',
        'amount',
        'unallocated_amount',
        'payment_method',
        'status',
        'payment_date',
    ]
    list_filter = ['status', 'payment_method', 'payment_date']
    search_fields = ['external_reference', 'account_reference', 'phone_number']
    readonly_fields = ['unallocated_amount', 'confirmed_at', 'created_at', 'updated_at']
    inlines = [PaymentAllocationInline]


@admin.register(UnmatchedPayment)
class UnmatchedPaymentAdmin(admin.ModelAdmin):
    list_display = [
        'external_reference',
        'amount',
        'account_reference',
        'phone_number',
        'status',
        'created_at',
    ]
    list_filter = ['status', 'business_short_code']
    search_fields = ['external_reference', 'account_reference', 'phone_number', 'checkout_request_id']
    readonly_fields = [
        'external_reference',
        'amount',
        'checkout_request_id',
        'raw_payload',
        'resolved_payment',
        'resolved_by',
        'resolved_at',
        'created_at',
    ]


@admin.register(DepositRefund)
class DepositRefundAdmin(admin.ModelAdmin):
    list_display = ['tenant', 'amount', 'phone_number', 'status', 'disbursed_at']
    list_filter = ['status']
    readonly_fields = ['status', 'disbursed_at', 'failure_reason', 'created_at', 'updated_at']


@admin.register(JobLock)
class JobLockAdmin(admin.ModelAdmin):
    list_display = ['name', 'acquired_at', 'expires_at']
    readonly_fields = ['token', 'acquired_at']
