from django.contrib import admin
from django.utils.translation import gettext_lazy as _

from .models import ExternalTransaction


@admin.register(ExternalTransaction)
class ExternalTransactionAdmin(admin.ModelAdmin):
    list_display = [
        'checkout_request_id',
        'operation_type',
        'tenant',
        'amount',
        'status',
        'result_code',
        'query_attempts',
        'created_at',
    ]
    list_filter = ['operation_type', 'status', 'created_at']
    search_fields = ['checkout_request_id', 'merchant_request_id', 'provider_receipt', 'phone_number']
    readonly_fields = [
        'operation_type',
        'checkout_request_id',
        'merchant_request_id',
        'provider_receipt',
        'status',
        'result_code',
        'result_description',
        'request_payload',
        'response_payload',
        'callback_payload',
        'callback_received_at',
        'last_queried_at',
        'query_attempts',
        'completed_at',
        'created_at',
        'updated_at',
    ]

    fieldsets = (
        (_('Transaction'), {
            'fields': ('operation_type', 'checkout_request_id', 'merchant_request_id',
                       'provider_receipt', 'status', 'result_code', 'result_description')
        }),
        (_('Parties'), {
            'fields': ('tenant', 'phone_number', 'account_reference', 'amount',
                       'payment', 'unmatched_payment', 'deposit_refund', 'initiated_by')
        }),
        (_('Provider payloads'), {
            'fields': ('request_payload', 'response_payload', 'callback_payload'),
            'classes': ('collapse',)
        }),
        (_('Tracking'), {
            'fields': ('callback_received_at', 'last_queried_at', 'query_attempts',
                       'completed_at', 'created_at', 'updated_at')
        }),
    )
