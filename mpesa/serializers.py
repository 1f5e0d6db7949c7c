from decimal import Decimal

from rest_framework import serializers

from .models import ExternalTransaction


class ExternalTransactionSerializer(serializers.ModelSerializer):
    """Status view for API consumers; raw provider payloads stay in the admin."""
    is_terminal = serializers.ReadOnlyField()

    class Meta:
        model = ExternalTransaction
        fields = [
            'id', 'operation_type', 'checkout_request_id', 'provider_receipt', 'phone_number',
            'account_reference', 'amount', 'status', 'is_terminal', 'result_code',
            'result_description', 'tenant', 'payment', 'deposit_refund', 'created_at',
            'completed_at',
        ]
        read_only_fields = fields


class StkPushSerializer(serializers.Serializer):
    tenant_id = serializers.IntegerField(required=False)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('1.00'))
    phone_number = serializers.CharField(max_length=20, required=False, allow_blank=True)
