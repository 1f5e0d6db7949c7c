from decimal import Decimal

from rest_framework import serializers

from .models import (
    DepositRefund, Invoice, InvoiceLineItem, Payment, PaymentAllocation, UnmatchedPayment,
)


class DynamicFieldsModelSerializer(serializers.ModelSerializer):
    """
    Base serializer that allows dynamic field inclusion/exclusion
    Usage: ?fields=field1,field2 or ?exclude=field1,field2
    """

    def __init__(self, *args, **kwargs):
        if kwargs.get('context', {}).get('nested'):
            super().__init__(*args, **kwargs)
            return

        fields = kwargs.pop('fields', None)
        exclude = kwargs.pop('exclude', None)

        super().__init__(*args, **kwargs)

        request = self.context.get('request')
        if request is not None:
            fields = fields or request.query_params.get('fields')
            exclude = exclude or request.query_params.get('exclude')

        if fields:
            fields = fields.split(',') if isinstance(fields, str) else fields
            allowed = set(fields)
            for field_name in set(self.fields) - allowed:
                self.fields.pop(field_name)

        if exclude:
            exclude = exclude.split(',') if isinstance(exclude, str) else exclude
            for field_name in exclude:
                self.fields.pop(field_name, None)


class InvoiceLineItemSerializer(serializers.ModelSerializer):
    line_total = serializers.ReadOnlyField()

    class Meta:
        model = InvoiceLineItem
        fields = ['id', 'item_type', 'description', 'quantity', 'unit_price', 'line_total']


class InvoiceSerializer(DynamicFieldsModelSerializer):
    invoice_number = serializers.ReadOnlyField()
    tenant_name = serializers.CharField(source='tenant.user.get_full_name', read_only=True)
    total_due = serializers.ReadOnlyField()
    amount_allocated = serializers.ReadOnlyField()
    is_overdue = serializers.ReadOnlyField()
    days_overdue = serializers.ReadOnlyField()
    items = InvoiceLineItemSerializer(many=True, read_only=True)

    class Meta:
        model = Invoice
        fields = '__all__'
        read_only_fields = ('amount', 'balance', 'status', 'voided_at', 'void_reason',
                            'created_by', 'unit', 'rental_property', 'landlord')


class InvoiceListSerializer(serializers.ModelSerializer):
    tenant_name = serializers.CharField(source='tenant.user.get_full_name', read_only=True)
    is_overdue = serializers.ReadOnlyField()

    class Meta:
        model = Invoice
        fields = ['id', 'invoice_number', 'tenant', 'tenant_name', 'period_start', 'period_end',
                  'due_date', 'amount', 'opening_balance', 'balance', 'status', 'is_overdue']


class PaymentAllocationSerializer(serializers.ModelSerializer):
    invoice_number = serializers.CharField(source='invoice.invoice_number', read_only=True)
    is_active = serializers.ReadOnlyField()

    class Meta:
        model = PaymentAllocation
        fields = ['id', 'payment', 'invoice', 'invoice_number', 'amount', 'is_active',
                  'created_at', 'created_by', 'voided_at', 'voided_by', 'void_reason']
        read_only_fields = fields


class PaymentSerializer(DynamicFieldsModelSerializer):
    tenant_name = serializers.CharField(source='tenant.user.get_full_name', read_only=True)
    allocated_amount = serializers.ReadOnlyField()
    allocations = serializers.SerializerMethodField()

    class Meta:
        model = Payment
        fields = '__all__'
        read_only_fields = ('unallocated_amount', 'status', 'recorded_by', 'confirmed_at')

    def get_allocations(self, obj):
        return PaymentAllocationSerializer(obj.allocations.active(), many=True).data


class UnmatchedPaymentSerializer(DynamicFieldsModelSerializer):
    class Meta:
        model = UnmatchedPayment
        fields = '__all__'
        read_only_fields = ('status', 'resolved_payment', 'resolved_by', 'resolved_at')


class DepositRefundSerializer(DynamicFieldsModelSerializer):
    tenant_name = serializers.CharField(source='tenant.user.get_full_name', read_only=True)

    class Meta:
        model = DepositRefund
        fields = '__all__'
        read_only_fields = ('status', 'requested_by', 'disbursed_at', 'failure_reason')

    def validate_amount(self, value):
        if value <= 0:
            raise serializers.ValidationError("Amount must be greater than 0")
        return value

    def validate(self, attrs):
        tenant = attrs.get('tenant')
        if tenant is not None and attrs.get('amount') and attrs['amount'] > tenant.deposit_amount:
            raise serializers.ValidationError(
                {'amount': f"Refund cannot exceed the deposit of {tenant.deposit_amount}"})
        return attrs


class RecordPaymentSerializer(serializers.Serializer):
    tenant_id = serializers.IntegerField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0.01'))
    payment_method = serializers.ChoiceField(choices=Payment.PAYMENT_METHODS)
    external_reference = serializers.CharField(max_length=100, required=False, allow_blank=True)
    status = serializers.ChoiceField(choices=Payment.Status.choices, default=Payment.Status.COMPLETED)
    payment_date = serializers.DateField(required=False)
    account_reference = serializers.CharField(max_length=100, required=False, allow_blank=True, default='')
    phone_number = serializers.CharField(max_length=20, required=False, allow_blank=True, default='')
    notes = serializers.CharField(required=False, allow_blank=True, default='')

    def validate_status(self, value):
        if value == Payment.Status.FAILED:
            raise serializers.ValidationError("A payment cannot be recorded as failed")
        return value


class AllocatePaymentSerializer(serializers.Serializer):
    """Without invoice_id the payment is spread over outstanding invoices, oldest first."""
    invoice_id = serializers.IntegerField(required=False)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0.01'), required=False)

    def validate(self, attrs):
        if attrs.get('amount') is not None and not attrs.get('invoice_id'):
            raise serializers.ValidationError({'invoice_id': "An amount can only be given with invoice_id"})
        return attrs


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255)


class ResolveUnmatchedSerializer(serializers.Serializer):
    tenant_id = serializers.IntegerField()
    invoice_id = serializers.IntegerField(required=False)
    period_start = serializers.DateField(required=False)
    period_end = serializers.DateField(required=False)
    notes = serializers.CharField(required=False, allow_blank=True, default='')

    def validate(self, attrs):
        has_period = 'period_start' in attrs or 'period_end' in attrs
        if has_period and not ('period_start' in attrs and 'period_end' in attrs):
            raise serializers.ValidationError("period_start and period_end go together")
        if attrs.get('invoice_id') and has_period:
            raise serializers.ValidationError("Give either invoice_id or a period, not both")
        if has_period:
            attrs['period'] = (attrs.pop('period_start'), attrs.pop('period_end'))
        return attrs


class UnmatchedStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=[
        UnmatchedPayment.Status.PENDING, UnmatchedPayment.Status.IGNORED,
    ])
    notes = serializers.CharField(required=False, allow_blank=True, default='')
