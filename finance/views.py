from decimal import Decimal

from django.db.models import Q
from django_filters.rest_framework import DjangoFilterBackend
from drf_spectacular.utils import extend_schema
from rest_framework import filters, status, viewsets
from rest_framework.decorators import action
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from finance.exceptions import LedgerError
from finance.permissions import IsLedgerOperator, IsLedgerOperatorOrTenantReadOnly
from finance.services import allocation, balances, invoicing, payments, unmatched

from .models import DepositRefund, Invoice, Payment, UnmatchedPayment
from .serializers import (
    AllocatePaymentSerializer, DepositRefundSerializer, InvoiceListSerializer, InvoiceSerializer,
    PaymentAllocationSerializer, PaymentSerializer, ReasonSerializer, RecordPaymentSerializer,
    ResolveUnmatchedSerializer, UnmatchedPaymentSerializer, UnmatchedStatusSerializer,
)


def error_response(e):
    return Response({'error': str(e)}, status=e.status_code)


def managed_tenants_filter(user, prefix='tenant__'):
    """Q matching tenants whose unit sits in a property the user manages or owns."""
    return (Q(**{f'{prefix}unit__property__manager': user}) |
            Q(**{f'{prefix}unit__property__landlord': user}))


class StandardResultsPagination(PageNumberPagination):
    page_size = 20
    page_size_query_param = 'page_size'
    max_page_size = 100


class BaseViewSet(viewsets.ModelViewSet):
    permission_classes = [IsAuthenticated, IsLedgerOperatorOrTenantReadOnly]
    pagination_class = StandardResultsPagination
    filter_backends = [DjangoFilterBackend,
                       filters.SearchFilter, filters.OrderingFilter]

    def get_queryset(self):
        """Filter queryset based on user role"""
        queryset = super().get_queryset()
        user = self.request.user

        # Admins see everything
        if user.role == 'admin':
            return queryset

        # Landlords and property managers see their properties' data
        if user.role in ('landlord', 'property_manager'):
            return self.filter_for_property_manager(queryset, user)

        # Tenants see only their own data
        if user.role == 'tenant':
            return self.filter_for_tenant(queryset, user)

        return queryset.none()

    def filter_for_property_manager(self, queryset, user):
        return queryset.filter(managed_tenants_filter(user)).distinct()

    def filter_for_tenant(self, queryset, user):
        return queryset.filter(tenant__user=user)

    def tenant_in_scope(self, tenant_id):
        """Whether the requesting user may act on this tenant's ledger."""
        from tenant.models import Tenant

        user = self.request.user
        tenants = Tenant.objects.filter(pk=tenant_id)
        if user.role == 'admin':
            return tenants.exists()
        if user.role in ('landlord', 'property_manager'):
            return tenants.filter(managed_tenants_filter(user, prefix='')).exists()
        if user.role == 'tenant':
            return tenants.filter(user=user).exists()
        return False


@extend_schema(tags=["Invoices"])
class InvoiceViewSet(BaseViewSet):
    queryset = Invoice.objects.select_related(
        'tenant__user', 'unit', 'rental_property').prefetch_related('items')
    http_method_names = ['get', 'post', 'head', 'options']
    filterset_fields = ['status', 'tenant', 'rental_property', 'period_start']
    search_fields = ['invoice_number',
                     'tenant__user__first_name', 'tenant__user__last_name']
    ordering_fields = ['issue_date', 'due_date', 'amount', 'balance']
    ordering = ['due_date', 'id']

    def get_serializer_class(self):
        if self.action == 'list':
            return InvoiceListSerializer
        return InvoiceSerializer

    def get_queryset(self):
        queryset = super().get_queryset()

        if self.request.query_params.get('outstanding') == 'true':
            queryset = queryset.filter(balance__gt=0).exclude(status=Invoice.Status.VOID)

        date_from = self.request.query_params.get('date_from')
        date_to = self.request.query_params.get('date_to')

        if date_from:
            queryset = queryset.filter(due_date__gte=date_from)
        if date_to:
            queryset = queryset.filter(due_date__lte=date_to)

        return queryset

    def create(self, request, *args, **kwargs):
        return Response(
            {'error': 'Invoices are issued by the monthly generation run'},
            status=status.HTTP_405_METHOD_NOT_ALLOWED
        )

    @action(detail=True, methods=['post'], permission_classes=[IsAuthenticated, IsLedgerOperator])
    def recalculate(self, request, pk=None):
        """Recompute balance and status from the recorded allocations"""
        invoice = self.get_object()
        try:
            invoice = balances.recalculate_invoice(invoice.pk)
        except LedgerError as e:
            return error_response(e)
        return Response({
            'status': 'Invoice recalculated',
            'invoice': InvoiceSerializer(invoice).data
        })

    @action(detail=True, methods=['post'], permission_classes=[IsAuthenticated, IsLedgerOperator])
    def void(self, request, pk=None):
        invoice = self.get_object()
        serializer = ReasonSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            invoice = invoicing.void_invoice(
                invoice.pk, serializer.validated_data['reason'], user=request.user)
        except LedgerError as e:
            return error_response(e)
        return Response({
            'status': 'Invoice voided',
            'invoice': InvoiceSerializer(invoice).data
        })


@extend_schema(tags=["Payments"])
class PaymentViewSet(BaseViewSet):
    queryset = Payment.objects.select_related('tenant__user')
    serializer_class = PaymentSerializer
    http_method_names = ['get', 'post', 'head', 'options']
    filterset_fields = ['status', 'tenant', 'payment_method']
    search_fields = ['external_reference', 'account_reference',
                     'tenant__user__first_name', 'tenant__user__last_name']
    ordering_fields = ['payment_date', 'amount', 'created_at']
    ordering = ['-payment_date']

    def create(self, request, *args, **kwargs):
        """Record a payment; a repeated external_reference returns the original"""
        serializer = RecordPaymentSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        if not self.tenant_in_scope(data['tenant_id']):
            return Response({'error': 'Tenant not found'}, status=status.HTTP_404_NOT_FOUND)

        try:
            payment, created = payments.record_payment(
                tenant_id=data['tenant_id'],
                amount=data['amount'],
                payment_method=data['payment_method'],
                external_reference=data.get('external_reference') or None,
                status=data['status'],
                payment_date=data.get('payment_date'),
                account_reference=data['account_reference'],
                phone_number=data['phone_number'],
                notes=data['notes'],
                user=request.user,
            )
        except LedgerError as e:
            return error_response(e)

        return Response(
            PaymentSerializer(payment).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK
        )

    @action(detail=True, methods=['post'], permission_classes=[IsAuthenticated, IsLedgerOperator])
    def allocate(self, request, pk=None):
        payment = self.get_object()
        serializer = AllocatePaymentSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        invoice_id = serializer.validated_data.get('invoice_id')
        try:
            if invoice_id:
                created = [allocation.allocate_explicit(
                    payment.pk, invoice_id,
                    amount=serializer.validated_data.get('amount'),
                    user=request.user,
                )]
            else:
                created = allocation.allocate_to_outstanding(payment.pk, user=request.user)
        except LedgerError as e:
            return error_response(e)

        payment.refresh_from_db()
        return Response({
            'status': 'Payment allocated',
            'allocations': PaymentAllocationSerializer(created, many=True).data,
            'payment': PaymentSerializer(payment).data
        })

    @action(detail=True, methods=['post'], permission_classes=[IsAuthenticated, IsLedgerOperator])
    def reverse(self, request, pk=None):
        """Withdraw every live allocation of this payment"""
        payment = self.get_object()
        serializer = ReasonSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            voided = allocation.reverse(payment.pk, serializer.validated_data['reason'], user=request.user)
        except LedgerError as e:
            return error_response(e)

        payment.refresh_from_db()
        return Response({
            'status': 'Payment reversed' if voided else 'Nothing to reverse',
            'voided_allocations': PaymentAllocationSerializer(voided, many=True).data,
            'payment': PaymentSerializer(payment).data
        })

    @action(detail=True, methods=['post'], permission_classes=[IsAuthenticated, IsLedgerOperator])
    def confirm(self, request, pk=None):
        """Complete a pending payment and allocate it"""
        payment = self.get_object()
        try:
            payment = payments.confirm_payment(payment.pk, user=request.user)
        except LedgerError as e:
            return error_response(e)
        return Response({
            'status': 'Payment confirmed',
            'payment': PaymentSerializer(payment).data
        })


@extend_schema(tags=["Reconciliation"])
class UnmatchedPaymentViewSet(BaseViewSet):
    queryset = UnmatchedPayment.objects.select_related('rental_property', 'resolved_payment')
    serializer_class = UnmatchedPaymentSerializer
    permission_classes = [IsAuthenticated, IsLedgerOperator]
    http_method_names = ['get', 'post', 'head', 'options']
    filterset_fields = ['status', 'rental_property', 'business_short_code']
    search_fields = ['external_reference', 'account_reference', 'phone_number']
    ordering_fields = ['created_at', 'amount']
    ordering = ['-created_at']

    def filter_for_property_manager(self, queryset, user):
        """Records traced to a managed property. Unplaced money is triaged by admins only."""
        return queryset.filter(
            Q(rental_property__manager=user) |
            Q(rental_property__landlord=user)
        )

    def filter_for_tenant(self, queryset, user):
        return queryset.none()

    def create(self, request, *args, **kwargs):
        return Response(
            {'error': 'Unmatched payments are recorded from provider notifications'},
            status=status.HTTP_405_METHOD_NOT_ALLOWED
        )

    @action(detail=True, methods=['post'])
    def set_status(self, request, pk=None):
        record = self.get_object()
        serializer = UnmatchedStatusSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            record = unmatched.update_status(
                record.pk,
                serializer.validated_data['status'],
                user=request.user,
                notes=serializer.validated_data['notes'],
            )
        except LedgerError as e:
            return error_response(e)
        return Response({
            'status': f'Unmatched payment marked {record.status}',
            'unmatched_payment': UnmatchedPaymentSerializer(record).data
        })

    @action(detail=True, methods=['post'])
    def resolve(self, request, pk=None):
        """Attribute the money to a tenant and allocate it"""
        record = self.get_object()
        serializer = ResolveUnmatchedSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        if not self.tenant_in_scope(data['tenant_id']):
            return Response({'error': 'Tenant not found'}, status=status.HTTP_404_NOT_FOUND)

        try:
            record = unmatched.resolve(
                record.pk,
                data['tenant_id'],
                invoice_id=data.get('invoice_id'),
                period=data.get('period'),
                user=request.user,
                notes=data['notes'],
            )
        except LedgerError as e:
            return error_response(e)
        return Response({
            'status': 'Unmatched payment resolved',
            'unmatched_payment': UnmatchedPaymentSerializer(record).data,
            'payment': PaymentSerializer(record.resolved_payment).data
        })


@extend_schema(tags=["Payments"])
class DepositRefundViewSet(BaseViewSet):
    queryset = DepositRefund.objects.select_related('tenant__user')
    serializer_class = DepositRefundSerializer
    http_method_names = ['get', 'post', 'head', 'options']
    filterset_fields = ['status', 'tenant']
    ordering_fields = ['created_at', 'amount']
    ordering = ['-created_at']

    def perform_create(self, serializer):
        serializer.save(requested_by=self.request.user)

    def create(self, request, *args, **kwargs):
        tenant_id = request.data.get('tenant')
        if tenant_id and not self.tenant_in_scope(tenant_id):
            return Response({'error': 'Tenant not found'}, status=status.HTTP_404_NOT_FOUND)
        return super().create(request, *args, **kwargs)

    @action(detail=True, methods=['post'], permission_classes=[IsAuthenticated, IsLedgerOperator])
    def disburse(self, request, pk=None):
        """Send the refund to the tenant's phone through M-Pesa B2C"""
        from mpesa.services import initiate_disbursement

        refund = self.get_object()
        try:
            txn = initiate_disbursement(refund.pk, user=request.user)
        except LedgerError as e:
            return error_response(e)

        refund.refresh_from_db()
        return Response({
            'status': 'Disbursement requested',
            'transaction_id': txn.pk,
            'deposit_refund': DepositRefundSerializer(refund).data
        }, status=status.HTTP_202_ACCEPTED)


@extend_schema(tags=["Balances"])
class BalanceViewSet(viewsets.ViewSet):
    """Outstanding balance per tenant"""
    permission_classes = [IsAuthenticated]

    def retrieve(self, request, pk=None):
        from tenant.models import Tenant

        user = request.user
        tenants = Tenant.objects.select_related('user').filter(pk=pk)
        if user.role in ('landlord', 'property_manager'):
            tenants = tenants.filter(managed_tenants_filter(user, prefix=''))
        elif user.role == 'tenant':
            tenants = tenants.filter(user=user)
        elif user.role != 'admin':
            tenants = tenants.none()

        tenant = tenants.first()
        if tenant is None:
            return Response({'error': 'Tenant not found'}, status=status.HTTP_404_NOT_FOUND)

        try:
            outstanding = balances.outstanding_balance(tenant.pk)
        except LedgerError as e:
            return error_response(e)

        open_invoices = Invoice.objects.filter(
            tenant=tenant, balance__gt=0
        ).exclude(status=Invoice.Status.VOID).order_by('due_date', 'id')
        unallocated = Payment.objects.filter(
            tenant=tenant, status=Payment.Status.COMPLETED, unallocated_amount__gt=0
        ).values_list('unallocated_amount', flat=True)

        return Response({
            'tenant_id': tenant.pk,
            'tenant_name': tenant.user.get_full_name(),
            'outstanding_balance': outstanding,
            'unallocated_credit': sum(unallocated, Decimal('0.00')),
            'open_invoices': InvoiceListSerializer(open_invoices, many=True).data
        })
