import logging

from django.conf import settings
from django.db.models import Q
from drf_spectacular.utils import extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from finance.exceptions import ExternalServiceError, LedgerError
from finance.permissions import IsLedgerOperator
from finance.views import StandardResultsPagination

from . import services
from .models import ExternalTransaction
from .permissions import IsMpesaCallback
from .serializers import ExternalTransactionSerializer, StkPushSerializer

logger = logging.getLogger(__name__)

ACKNOWLEDGEMENT = {"ResultCode": 0, "ResultDesc": "Accepted"}


def scoped_transactions(user):
    queryset = ExternalTransaction.objects.select_related('tenant__user')
    if user.role == 'admin':
        return queryset
    if user.role in ('landlord', 'property_manager'):
        return queryset.filter(
            Q(tenant__unit__property__manager=user) | Q(tenant__unit__property__landlord=user))
    if user.role == 'tenant':
        return queryset.filter(tenant__user=user)
    return queryset.none()


@extend_schema(tags=["M-Pesa"])
class StkPushView(APIView):
    """Prompt a tenant's phone to pay. Tenants may only prompt themselves."""
    permission_classes = [IsAuthenticated]

    def post(self, request, format=None):
        from tenant.models import Tenant

        serializer = StkPushSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        user = request.user
        tenant_id = serializer.validated_data.get('tenant_id')
        if user.role == 'tenant':
            tenant = Tenant.objects.filter(user=user).first()
            if tenant is None or (tenant_id and tenant_id != tenant.pk):
                return Response({'error': 'Tenant not found'}, status=status.HTTP_404_NOT_FOUND)
            tenant_id = tenant.pk
        elif not tenant_id:
            return Response({'tenant_id': ['This field is required.']}, status=status.HTTP_400_BAD_REQUEST)
        elif user.role != 'admin' and not Tenant.objects.filter(
                Q(unit__property__manager=user) | Q(unit__property__landlord=user), pk=tenant_id).exists():
            return Response({'error': 'Tenant not found'}, status=status.HTTP_404_NOT_FOUND)

        try:
            txn = services.initiate_push(
                tenant_id,
                serializer.validated_data['amount'],
                phone_number=serializer.validated_data.get('phone_number') or None,
                user=user,
            )
        except ExternalServiceError as e:
            return Response({'error': str(e), 'retryable': e.retryable}, status=e.status_code)
        except LedgerError as e:
            return Response({'error': str(e)}, status=e.status_code)

        return Response({
            'status': 'Payment prompt sent',
            'transaction': ExternalTransactionSerializer(txn).data
        }, status=status.HTTP_202_ACCEPTED)


@extend_schema(tags=["M-Pesa"])
class ExternalTransactionViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = ExternalTransactionSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = StandardResultsPagination
    filterset_fields = ['status', 'operation_type', 'tenant']

    def get_queryset(self):
        return scoped_transactions(self.request.user).order_by('-created_at')

    @action(detail=True, methods=['post'], permission_classes=[IsAuthenticated, IsLedgerOperator])
    def query(self, request, pk=None):
        """Ask M-Pesa for the outcome now instead of waiting for the sweep"""
        txn = self.get_object()
        if txn.is_terminal:
            return Response({
                'status': f'Transaction already {txn.status}',
                'transaction': ExternalTransactionSerializer(txn).data
            })

        try:
            txn = services.requery_transaction(txn)
        except LedgerError as e:
            return Response({'error': str(e)}, status=e.status_code)
        return Response({
            'status': f'Transaction {txn.status}',
            'transaction': ExternalTransactionSerializer(txn).data
        })


class MpesaCallbackView(APIView):
    """
    Base for Daraja webhooks. M-Pesa redelivers anything that is not
    acknowledged, so every processed callback is acknowledged even when it
    could not be applied; the sweep repairs what is left pending.
    """
    authentication_classes = []
    permission_classes = [IsMpesaCallback]
    callback_name = 'callback'

    def handle(self, payload):
        raise NotImplementedError

    def post(self, request, format=None):
        try:
            self.handle(request.data)
        except LedgerError as e:
            logger.error(f"M-Pesa {self.callback_name} not applied: {e}")
        except Exception:
            logger.exception(f"Error processing M-Pesa {self.callback_name}")
        return Response(ACKNOWLEDGEMENT, status=status.HTTP_200_OK)


class StkCallbackView(MpesaCallbackView):
    callback_name = 'STK callback'

    def handle(self, payload):
        return services.handle_callback(payload)


class C2BConfirmationView(MpesaCallbackView):
    callback_name = 'C2B confirmation'

    def handle(self, payload):
        return services.handle_inbound_notification(payload)


class B2CResultView(MpesaCallbackView):
    callback_name = 'B2C result'

    def handle(self, payload):
        return services.handle_disbursement_callback(payload)


class B2CTimeoutView(MpesaCallbackView):
    callback_name = 'B2C timeout'

    def handle(self, payload):
        return services.handle_disbursement_callback(payload, timed_out=True)


class C2BValidationView(APIView):
    """Deposits are always accepted; unknown account references are quarantined on confirmation."""
    authentication_classes = []
    permission_classes = [IsMpesaCallback]

    def post(self, request, format=None):
        logger.info(
            f"C2B validation for {request.data.get('TransID', '?')} "
            f"account {request.data.get('BillRefNumber', '')!r}"
        )
        return Response(ACKNOWLEDGEMENT, status=status.HTTP_200_OK)


class HealthView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]

    def get(self, request, format=None):
        return Response({
            'status': 'ok',
            'environment': settings.MPESA_ENVIRONMENT,
            'credentials_configured': bool(settings.MPESA_CONSUMER_KEY and settings.MPESA_CONSUMER_SECRET),
        })
