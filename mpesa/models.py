from django.conf import settings
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from finance.exceptions import ConflictError
from finance.models import TimeStampedModel


class ExternalTransaction(TimeStampedModel):
    """One asynchronous M-Pesa operation and the provider's view of its outcome"""

    class OperationType(models.TextChoices):
        PUSH = 'push', _('STK Push')
        INBOUND = 'inbound', _('Paybill Deposit')
        DISBURSEMENT = 'disbursement', _('B2C Disbursement')

    class Status(models.TextChoices):
        INITIATED = 'initiated', _('Initiated')
        PENDING = 'pending', _('Pending')
        COMPLETED = 'completed', _('Completed')
        FAILED = 'failed', _('Failed')
        CANCELLED = 'cancelled', _('Cancelled')

    TERMINAL_STATUSES = (Status.COMPLETED, Status.FAILED, Status.CANCELLED)

    ALLOWED_TRANSITIONS = {
        Status.INITIATED: (Status.PENDING, Status.FAILED),
        Status.PENDING: (Status.COMPLETED, Status.FAILED, Status.CANCELLED),
        Status.COMPLETED: (),
        Status.FAILED: (),
        Status.CANCELLED: (),
    }

    operation_type = models.CharField(
        max_length=20,
        choices=OperationType.choices
    )
    checkout_request_id = models.CharField(
        max_length=100,
        unique=True,
        null=True,
        blank=True,
        help_text=_("CheckoutRequestID, OriginatorConversationID or TransID depending on the operation")
    )
    merchant_request_id = models.CharField(max_length=100, blank=True)
    provider_receipt = models.CharField(
        max_length=100,
        blank=True,
        help_text=_("M-Pesa receipt number once the money moved")
    )
    phone_number = models.CharField(max_length=20, blank=True)
    account_reference = models.CharField(max_length=100, blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.INITIATED
    )
    result_code = models.CharField(max_length=20, blank=True)
    result_description = models.CharField(max_length=255, blank=True)

    tenant = models.ForeignKey(
        'tenant.Tenant',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='external_transactions'
    )
    payment = models.OneToOneField(
        'finance.Payment',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='external_transaction'
    )
    unmatched_payment = models.OneToOneField(
        'finance.UnmatchedPayment',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='external_transaction'
    )
    deposit_refund = models.ForeignKey(
        'finance.DepositRefund',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='external_transactions'
    )
    initiated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='initiated_mpesa_transactions'
    )

    request_payload = models.JSONField(default=dict, blank=True)
    response_payload = models.JSONField(default=dict, blank=True)
    callback_payload = models.JSONField(default=dict, blank=True)
    callback_received_at = models.DateTimeField(null=True, blank=True)
    last_queried_at = models.DateTimeField(null=True, blank=True)
    query_attempts = models.PositiveIntegerField(default=0)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'created_at']),
            models.Index(fields=['operation_type', 'status']),
            models.Index(fields=['tenant', '-created_at']),
        ]

    def __str__(self):
        return f"{self.get_operation_type_display()} {self.checkout_request_id or self.pk} ({self.status})"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def can_transition_to(self, status):
        return status in self.ALLOWED_TRANSITIONS.get(self.status, ())

    def transition_to(self, status, result_code=None, result_description=None):
        """Move to ``status`` or raise ConflictError. The caller saves."""
        if not self.can_transition_to(status):
            raise ConflictError(
                f"Transaction {self.checkout_request_id or self.pk} cannot move from {self.status} to {status}")
        self.status = status
        if result_code is not None:
            self.result_code = str(result_code)
        if result_description is not None:
            self.result_description = str(result_description)[:255]
        if status in self.TERMINAL_STATUSES:
            self.completed_at = timezone.now()
