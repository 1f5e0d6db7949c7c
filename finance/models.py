from django.db import models
from django.db.models import Sum
from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.utils import timezone
from django.utils.translation import gettext_lazy as _
from decimal import Decimal
from datetime import date
import random
import string

from finance.exceptions import ConflictError


ZERO = Decimal('0.00')


class TimeStampedModel(models.Model):
    """Abstract base class with created_at and updated_at fields"""
    created_at = models.DateTimeField(
        auto_now_add=True,
        verbose_name=_("created at"),
        help_text=_("Date and time when the entry was created"),
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        verbose_name=_("updated at"),
        help_text=_("Date and time when the entry was updated"),
    )

    class Meta:
        abstract = True


class Invoice(TimeStampedModel):
    """One bill per tenant per billing period"""

    class Status(models.TextChoices):
        ISSUED = 'issued', _('Issued')
        PARTIALLY_PAID = 'partially_paid', _('Partially Paid')
        PAID = 'paid', _('Paid')
        VOID = 'void', _('Void')

    invoice_number = models.CharField(
        max_length=50,
        unique=True,
        editable=False
    )
    tenant = models.ForeignKey(
        'tenant.Tenant',
        on_delete=models.PROTECT,
        related_name='invoices'
    )
    unit = models.ForeignKey(
        'property.Unit',
        on_delete=models.PROTECT,
        related_name='invoices'
    )
    rental_property = models.ForeignKey(
        'property.Property',
        on_delete=models.PROTECT,
        related_name='invoices'
    )
    landlord = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='landlord_invoices'
    )
    period_start = models.DateField(help_text=_("First day of the billing period"))
    period_end = models.DateField(help_text=_("Last day of the billing period"))
    issue_date = models.DateField(default=date.today)
    due_date = models.DateField()

    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=ZERO,
        validators=[MinValueValidator(ZERO)],
        help_text=_("Billed total, the sum of the line items")
    )
    opening_balance = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=ZERO,
        help_text=_("Arrears carried forward into this invoice")
    )
    balance = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=ZERO,
        help_text=_("Amount still owed; maintained by the balance calculator")
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.ISSUED
    )

    notes = models.TextField(blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="created_invoices"
    )
    voided_at = models.DateTimeField(null=True, blank=True)
    void_reason = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ['due_date', 'id']
        indexes = [
            models.Index(fields=['tenant', 'status']),
            models.Index(fields=['tenant', 'due_date']),
            models.Index(fields=['due_date']),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['tenant', 'period_start', 'period_end'],
                name='unique_invoice_per_tenant_period'
            ),
        ]

    def clean(self):
        super().clean()
        if self.period_start and self.period_end and self.period_end <= self.period_start:
            raise ValidationError({'period_end': _('Period end must be after period start.')})

    def save(self, *args, **kwargs):
        if not self.invoice_number:
            self.invoice_number = self.generate_invoice_number()
        if self.tenant_id and not self.unit_id:
            self.unit_id = self.tenant.unit_id
        if self.unit_id and not self.rental_property_id:
            self.rental_property_id = self.unit.property_id
        if self._state.adding and self.rental_property_id and not self.landlord_id:
            self.landlord_id = self.rental_property.landlord_id
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        if self.pk and self.allocations.exists():
            raise ConflictError(
                f"Invoice {self.invoice_number} has allocations and cannot be deleted")
        return super().delete(*args, **kwargs)

    def generate_invoice_number(self):
        """Generate unique invoice number"""
        now = timezone.now()
        prefix = f"INV-{now.year}{now.month:02d}-"
        count = Invoice.objects.filter(invoice_number__startswith=prefix).count() + 1
        number = f"{prefix}{count:04d}"
        while Invoice.objects.filter(invoice_number=number).exists():
            count += 1
            number = f"{prefix}{count:04d}"
        return number

    def recalculate_totals(self):
        """Set the billed amount from the line items, then refresh the balance."""
        from finance.services.balances import recalculate_invoice

        self.amount = self.items.aggregate(total=Sum('line_total'))['total'] or ZERO
        self.save(update_fields=['amount', 'updated_at'])
        return recalculate_invoice(self.pk)

    @property
    def total_due(self):
        return self.opening_balance + self.amount

    @property
    def amount_allocated(self):
        return PaymentAllocation.objects.active().filter(invoice=self).aggregate(
            total=Sum('amount'))['total'] or ZERO

    @property
    def is_overdue(self):
        return date.today() > self.due_date and self.balance > 0 and self.status != self.Status.VOID

    @property
    def days_overdue(self):
        if not self.is_overdue:
            return 0
        return (date.today() - self.due_date).days

    def __str__(self):
        return f"{self.invoice_number} - {self.tenant}"


class InvoiceLineItem(TimeStampedModel):
    """Individual charge on an invoice"""

    class ItemType(models.TextChoices):
        RENT = 'rent', _('Rent')
        UTILITY = 'utility', _('Utility')
        DEPOSIT = 'deposit', _('Deposit')
        OTHER = 'other', _('Other')

    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.CASCADE,
        related_name='items'
    )
    item_type = models.CharField(
        max_length=20,
        choices=ItemType.choices,
        default=ItemType.RENT
    )
    description = models.CharField(max_length=255)
    quantity = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal('1.00'),
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    unit_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(ZERO)]
    )
    line_total = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        editable=False
    )

    class Meta:
        ordering = ['id']

    def save(self, *args, **kwargs):
        self.line_total = (self.quantity * self.unit_price).quantize(Decimal('0.01'))
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.description} - {self.line_total}"


class Payment(TimeStampedModel):
    """Money received from a tenant through any channel"""

    class Status(models.TextChoices):
        PENDING = 'pending', _('Pending')
        COMPLETED = 'completed', _('Completed')
        FAILED = 'failed', _('Failed')

    PAYMENT_METHODS = [
        ('cash', _('Cash')),
        ('bank_transfer', _('Bank Transfer')),
        ('card', _('Card')),
        ('mobile_money', _('Mobile Money')),
        ('check', _('Check')),
        ('other', _('Other')),
    ]

    tenant = models.ForeignKey(
        'tenant.Tenant',
        on_delete=models.PROTECT,
        related_name='payments'
    )
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    unallocated_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text=_("Credit not yet applied to any invoice")
    )
    payment_date = models.DateField(default=date.today)
    payment_method = models.CharField(
        max_length=20,
        choices=PAYMENT_METHODS
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING
    )
    external_reference = models.CharField(
        max_length=100,
        unique=True,
        null=True,
        blank=True,
        help_text=_("Channel reference; duplicates of it are treated as replays")
    )
    account_reference = models.CharField(max_length=100, blank=True)
    phone_number = models.CharField(max_length=20, blank=True)
    recorded_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='recorded_payments'
    )
    confirmed_at = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True)

    class Meta:
        ordering = ['-payment_date', '-created_at']
        indexes = [
            models.Index(fields=['tenant', '-payment_date']),
            models.Index(fields=['status']),
        ]
        constraints = [
            models.CheckConstraint(
                check=models.Q(unallocated_amount__gte=0) & models.Q(
                    unallocated_amount__lte=models.F('amount')),
                name='payment_unallocated_within_amount'
            ),
        ]

    def save(self, *args, **kwargs):
        """Auto-generate a reference for manual entries that carry none"""
        if not self.external_reference:
            timestamp = timezone.now().strftime('%Y%m%d%H%M%S')
            random_code = ''.join(random.choices(string.ascii_uppercase + string.digits, k=6))
            self.external_reference = f"AUTO-{timestamp}-{random_code}"
        if self.unallocated_amount is None:
            self.unallocated_amount = self.amount
        super().save(*args, **kwargs)

    @property
    def allocated_amount(self):
        return self.amount - self.unallocated_amount

    @property
    def is_completed(self):
        return self.status == self.Status.COMPLETED

    def __str__(self):
        return f"Payment {self.external_reference} - {self.tenant} - {settings.CURRENCY} {self.amount} ({self.status})"


class PaymentAllocationQuerySet(models.QuerySet):

    def active(self):
        return self.filter(voided_at__isnull=True)

    def voided(self):
        return self.filter(voided_at__isnull=False)


class PaymentAllocation(TimeStampedModel):
    """Append-only posting of part of a payment against an invoice.

    Reversal stamps ``voided_at`` instead of deleting the row, so the full
    history of what was applied and withdrawn stays queryable.
    """
    payment = models.ForeignKey(
        Payment,
        on_delete=models.PROTECT,
        related_name='allocations'
    )
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.PROTECT,
        related_name='allocations'
    )
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='created_allocations'
    )
    voided_at = models.DateTimeField(null=True, blank=True)
    voided_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='voided_allocations'
    )
    void_reason = models.CharField(max_length=255, blank=True)

    objects = PaymentAllocationQuerySet.as_manager()

    class Meta:
        ordering = ['id']
        indexes = [
            models.Index(fields=['payment', 'voided_at']),
            models.Index(fields=['invoice', 'voided_at']),
        ]

    @property
    def is_active(self):
        return self.voided_at is None

    def __str__(self):
        state = "void" if self.voided_at else "active"
        return f"{self.payment.external_reference} -> {self.invoice.invoice_number}: {self.amount} ({state})"


class UnmatchedPayment(TimeStampedModel):
    """Money that arrived without an account reference we could attribute"""

    class Status(models.TextChoices):
        PENDING = 'pending', _('Pending')
        RESOLVED = 'resolved', _('Resolved')
        IGNORED = 'ignored', _('Ignored')

    external_reference = models.CharField(
        max_length=100,
        unique=True,
        help_text=_("Provider transaction reference")
    )
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    account_reference = models.CharField(
        max_length=100,
        blank=True,
        help_text=_("Account reference the payer typed in")
    )
    phone_number = models.CharField(max_length=20, blank=True)
    business_short_code = models.CharField(max_length=20, blank=True)
    checkout_request_id = models.CharField(
        max_length=100,
        blank=True,
        db_index=True,
        help_text=_("STK push CheckoutRequestID when the money answered a prompt we could not find yet")
    )
    raw_payload = models.JSONField(default=dict, blank=True)
    reason = models.CharField(max_length=255, blank=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING
    )
    rental_property = models.ForeignKey(
        'property.Property',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='unmatched_payments',
        help_text=_("Property whose paybill received the money, when known")
    )
    resolved_payment = models.OneToOneField(
        Payment,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='source_unmatched_payment'
    )
    resolved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='resolved_unmatched_payments'
    )
    resolved_at = models.DateTimeField(null=True, blank=True)
    resolution_notes = models.TextField(blank=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', '-created_at']),
            models.Index(fields=['account_reference']),
        ]

    def __str__(self):
        return f"Unmatched {self.external_reference} - {self.amount} ({self.status})"


class DepositRefund(TimeStampedModel):
    """Security deposit returned to a tenant through an M-Pesa disbursement"""

    class Status(models.TextChoices):
        PENDING = 'pending', _('Pending')
        PROCESSING = 'processing', _('Processing')
        DISBURSED = 'disbursed', _('Disbursed')
        FAILED = 'failed', _('Failed')

    tenant = models.ForeignKey(
        'tenant.Tenant',
        on_delete=models.PROTECT,
        related_name='deposit_refunds'
    )
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    phone_number = models.CharField(max_length=20)
    reason = models.CharField(max_length=255, blank=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING
    )
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='requested_deposit_refunds'
    )
    disbursed_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"Deposit refund {self.pk} - {self.tenant} - {self.amount} ({self.status})"


class JobLock(models.Model):
    """Run-lock for batch jobs, held in the database so every worker sees it"""
    name = models.CharField(max_length=100, unique=True)
    token = models.CharField(max_length=64, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    acquired_at = models.DateTimeField(null=True, blank=True)

    def __str__(self):
        return f"{self.name} ({'held' if self.is_held else 'free'})"

    @property
    def is_held(self):
        return bool(self.token) and self.expires_at is not None and self.expires_at > timezone.now()
