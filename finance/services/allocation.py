"""
Payment allocation engine.

Every operation runs in one transaction and takes row locks in a fixed
order: the tenant row, then the payment, then invoices by ascending id.
Two workers touching the same tenant therefore serialize, while different
tenants proceed in parallel.
"""
import logging
from decimal import Decimal

from django.db import transaction
from django.utils import timezone

from finance.exceptions import (
    InsufficientFunds, NotFoundError, OverAllocation, ValidationError,
)
from finance.models import Invoice, Payment, PaymentAllocation
from finance.services.balances import apply_recalculation

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')


def _tenant_id_for_payment(payment_id):
    tenant_id = Payment.objects.filter(pk=payment_id).values_list('tenant_id', flat=True).first()
    if tenant_id is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    return tenant_id


def lock_tenant(tenant_id):
    from tenant.models import Tenant

    try:
        return Tenant.objects.select_for_update().get(pk=tenant_id)
    except Tenant.DoesNotExist:
        raise NotFoundError(f"Tenant {tenant_id} not found")


def _lock_payment(payment_id):
    try:
        return Payment.objects.select_for_update().get(pk=payment_id)
    except Payment.DoesNotExist:
        raise NotFoundError(f"Payment {payment_id} not found")


def _require_completed(payment):
    if payment.status != Payment.Status.COMPLETED:
        raise ValidationError(
            f"Payment {payment.external_reference} is {payment.status}; only completed payments can be allocated")


def _post(payment, invoice, amount, user=None):
    allocation = PaymentAllocation.objects.create(
        payment=payment,
        invoice=invoice,
        amount=amount,
        created_by=user,
    )
    payment.unallocated_amount -= amount
    payment.save(update_fields=['unallocated_amount', 'updated_at'])
    apply_recalculation(invoice)
    logger.info(
        f"Allocated {amount} from payment {payment.external_reference} "
        f"to invoice {invoice.invoice_number}; payment has {payment.unallocated_amount} left"
    )
    return allocation


def allocate_explicit(payment_id, invoice_id, amount=None, user=None):
    """Apply part of a payment to one invoice.

    Without an amount, applies the lesser of the payment's unallocated
    amount and the invoice's live balance.
    """
    if amount is not None:
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValidationError("Allocation amount must be greater than zero")

    tenant_id = _tenant_id_for_payment(payment_id)

    with transaction.atomic():
        lock_tenant(tenant_id)
        payment = _lock_payment(payment_id)
        _require_completed(payment)

        try:
            invoice = Invoice.objects.select_for_update().get(pk=invoice_id)
        except Invoice.DoesNotExist:
            raise NotFoundError(f"Invoice {invoice_id} not found")

        if invoice.tenant_id != payment.tenant_id:
            raise ValidationError(
                f"Invoice {invoice.invoice_number} does not belong to the payment's tenant")
        if invoice.status == Invoice.Status.VOID:
            raise ValidationError(f"Invoice {invoice.invoice_number} is void")

        apply_recalculation(invoice)

        if amount is None:
            amount = min(payment.unallocated_amount, invoice.balance)
            if payment.unallocated_amount <= 0:
                raise InsufficientFunds(
                    f"Payment {payment.external_reference} has nothing left to allocate")
            if amount <= 0:
                raise OverAllocation(f"Invoice {invoice.invoice_number} has no balance due")

        if amount > payment.unallocated_amount:
            raise InsufficientFunds(
                f"Allocation of {amount} exceeds the {payment.unallocated_amount} "
                f"left on payment {payment.external_reference}",
                available=payment.unallocated_amount,
            )
        if amount > invoice.balance:
            raise OverAllocation(
                f"Allocation of {amount} exceeds the {invoice.balance} "
                f"due on invoice {invoice.invoice_number}",
                balance=invoice.balance,
            )

        return _post(payment, invoice, amount, user)


def allocate_to_outstanding(payment_id, user=None):
    """Spread a payment over the tenant's open invoices, oldest due date first.

    Whatever cannot be placed stays on ``unallocated_amount`` as credit.
    """
    tenant_id = _tenant_id_for_payment(payment_id)

    with transaction.atomic():
        lock_tenant(tenant_id)
        payment = _lock_payment(payment_id)
        _require_completed(payment)

        if payment.unallocated_amount <= 0:
            return []

        invoices = list(
            Invoice.objects.select_for_update()
            .filter(tenant_id=tenant_id)
            .exclude(status=Invoice.Status.VOID)
            .order_by('id')
        )
        for invoice in invoices:
            apply_recalculation(invoice)

        outstanding = sorted(
            (invoice for invoice in invoices if invoice.balance > 0),
            key=lambda invoice: (invoice.due_date, invoice.id),
        )

        allocations = []
        for invoice in outstanding:
            if payment.unallocated_amount <= 0:
                break
            amount = min(payment.unallocated_amount, invoice.balance)
            allocations.append(_post(payment, invoice, amount, user))

        if payment.unallocated_amount > 0:
            logger.info(
                f"Payment {payment.external_reference} left {payment.unallocated_amount} "
                f"as credit for tenant {tenant_id}"
            )
        return allocations


def reverse(payment_id, reason, user=None):
    """Void every active allocation of a payment and restore its full credit."""
    if not reason or not str(reason).strip():
        raise ValidationError("A reason is required to reverse allocations")

    tenant_id = _tenant_id_for_payment(payment_id)

    with transaction.atomic():
        lock_tenant(tenant_id)
        payment = _lock_payment(payment_id)

        allocations = list(
            PaymentAllocation.objects.active().select_for_update().filter(payment=payment).order_by('id'))
        if not allocations:
            logger.warning(f"Payment {payment.external_reference} has no active allocations to reverse")
            return []

        invoice_ids = sorted({allocation.invoice_id for allocation in allocations})
        invoices = list(Invoice.objects.select_for_update().filter(id__in=invoice_ids).order_by('id'))

        now = timezone.now()
        for allocation in allocations:
            allocation.voided_at = now
            allocation.voided_by = user
            allocation.void_reason = reason[:255]
            allocation.save(update_fields=['voided_at', 'voided_by', 'void_reason', 'updated_at'])

        payment.unallocated_amount = payment.amount
        payment.save(update_fields=['unallocated_amount', 'updated_at'])

        for invoice in invoices:
            apply_recalculation(invoice)

        logger.info(
            f"Reversed {len(allocations)} allocations of payment {payment.external_reference} "
            f"across {len(invoices)} invoices: {reason}"
        )
        return allocations
