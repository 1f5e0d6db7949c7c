"""
Invoice balance calculator.

Balances are always recomputed from the stored postings:
``balance = opening_balance + amount - sum(active allocations)``.
Nothing here trusts a balance that was read outside the current transaction.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Tuple

from django.conf import settings
from django.db import transaction
from django.db.models import Sum

from finance.exceptions import LedgerIntegrityError, NotFoundError
from finance.models import Invoice, PaymentAllocation

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')


@dataclass
class RecalculationResult:
    checked: int = 0
    updated: List[int] = field(default_factory=list)
    failed: List[Tuple[int, str]] = field(default_factory=list)

    def merge(self, other):
        self.checked += other.checked
        self.updated.extend(other.updated)
        self.failed.extend(other.failed)
        return self


def compute_balance(amount, opening_balance, allocated) -> Decimal:
    return (opening_balance or ZERO) + (amount or ZERO) - (allocated or ZERO)


def derive_status(balance, total_due, current_status: Optional[str] = None) -> str:
    """Status implied by a balance; a void invoice stays void."""
    if current_status == Invoice.Status.VOID:
        return Invoice.Status.VOID
    if balance <= 0:
        return Invoice.Status.PAID
    if balance < total_due:
        return Invoice.Status.PARTIALLY_PAID
    return Invoice.Status.ISSUED


def allocated_total(invoice_id) -> Decimal:
    return PaymentAllocation.objects.active().filter(invoice_id=invoice_id).aggregate(
        total=Sum('amount'))['total'] or ZERO


def apply_recalculation(invoice: Invoice) -> bool:
    """Recompute a row the caller has already locked. Returns True when it changed.

    Raises LedgerIntegrityError, without saving, when the postings exceed what
    the invoice can absorb and invoice credit is not allowed.
    """
    allocated = allocated_total(invoice.pk)
    balance = compute_balance(invoice.amount, invoice.opening_balance, allocated)

    if balance < 0 and not settings.LEDGER_ALLOW_INVOICE_CREDIT:
        logger.error(
            f"Integrity violation on invoice {invoice.invoice_number}: allocated {allocated} "
            f"exceeds amount {invoice.amount} + opening balance {invoice.opening_balance}"
        )
        raise LedgerIntegrityError(
            f"Invoice {invoice.invoice_number} is over-allocated by {-balance}",
            invoice_id=invoice.pk,
        )

    status = derive_status(balance, invoice.total_due, invoice.status)
    if balance == invoice.balance and status == invoice.status:
        return False

    logger.info(
        f"Invoice {invoice.invoice_number} balance {invoice.balance} -> {balance}, "
        f"status {invoice.status} -> {status}"
    )
    invoice.balance = balance
    invoice.status = status
    invoice.save(update_fields=['balance', 'status', 'updated_at'])
    return True


def recalculate_invoice(invoice_id) -> Invoice:
    with transaction.atomic():
        try:
            invoice = Invoice.objects.select_for_update().get(pk=invoice_id)
        except Invoice.DoesNotExist:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        apply_recalculation(invoice)
        return invoice


def _recalculate_queryset(invoice_ids) -> RecalculationResult:
    result = RecalculationResult()
    for invoice_id in invoice_ids:
        result.checked += 1
        try:
            with transaction.atomic():
                invoice = Invoice.objects.select_for_update().get(pk=invoice_id)
                if apply_recalculation(invoice):
                    result.updated.append(invoice_id)
        except LedgerIntegrityError as e:
            result.failed.append((invoice_id, str(e)))
    return result


def recalculate_for_tenant(tenant_id) -> RecalculationResult:
    invoice_ids = list(
        Invoice.objects.filter(tenant_id=tenant_id).order_by('id').values_list('id', flat=True))
    result = _recalculate_queryset(invoice_ids)
    logger.info(
        f"Recalculated {result.checked} invoices for tenant {tenant_id}: "
        f"{len(result.updated)} updated, {len(result.failed)} failed"
    )
    return result


def recalculate_all(batch_size=500) -> RecalculationResult:
    result = RecalculationResult()
    last_id = 0
    while True:
        invoice_ids = list(
            Invoice.objects.filter(id__gt=last_id).order_by('id').values_list('id', flat=True)[:batch_size])
        if not invoice_ids:
            break
        result.merge(_recalculate_queryset(invoice_ids))
        last_id = invoice_ids[-1]

    if result.failed:
        logger.error(f"Balance repair found {len(result.failed)} invoices violating the ledger invariant")
    logger.info(f"Recalculated {result.checked} invoices, {len(result.updated)} repaired")
    return result


def outstanding_balance(tenant_id) -> Decimal:
    """Sum of positive balances across a tenant's non-void invoices."""
    from tenant.models import Tenant

    if not Tenant.objects.filter(pk=tenant_id).exists():
        raise NotFoundError(f"Tenant {tenant_id} not found")

    return Invoice.objects.filter(
        tenant_id=tenant_id,
        balance__gt=0,
    ).exclude(
        status=Invoice.Status.VOID
    ).aggregate(total=Sum('balance'))['total'] or ZERO
