import logging

from django.conf import settings
from django.core.mail import send_mail
from django.db import transaction

logger = logging.getLogger(__name__)


def send_payment_receipt(payment_id):
    """Email the tenant a receipt. Never raises."""
    from finance.models import Payment

    try:
        payment = Payment.objects.select_related('tenant__user').get(pk=payment_id)
        user = payment.tenant.user
        if not user.email:
            logger.warning(f"No email on file for tenant {payment.tenant_id}; receipt not sent")
            return False

        allocations = payment.allocations.active().select_related('invoice')
        lines = [
            f"{allocation.invoice.invoice_number}: {settings.CURRENCY} {allocation.amount}"
            for allocation in allocations
        ]
        body = (
            f"Dear {user.get_full_name()},\n\n"
            f"We received {settings.CURRENCY} {payment.amount} on {payment.payment_date} "
            f"(ref {payment.external_reference}).\n\n"
        )
        if lines:
            body += "Applied to:\n" + "\n".join(lines) + "\n"
        if payment.unallocated_amount > 0:
            body += f"Credit carried forward: {settings.CURRENCY} {payment.unallocated_amount}\n"

        send_mail(
            subject=f"Payment receipt {payment.external_reference}",
            message=body,
            from_email=settings.DEFAULT_FROM_EMAIL,
            recipient_list=[user.email],
        )
        logger.info(f"Receipt for payment {payment.external_reference} sent to {user.email}")
        return True
    except Exception:
        logger.exception(f"Failed to send receipt for payment {payment_id}")
        return False


def send_overdue_notice(tenant_id):
    """Email the tenant their overdue invoices. Never raises."""
    from finance.services.balances import outstanding_balance
    from tenant.models import Tenant

    try:
        tenant = Tenant.objects.select_related('user').get(pk=tenant_id)
        if not tenant.user.email:
            logger.warning(f"No email on file for tenant {tenant_id}; overdue notice not sent")
            return False

        overdue = [invoice for invoice in tenant.invoices.filter(balance__gt=0) if invoice.is_overdue]
        if not overdue:
            return False

        lines = [
            f"{invoice.invoice_number} due {invoice.due_date}: {settings.CURRENCY} {invoice.balance}"
            for invoice in overdue
        ]
        send_mail(
            subject="Overdue rent notice",
            message=(
                f"Dear {tenant.user.get_full_name()},\n\n"
                "The following invoices are past due:\n" + "\n".join(lines) +
                f"\n\nTotal outstanding: {settings.CURRENCY} {outstanding_balance(tenant_id)}\n"
            ),
            from_email=settings.DEFAULT_FROM_EMAIL,
            recipient_list=[tenant.user.email],
        )
        logger.info(f"Overdue notice sent to tenant {tenant_id} for {len(overdue)} invoices")
        return True
    except Exception:
        logger.exception(f"Failed to send overdue notice to tenant {tenant_id}")
        return False


def schedule_payment_receipt(payment_id):
    """Send the receipt once the surrounding transaction commits."""
    transaction.on_commit(lambda: send_payment_receipt(payment_id))
