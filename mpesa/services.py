"""
M-Pesa transaction state machine.

Transactions move ``initiated -> pending -> completed | failed | cancelled``
and never leave a terminal state. Every provider message is keyed by an id
the provider assigns (CheckoutRequestID, TransID, OriginatorConversationID),
so a redelivered message finds the transaction already settled and returns
it unchanged.
"""
import logging
import uuid
from datetime import timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from finance.exceptions import (
    ConflictError, ExternalServiceError, LedgerError, NotFoundError, ReconciliationError, ValidationError,
)
from finance.models import DepositRefund, UnmatchedPayment
from finance.services.payments import record_payment, to_amount
from finance.services.unmatched import quarantine, resolve_account_reference, settle_parked_push
from mpesa.client import DarajaClient
from mpesa.models import ExternalTransaction
from mpesa.payloads import DisbursementResult, InboundDeposit, PushResult, status_for_result_code
from utils.common import normalize_phone_number

logger = logging.getLogger(__name__)

Status = ExternalTransaction.Status
OperationType = ExternalTransaction.OperationType


def _settle(txn, status, result_code=None, result_description=None):
    if txn.status == Status.INITIATED and status != Status.FAILED:
        txn.transition_to(Status.PENDING)
    txn.transition_to(status, result_code=result_code, result_description=result_description)


def _account_reference_for(tenant):
    return tenant.unit.payment_account_number or tenant.unit.unit_number


def initiate_push(tenant_id, amount, phone_number=None, user=None, client=None):
    """Prompt the tenant's phone for payment. Nothing is stored if the request is invalid."""
    from tenant.models import Tenant

    amount = to_amount(amount)
    try:
        tenant = Tenant.objects.select_related('unit', 'user').get(pk=tenant_id)
    except Tenant.DoesNotExist:
        raise NotFoundError(f"Tenant {tenant_id} not found")
    if not tenant.is_active:
        raise ValidationError(f"Tenant {tenant_id} is not active")

    phone = normalize_phone_number(phone_number or tenant.user.phone_number)
    if len(phone) != 12:
        raise ValidationError("A valid phone number is required for an M-Pesa prompt")

    txn = ExternalTransaction.objects.create(
        operation_type=OperationType.PUSH,
        tenant=tenant,
        amount=amount,
        phone_number=phone,
        account_reference=_account_reference_for(tenant),
        initiated_by=user,
        request_payload={'phone': phone, 'amount': str(amount)},
    )

    client = client or DarajaClient()
    try:
        response = client.stk_push(phone, amount, txn.account_reference)
    except ExternalServiceError as e:
        if not e.retryable:
            txn.transition_to(Status.FAILED, result_description=str(e))
            txn.save()
        logger.error(f"STK push {txn.pk} for tenant {tenant_id} failed: {e}")
        raise

    txn.checkout_request_id = response.get('CheckoutRequestID')
    txn.merchant_request_id = response.get('MerchantRequestID', '')
    txn.response_payload = response
    txn.transition_to(Status.PENDING)
    txn.save()
    logger.info(f"STK push {txn.checkout_request_id} sent to {phone} for {amount} (tenant {tenant_id})")
    return txn


def handle_callback(payload):
    return apply_provider_event(PushResult.from_callback(payload))


def handle_inbound_notification(payload):
    return apply_provider_event(InboundDeposit.from_confirmation(payload))


def handle_disbursement_callback(payload, timed_out=False):
    if timed_out:
        return apply_provider_event(DisbursementResult.from_timeout(payload))
    return apply_provider_event(DisbursementResult.from_result(payload))


def apply_provider_event(event, source='callback'):
    """Apply a parsed provider message to the transaction it belongs to."""
    if isinstance(event, PushResult):
        return _apply_push_result(event, source)
    elif isinstance(event, InboundDeposit):
        return _apply_inbound_deposit(event)
    elif isinstance(event, DisbursementResult):
        return _apply_disbursement_result(event, source)
    else:
        raise TypeError(f"Unsupported provider event {type(event).__name__}")


def _record_callback(txn, event, source):
    if source == 'callback':
        txn.callback_payload = event.raw
        txn.callback_received_at = timezone.now()


def _apply_push_result(result, source):
    with transaction.atomic():
        txn = ExternalTransaction.objects.select_for_update().filter(
            checkout_request_id=result.checkout_request_id,
            operation_type=OperationType.PUSH,
        ).first()

        if txn is None:
            if result.is_success and result.amount:
                reference = result.receipt_number or result.checkout_request_id
                quarantine(
                    reference,
                    result.amount,
                    raw_payload=result.raw,
                    reason=f"Successful STK callback for unknown request {result.checkout_request_id}",
                    phone_number=result.phone_number,
                    checkout_request_id=result.checkout_request_id,
                )
                logger.warning(f"STK callback {result.checkout_request_id} has no matching request; quarantined")
                return None
            raise NotFoundError(f"No STK push with CheckoutRequestID {result.checkout_request_id}")

        if txn.is_terminal:
            logger.info(f"STK push {txn.checkout_request_id} already {txn.status}; ignoring repeat {source}")
            return txn

        _record_callback(txn, result, source)
        status = status_for_result_code(result.result_code)
        if status is None:
            txn.save()
            logger.info(f"STK push {txn.checkout_request_id} still processing")
            return txn

        if status == Status.COMPLETED:
            amount = result.amount or txn.amount
            if amount != txn.amount:
                logger.warning(
                    f"STK push {txn.checkout_request_id} requested {txn.amount} but {amount} was paid")
            txn.provider_receipt = result.receipt_number
            parked = UnmatchedPayment.objects.filter(checkout_request_id=txn.checkout_request_id).first()
            if parked is not None:
                # The success callback beat the CheckoutRequestID to the database.
                record, payment = settle_parked_push(parked.pk, txn.tenant_id, txn.checkout_request_id)
                txn.unmatched_payment = record
                txn.provider_receipt = txn.provider_receipt or record.external_reference
            else:
                payment, _ = record_payment(
                    tenant_id=txn.tenant_id,
                    amount=amount,
                    payment_method='mobile_money',
                    external_reference=result.receipt_number or txn.checkout_request_id,
                    payment_date=(result.transaction_date or timezone.now()).date(),
                    account_reference=txn.account_reference,
                    phone_number=result.phone_number or txn.phone_number,
                    notes=f"M-Pesa STK push {txn.checkout_request_id}",
                )
            txn.payment = payment

        _settle(txn, status, result.result_code, result.result_description)
        txn.save()
        logger.info(
            f"STK push {txn.checkout_request_id} {txn.status} "
            f"(code {txn.result_code}: {txn.result_description})"
        )
        return txn


def _quarantine_deposit(deposit, reason):
    record, _ = quarantine(
        deposit.transaction_id,
        deposit.amount,
        account_reference=deposit.account_reference,
        raw_payload=deposit.raw,
        reason=reason[:255],
        phone_number=deposit.phone_number,
        business_short_code=deposit.business_short_code,
    )
    return record


def _apply_inbound_deposit(deposit):
    """Credit a paybill deposit to the tenant its account reference names.

    The transaction row is committed before any ledger work, so a deposit
    the ledger refuses is quarantined rather than lost.
    """
    with transaction.atomic():
        existing = ExternalTransaction.objects.filter(checkout_request_id=deposit.transaction_id).first()
        if existing:
            logger.info(f"Paybill deposit {deposit.transaction_id} already recorded")
            return existing

        try:
            with transaction.atomic():
                txn = ExternalTransaction.objects.create(
                    operation_type=OperationType.INBOUND,
                    checkout_request_id=deposit.transaction_id,
                    provider_receipt=deposit.transaction_id,
                    amount=deposit.amount,
                    phone_number=deposit.phone_number,
                    account_reference=deposit.account_reference,
                    status=Status.PENDING,
                    callback_payload=deposit.raw,
                    callback_received_at=timezone.now(),
                )
        except IntegrityError:
            return ExternalTransaction.objects.get(checkout_request_id=deposit.transaction_id)

    try:
        with transaction.atomic():
            txn = ExternalTransaction.objects.select_for_update().get(pk=txn.pk)
            if txn.is_terminal:
                return txn

            try:
                tenant = resolve_account_reference(deposit.account_reference, deposit.business_short_code)
            except ReconciliationError as e:
                txn.unmatched_payment = _quarantine_deposit(deposit, str(e))
                _settle(txn, Status.COMPLETED, 0, f"Quarantined: {e}")
                txn.save()
                logger.warning(f"Paybill deposit {deposit.transaction_id} quarantined: {e}")
                return txn

            payment, _ = record_payment(
                tenant_id=tenant.pk,
                amount=deposit.amount,
                payment_method='mobile_money',
                external_reference=deposit.transaction_id,
                payment_date=(deposit.transaction_time or timezone.now()).date(),
                account_reference=deposit.account_reference,
                phone_number=deposit.phone_number,
                notes=f"M-Pesa paybill deposit from {deposit.payer_name or deposit.phone_number}",
            )
            txn.tenant = tenant
            txn.payment = payment
            _settle(txn, Status.COMPLETED, 0, "Paybill deposit received")
            txn.save()
    except LedgerError as e:
        logger.error(f"Paybill deposit {deposit.transaction_id} could not be posted: {e}")
        with transaction.atomic():
            txn = ExternalTransaction.objects.select_for_update().get(pk=txn.pk)
            if txn.is_terminal:
                return txn
            txn.unmatched_payment = _quarantine_deposit(deposit, f"Could not be posted: {e}")
            _settle(txn, Status.COMPLETED, 0, f"Quarantined: {e}")
            txn.save()
        return txn

    logger.info(f"Paybill deposit {deposit.transaction_id} of {deposit.amount} credited to tenant {tenant.pk}")
    return txn


def initiate_disbursement(deposit_refund_id, user=None, client=None):
    """Send a deposit refund to the tenant's phone through B2C."""
    with transaction.atomic():
        try:
            refund = DepositRefund.objects.select_for_update().select_related('tenant').get(pk=deposit_refund_id)
        except DepositRefund.DoesNotExist:
            raise NotFoundError(f"Deposit refund {deposit_refund_id} not found")

        if refund.status in (DepositRefund.Status.PROCESSING, DepositRefund.Status.DISBURSED):
            raise ConflictError(f"Deposit refund {refund.pk} is already {refund.status}")

        phone = normalize_phone_number(refund.phone_number)
        if len(phone) != 12:
            raise ValidationError("A valid phone number is required for a disbursement")

        txn = ExternalTransaction.objects.create(
            operation_type=OperationType.DISBURSEMENT,
            checkout_request_id=uuid.uuid4().hex,
            tenant=refund.tenant,
            deposit_refund=refund,
            amount=refund.amount,
            phone_number=phone,
            initiated_by=user,
            request_payload={'phone': phone, 'amount': str(refund.amount)},
        )
        refund.status = DepositRefund.Status.PROCESSING
        refund.failure_reason = ''
        refund.save(update_fields=['status', 'failure_reason', 'updated_at'])

    client = client or DarajaClient()
    try:
        response = client.b2c_payment(phone, refund.amount, txn.checkout_request_id,
                                      remarks=refund.reason or "Deposit refund")
    except ExternalServiceError as e:
        logger.error(f"Disbursement {txn.checkout_request_id} for refund {refund.pk} failed: {e}")
        if not e.retryable:
            with transaction.atomic():
                txn.transition_to(Status.FAILED, result_description=str(e))
                txn.save()
                DepositRefund.objects.filter(pk=refund.pk).update(
                    status=DepositRefund.Status.FAILED, failure_reason=str(e)[:255], updated_at=timezone.now())
        raise

    txn.merchant_request_id = response.get('ConversationID', '')
    txn.response_payload = response
    txn.transition_to(Status.PENDING)
    txn.save()
    logger.info(f"Disbursement {txn.checkout_request_id} of {refund.amount} sent to {phone}")
    return txn


def _apply_disbursement_result(result, source):
    with transaction.atomic():
        transactions = ExternalTransaction.objects.select_for_update().filter(
            operation_type=OperationType.DISBURSEMENT)
        txn = transactions.filter(checkout_request_id=result.originator_conversation_id).first()
        if txn is None and result.occasion:
            txn = transactions.filter(checkout_request_id=result.occasion).first()
        if txn is None:
            raise NotFoundError(f"No disbursement with OriginatorConversationID {result.originator_conversation_id}")

        if txn.is_terminal:
            logger.info(f"Disbursement {txn.checkout_request_id} already {txn.status}; ignoring repeat result")
            return txn

        _record_callback(txn, result, source)
        status = status_for_result_code(result.result_code)
        if status is None:
            txn.result_description = result.result_description[:255]
            txn.save()
            logger.warning(f"Disbursement {txn.checkout_request_id}: {result.result_description}")
            return txn

        refund = DepositRefund.objects.select_for_update().get(pk=txn.deposit_refund_id)
        if status == Status.COMPLETED:
            txn.provider_receipt = result.transaction_id
            refund.status = DepositRefund.Status.DISBURSED
            refund.disbursed_at = timezone.now()
        else:
            refund.status = DepositRefund.Status.FAILED
            refund.failure_reason = result.result_description[:255]
        refund.save(update_fields=['status', 'disbursed_at', 'failure_reason', 'updated_at'])

        _settle(txn, status, result.result_code, result.result_description)
        txn.save()
        logger.info(f"Disbursement {txn.checkout_request_id} {txn.status}; refund {refund.pk} {refund.status}")
        return txn


def query_stuck(older_than=None, batch_size=None):
    """Pending transactions older than the cutoff, oldest first."""
    if older_than is None:
        older_than = timedelta(minutes=settings.RECONCILIATION_MIN_AGE_MINUTES)
    batch_size = batch_size or settings.RECONCILIATION_BATCH_SIZE
    cutoff = timezone.now() - older_than
    return list(
        ExternalTransaction.objects.filter(
            status=Status.PENDING,
            created_at__lt=cutoff,
        ).exclude(
            operation_type=OperationType.INBOUND
        ).order_by('created_at', 'id')[:batch_size]
    )


def stale_initiated(older_than=None, batch_size=None):
    """Transactions the provider never acknowledged, oldest first."""
    if older_than is None:
        older_than = timedelta(minutes=settings.RECONCILIATION_MIN_AGE_MINUTES)
    batch_size = batch_size or settings.RECONCILIATION_BATCH_SIZE
    cutoff = timezone.now() - older_than
    return list(
        ExternalTransaction.objects.filter(
            status=Status.INITIATED,
            created_at__lt=cutoff,
        ).order_by('created_at', 'id')[:batch_size]
    )


def fail_unacknowledged(txn):
    """Close an STK push whose initiation never got a CheckoutRequestID back."""
    with transaction.atomic():
        txn = ExternalTransaction.objects.select_for_update().get(pk=txn.pk)
        if txn.status != Status.INITIATED:
            return txn
        txn.transition_to(Status.FAILED, result_description="No acknowledgement from M-Pesa")
        txn.save()
        logger.warning(f"STK push {txn.pk} never acknowledged; marked failed")
        return txn


def requery_transaction(txn, client=None):
    """Ask M-Pesa for the outcome of a transaction whose callback never arrived."""
    client = client or DarajaClient()
    ExternalTransaction.objects.filter(pk=txn.pk).update(
        query_attempts=F('query_attempts') + 1, last_queried_at=timezone.now())

    if txn.operation_type == OperationType.PUSH:
        response = client.stk_query(txn.checkout_request_id)
        return apply_provider_event(PushResult.from_query(txn.checkout_request_id, response), source='query')

    if txn.operation_type == OperationType.DISBURSEMENT:
        # The answer arrives later on the B2C result URL.
        client.transaction_status(txn.checkout_request_id, txn.provider_receipt)
        txn.refresh_from_db()
        return txn

    raise ValidationError(f"Transaction {txn.pk} of type {txn.operation_type} cannot be re-queried")
