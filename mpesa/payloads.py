"""
Typed views of the JSON bodies Safaricom's Daraja API posts back to us.

Each operation has its own variant carrying only the fields that matter to
it; ``mpesa.services.apply_provider_event`` dispatches on the variant type.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from django.utils import timezone

from finance.exceptions import ValidationError

RESULT_SUCCESS = 0
RESULT_CANCELLED_BY_USER = 1032

# Daraja answers STK queries for in-flight requests with this error code
# instead of a ResultCode.
STILL_PROCESSING_ERROR_CODE = '500.001.1001'


def status_for_result_code(result_code):
    """Map a Daraja ResultCode to the transaction status it settles on."""
    from mpesa.models import ExternalTransaction

    if result_code is None:
        return None
    if int(result_code) == RESULT_SUCCESS:
        return ExternalTransaction.Status.COMPLETED
    if int(result_code) == RESULT_CANCELLED_BY_USER:
        return ExternalTransaction.Status.CANCELLED
    return ExternalTransaction.Status.FAILED


def _amount(value):
    if value in (None, ''):
        return None
    try:
        return Decimal(str(value)).quantize(Decimal('0.01'))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount in provider payload: {value!r}")


def _result_code(value):
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid result code in provider payload: {value!r}")


def parse_mpesa_timestamp(value):
    """Daraja timestamps look like 20240131143055 (yyyyMMddHHmmss, Nairobi time)."""
    if not value:
        return None
    try:
        parsed = datetime.strptime(str(value), '%Y%m%d%H%M%S')
    except ValueError:
        return None
    return timezone.make_aware(parsed, timezone.get_fixed_timezone(180))


@dataclass(frozen=True)
class PushResult:
    checkout_request_id: str
    merchant_request_id: str = ''
    result_code: Optional[int] = None
    result_description: str = ''
    receipt_number: str = ''
    amount: Optional[Decimal] = None
    phone_number: str = ''
    transaction_date: Optional[datetime] = None
    raw: dict = field(default_factory=dict, compare=False)

    @property
    def is_success(self):
        return self.result_code == RESULT_SUCCESS

    @classmethod
    def from_callback(cls, payload):
        try:
            callback = payload['Body']['stkCallback']
            checkout_request_id = callback['CheckoutRequestID']
        except (KeyError, TypeError):
            raise ValidationError("STK callback is missing Body.stkCallback.CheckoutRequestID")

        items = {}
        for item in (callback.get('CallbackMetadata') or {}).get('Item', []):
            if 'Name' in item:
                items[item['Name']] = item.get('Value')

        return cls(
            checkout_request_id=checkout_request_id,
            merchant_request_id=callback.get('MerchantRequestID', ''),
            result_code=_result_code(callback.get('ResultCode')),
            result_description=callback.get('ResultDesc', ''),
            receipt_number=str(items.get('MpesaReceiptNumber') or ''),
            amount=_amount(items.get('Amount')),
            phone_number=str(items.get('PhoneNumber') or ''),
            transaction_date=parse_mpesa_timestamp(items.get('TransactionDate')),
            raw=payload,
        )

    @classmethod
    def from_query(cls, checkout_request_id, response):
        """Build a result from an STK query answer; result_code stays None while in flight."""
        if response.get('errorCode') == STILL_PROCESSING_ERROR_CODE:
            return cls(
                checkout_request_id=checkout_request_id,
                result_description=response.get('errorMessage', ''),
                raw=response,
            )
        return cls(
            checkout_request_id=response.get('CheckoutRequestID') or checkout_request_id,
            merchant_request_id=response.get('MerchantRequestID', ''),
            result_code=_result_code(response.get('ResultCode')),
            result_description=response.get('ResultDesc', ''),
            raw=response,
        )


@dataclass(frozen=True)
class InboundDeposit:
    transaction_id: str
    amount: Decimal
    account_reference: str = ''
    phone_number: str = ''
    business_short_code: str = ''
    transaction_time: Optional[datetime] = None
    payer_name: str = ''
    raw: dict = field(default_factory=dict, compare=False)

    @classmethod
    def from_confirmation(cls, payload):
        try:
            transaction_id = payload['TransID']
            amount = _amount(payload['TransAmount'])
        except (KeyError, TypeError):
            raise ValidationError("C2B confirmation is missing TransID or TransAmount")
        if not transaction_id or amount is None or amount <= 0:
            raise ValidationError("C2B confirmation carries no usable TransID or amount")

        payer_name = ' '.join(
            part for part in (payload.get('FirstName'), payload.get('MiddleName'), payload.get('LastName')) if part)
        return cls(
            transaction_id=transaction_id,
            amount=amount,
            account_reference=(payload.get('BillRefNumber') or '').strip(),
            phone_number=str(payload.get('MSISDN') or ''),
            business_short_code=str(payload.get('BusinessShortCode') or ''),
            transaction_time=parse_mpesa_timestamp(payload.get('TransTime')),
            payer_name=payer_name,
            raw=payload,
        )


@dataclass(frozen=True)
class DisbursementResult:
    originator_conversation_id: str
    conversation_id: str = ''
    transaction_id: str = ''
    result_code: Optional[int] = None
    result_description: str = ''
    amount: Optional[Decimal] = None
    occasion: str = ''
    raw: dict = field(default_factory=dict, compare=False)

    @property
    def is_success(self):
        return self.result_code == RESULT_SUCCESS

    @classmethod
    def from_result(cls, payload):
        try:
            result = payload['Result']
            originator_conversation_id = result['OriginatorConversationID']
        except (KeyError, TypeError):
            raise ValidationError("B2C result is missing Result.OriginatorConversationID")

        parameters = {}
        for parameter in (result.get('ResultParameters') or {}).get('ResultParameter', []) or []:
            if 'Key' in parameter:
                parameters[parameter['Key']] = parameter.get('Value')

        # Transaction status answers echo the queried conversation id in Occasion.
        reference_items = (result.get('ReferenceData') or {}).get('ReferenceItem') or []
        if isinstance(reference_items, dict):
            reference_items = [reference_items]
        occasion = ''
        for item in reference_items:
            if item.get('Key') == 'Occasion':
                occasion = str(item.get('Value') or '')

        return cls(
            originator_conversation_id=originator_conversation_id,
            conversation_id=result.get('ConversationID', ''),
            occasion=occasion,
            transaction_id=result.get('TransactionID', '') or str(parameters.get('TransactionReceipt') or ''),
            result_code=_result_code(result.get('ResultCode')),
            result_description=result.get('ResultDesc', ''),
            amount=_amount(parameters.get('TransactionAmount')),
            raw=payload,
        )

    @classmethod
    def from_timeout(cls, payload):
        """A queue timeout carries no ResultCode; the transaction stays pending for the sweep."""
        try:
            originator_conversation_id = payload['Result']['OriginatorConversationID']
        except (KeyError, TypeError):
            originator_conversation_id = payload.get('OriginatorConversationID', '')
        if not originator_conversation_id:
            raise ValidationError("B2C timeout is missing OriginatorConversationID")
        return cls(
            originator_conversation_id=originator_conversation_id,
            result_description='Queue timeout',
            raw=payload,
        )
