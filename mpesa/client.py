import base64
import logging
import time
from datetime import datetime
from decimal import Decimal

import requests
from django.conf import settings
from django.core.cache import cache

from finance.exceptions import ExternalServiceError
from utils.common import normalize_phone_number

logger = logging.getLogger(__name__)


class DarajaClient:
    """
    Thin wrapper over Safaricom's Daraja REST API.

    Only the OAuth token request is retried here. Payment requests are never
    re-sent automatically; a timeout leaves the local record for the
    reconciliation sweep, since the provider may have accepted it anyway.
    """
    SANDBOX_URL = 'https://sandbox.safaricom.co.ke'
    PRODUCTION_URL = 'https://api.safaricom.co.ke'
    TOKEN_CACHE_KEY = 'mpesa:access-token'
    MAX_TOKEN_ATTEMPTS = 3

    def __init__(self, consumer_key=None, consumer_secret=None, shortcode=None, passkey=None,
                 environment=None, timeout=None):
        self.consumer_key = consumer_key or settings.MPESA_CONSUMER_KEY
        self.consumer_secret = consumer_secret or settings.MPESA_CONSUMER_SECRET
        self.shortcode = shortcode or settings.MPESA_SHORTCODE
        self.passkey = passkey or settings.MPESA_PASSKEY
        self.environment = environment or settings.MPESA_ENVIRONMENT
        self.timeout = timeout or settings.MPESA_REQUEST_TIMEOUT

    @property
    def base_url(self):
        return self.PRODUCTION_URL if self.environment == 'production' else self.SANDBOX_URL

    def callback_url(self, path):
        return f"{settings.MPESA_CALLBACK_BASE_URL.rstrip('/')}/api/mpesa/{path.lstrip('/')}"

    def get_access_token(self):
        token = cache.get(self.TOKEN_CACHE_KEY)
        if token:
            return token

        if not self.consumer_key or not self.consumer_secret:
            raise ExternalServiceError("M-Pesa consumer key and secret are not configured", retryable=False)

        last_error = None
        for attempt in range(self.MAX_TOKEN_ATTEMPTS):
            try:
                resp = requests.get(
                    f"{self.base_url}/oauth/v1/generate?grant_type=client_credentials",
                    auth=(self.consumer_key, self.consumer_secret),
                    timeout=20,
                )
                if resp.status_code < 500:
                    resp.raise_for_status()
                    data = resp.json()
                    token = data['access_token']
                    expires_in = int(data.get('expires_in', 3599))
                    cache.set(self.TOKEN_CACHE_KEY, token, max(expires_in - 60, 60))
                    return token
                last_error = f"HTTP {resp.status_code}"
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = str(e)
            except (requests.HTTPError, ValueError, KeyError) as e:
                logger.error(f"M-Pesa token request rejected: {e}")
                raise ExternalServiceError(f"M-Pesa token request rejected: {e}", retryable=False)

            logger.warning(f"M-Pesa token attempt {attempt + 1} failed: {last_error}")
            if attempt + 1 < self.MAX_TOKEN_ATTEMPTS:
                time.sleep(min(2 ** attempt, 8))

        raise ExternalServiceError(f"M-Pesa token request failed: {last_error}", retryable=True)

    def _post(self, path, payload, allow_error_body=False):
        headers = {"Authorization": f"Bearer {self.get_access_token()}"}
        try:
            resp = requests.post(f"{self.base_url}{path}", json=payload, headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            logger.error(f"M-Pesa request to {path} timed out: {e}")
            raise ExternalServiceError(f"M-Pesa request timed out: {e}", retryable=True)
        except requests.ConnectionError as e:
            logger.error(f"M-Pesa request to {path} failed to connect: {e}")
            raise ExternalServiceError(f"M-Pesa unreachable: {e}", retryable=True)

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if allow_error_body and data.get('errorCode'):
            return data
        if resp.status_code >= 500:
            logger.error(f"M-Pesa {path} answered HTTP {resp.status_code}: {resp.text[:500]}")
            raise ExternalServiceError(f"M-Pesa answered HTTP {resp.status_code}", retryable=True)
        if not resp.ok:
            message = data.get('errorMessage') or f"HTTP {resp.status_code}"
            logger.error(f"M-Pesa {path} rejected the request: {message}")
            raise ExternalServiceError(f"M-Pesa rejected the request: {message}", retryable=False)
        return data

    def _password(self, timestamp):
        return base64.b64encode(f"{self.shortcode}{self.passkey}{timestamp}".encode()).decode()

    def stk_push(self, phone, amount, account_reference, description="Rent payment"):
        timestamp = datetime.now().strftime('%Y%m%d%H%M%S')
        phone = normalize_phone_number(phone)
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(Decimal(str(amount))),
            "PartyA": phone,
            "PartyB": self.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.callback_url('stkpush/callback/'),
            "AccountReference": account_reference[:12],
            "TransactionDesc": description[:13],
        }
        data = self._post('/mpesa/stkpush/v1/processrequest', payload)
        if str(data.get('ResponseCode')) != '0':
            raise ExternalServiceError(
                data.get('ResponseDescription') or data.get('errorMessage') or 'STK push was not accepted',
                retryable=False,
            )
        return data

    def stk_query(self, checkout_request_id):
        timestamp = datetime.now().strftime('%Y%m%d%H%M%S')
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        return self._post('/mpesa/stkpushquery/v1/query', payload, allow_error_body=True)

    def b2c_payment(self, phone, amount, originator_conversation_id, remarks="Deposit refund", occasion=""):
        payload = {
            "OriginatorConversationID": originator_conversation_id,
            "InitiatorName": settings.MPESA_INITIATOR_NAME,
            "SecurityCredential": settings.MPESA_SECURITY_CREDENTIAL,
            "CommandID": "BusinessPayment",
            "Amount": int(Decimal(str(amount))),
            "PartyA": self.shortcode,
            "PartyB": normalize_phone_number(phone),
            "Remarks": remarks[:100],
            "QueueTimeOutURL": self.callback_url('b2c/timeout/'),
            "ResultURL": self.callback_url('b2c/result/'),
            "Occasion": occasion[:100],
        }
        data = self._post('/mpesa/b2c/v3/paymentrequest', payload)
        if str(data.get('ResponseCode')) != '0':
            raise ExternalServiceError(
                data.get('ResponseDescription') or 'Disbursement was not accepted', retryable=False)
        return data

    def transaction_status(self, originator_conversation_id, transaction_id=''):
        payload = {
            "Initiator": settings.MPESA_INITIATOR_NAME,
            "SecurityCredential": settings.MPESA_SECURITY_CREDENTIAL,
            "CommandID": "TransactionStatusQuery",
            "TransactionID": transaction_id,
            "OriginalConversationID": originator_conversation_id,
            "PartyA": self.shortcode,
            "IdentifierType": "4",
            "ResultURL": self.callback_url('b2c/result/'),
            "QueueTimeOutURL": self.callback_url('b2c/timeout/'),
            "Remarks": "Reconciliation",
            "Occasion": originator_conversation_id,
        }
        return self._post('/mpesa/transactionstatus/v1/query', payload)
