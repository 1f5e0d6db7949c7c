import hmac
import logging

from django.conf import settings
from rest_framework import permissions

logger = logging.getLogger(__name__)


def client_ip(request):
    forwarded = request.META.get('HTTP_X_FORWARDED_FOR')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', '')


class IsMpesaCallback(permissions.BasePermission):
    """
    Accepts provider callbacks carrying the shared webhook token, either in
    the X-MPesa-Token header or as a ``token`` query parameter baked into the
    registered callback URL. When an IP allowlist is configured the caller
    must also come from it.
    """
    message = 'Callback rejected'

    def has_permission(self, request, view):
        expected = settings.MPESA_WEBHOOK_TOKEN
        if expected:
            supplied = request.headers.get('X-MPesa-Token') or request.query_params.get('token', '')
            if not hmac.compare_digest(str(supplied), str(expected)):
                logger.warning(f"M-Pesa callback from {client_ip(request)} carried a bad token")
                return False

        allowed_ips = settings.MPESA_ALLOWED_CALLBACK_IPS
        if allowed_ips and client_ip(request) not in allowed_ips:
            logger.warning(f"M-Pesa callback from unlisted address {client_ip(request)}")
            return False

        return True
