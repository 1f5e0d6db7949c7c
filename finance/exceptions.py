from rest_framework import status


class LedgerError(Exception):
    """Base class for errors raised by the ledger services."""
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message="", **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self):
        return self.message


class ValidationError(LedgerError):
    """Non-positive amount, invalid period, bad input."""
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(LedgerError):
    """Tenant, invoice, payment or transaction absent."""
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(LedgerError):
    """The request clashes with state already recorded."""
    status_code = status.HTTP_409_CONFLICT


class InsufficientFunds(ConflictError):
    """Allocation larger than what is left on the payment."""


class OverAllocation(ConflictError):
    """Allocation larger than what is owed on the invoice."""


class ExternalServiceError(LedgerError):
    """Payment provider timed out, refused or answered with a 5xx."""
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message="", retryable=True, **context):
        super().__init__(message, **context)
        self.retryable = retryable


class ReconciliationError(LedgerError):
    """Account reference is ambiguous or does not resolve to a tenant."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class LedgerIntegrityError(LedgerError):
    """Stored postings contradict the invoice balance invariant."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
