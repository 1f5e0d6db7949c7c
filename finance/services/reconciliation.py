"""
Periodic repair pass over the ledger.

One pass re-queries M-Pesa for transactions whose callbacks never came,
closes push requests that were never acknowledged, and recomputes every
invoice balance from its postings. Passes never overlap: a JobLock row,
shared by every worker through the database, acts as the run-lock.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional, Tuple

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from finance.exceptions import LedgerError
from finance.models import Invoice, JobLock
from finance.notifications import send_overdue_notice
from finance.services.balances import RecalculationResult, recalculate_all

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = 'ledger:reconciliation-sweep'


@dataclass
class SweepReport:
    started_at: object = None
    finished_at: object = None
    stuck: List[int] = field(default_factory=list)
    settled: List[int] = field(default_factory=list)
    still_pending: List[int] = field(default_factory=list)
    query_errors: List[Tuple[int, str]] = field(default_factory=list)
    unacknowledged_failed: List[int] = field(default_factory=list)
    recalculation: Optional[RecalculationResult] = None
    overdue_notices: int = 0

    def as_dict(self):
        return {
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'stuck': self.stuck,
            'settled': self.settled,
            'still_pending': self.still_pending,
            'query_errors': [{'transaction_id': pk, 'error': error} for pk, error in self.query_errors],
            'unacknowledged_failed': self.unacknowledged_failed,
            'invoices_checked': self.recalculation.checked if self.recalculation else 0,
            'invoices_repaired': self.recalculation.updated if self.recalculation else [],
            'integrity_failures': [
                {'invoice_id': pk, 'error': error} for pk, error in self.recalculation.failed
            ] if self.recalculation else [],
            'overdue_notices': self.overdue_notices,
        }


def _acquire_lock():
    """Take the sweep lock row. Returns a token, or None while another pass holds it."""
    token = uuid.uuid4().hex
    now = timezone.now()
    with transaction.atomic():
        try:
            with transaction.atomic():
                lock, _ = JobLock.objects.select_for_update().get_or_create(name=SWEEP_LOCK_KEY)
        except IntegrityError:
            lock = JobLock.objects.select_for_update().get(name=SWEEP_LOCK_KEY)
        if lock.is_held:
            return None
        if lock.token:
            logger.warning(f"Sweep lock taken at {lock.acquired_at} expired without release; taking it over")
        lock.token = token
        lock.acquired_at = now
        lock.expires_at = now + timedelta(seconds=settings.RECONCILIATION_LOCK_TIMEOUT)
        lock.save()
    return token


def _release_lock(token):
    JobLock.objects.filter(name=SWEEP_LOCK_KEY, token=token).update(token='', expires_at=None)


def _requery_stuck(report, older_than, batch_size, client):
    from mpesa.models import ExternalTransaction
    from mpesa.services import query_stuck, requery_transaction

    for stuck in query_stuck(older_than=older_than, batch_size=batch_size):
        report.stuck.append(stuck.pk)
        try:
            txn = requery_transaction(stuck, client=client)
        except LedgerError as e:
            logger.error(f"Re-query of transaction {stuck.pk} failed: {e}")
            report.query_errors.append((stuck.pk, str(e)))
            continue

        if txn is not None and txn.status in ExternalTransaction.TERMINAL_STATUSES:
            report.settled.append(stuck.pk)
        else:
            report.still_pending.append(stuck.pk)


def _close_unacknowledged(report, older_than, batch_size, client):
    from mpesa.models import ExternalTransaction
    from mpesa.services import fail_unacknowledged, requery_transaction, stale_initiated

    for txn in stale_initiated(older_than=older_than, batch_size=batch_size):
        if txn.operation_type == ExternalTransaction.OperationType.DISBURSEMENT:
            # Disbursement ids are assigned locally and stay queryable.
            try:
                requery_transaction(txn, client=client)
            except LedgerError as e:
                report.query_errors.append((txn.pk, str(e)))
            continue
        fail_unacknowledged(txn)
        report.unacknowledged_failed.append(txn.pk)


def _notify_overdue(report):
    tenant_ids = Invoice.objects.filter(
        balance__gt=0,
        due_date__lt=timezone.localdate(),
    ).exclude(
        status=Invoice.Status.VOID
    ).values_list('tenant_id', flat=True).distinct()
    for tenant_id in tenant_ids:
        if send_overdue_notice(tenant_id):
            report.overdue_notices += 1


def run_sweep(min_age=None, batch_size=None, notify_overdue=False, client=None):
    """Run one reconciliation pass. Returns None when another pass holds the lock."""
    if min_age is None:
        min_age = timedelta(minutes=settings.RECONCILIATION_MIN_AGE_MINUTES)
    elif not isinstance(min_age, timedelta):
        min_age = timedelta(minutes=min_age)
    batch_size = batch_size or settings.RECONCILIATION_BATCH_SIZE

    token = _acquire_lock()
    if token is None:
        logger.warning("Reconciliation sweep already running; skipping this pass")
        return None

    report = SweepReport(started_at=timezone.now())
    try:
        _requery_stuck(report, min_age, batch_size, client)
        _close_unacknowledged(report, min_age, batch_size, client)
        report.recalculation = recalculate_all()
        if notify_overdue:
            _notify_overdue(report)
    finally:
        _release_lock(token)

    report.finished_at = timezone.now()
    logger.info(
        f"Reconciliation sweep: {len(report.stuck)} stuck, {len(report.settled)} settled, "
        f"{len(report.still_pending)} still pending, {len(report.query_errors)} query errors, "
        f"{len(report.unacknowledged_failed)} unacknowledged closed, "
        f"{len(report.recalculation.updated)} balances repaired, "
        f"{len(report.recalculation.failed)} integrity failures"
    )
    return report
